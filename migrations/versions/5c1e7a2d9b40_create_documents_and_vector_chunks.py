"""create documents and vector_chunks

Revision ID: 5c1e7a2d9b40
Revises:
Create Date: 2026-10-18 09:12:44.208113

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "5c1e7a2d9b40"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# Must match EMBEDDING_DIMENSION; checked at application startup.
EMBEDDING_DIMENSION = 3072


def upgrade() -> None:
    """Create the document ledger and the vector index tables."""
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    # -- documents (status ledger) --
    op.create_table(
        "documents",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("file_name", sa.String(500), nullable=False),
        sa.Column("file_type", sa.String(255), nullable=False),
        sa.Column("file_size", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("blob_url", sa.Text(), nullable=False, server_default=""),
        sa.Column("folder_path", sa.String(1000), nullable=True),
        sa.Column("title", sa.String(500), nullable=True),
        sa.Column(
            "processing_status",
            sa.String(20),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("status_message", sa.Text(), nullable=True),
        sa.Column("total_chunks", sa.Integer(), nullable=True),
        sa.Column("processed_chunks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_documents"),
        sa.CheckConstraint(
            "processing_status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_documents_processing_status",
        ),
        sa.CheckConstraint(
            "total_chunks IS NULL OR processed_chunks <= total_chunks",
            name="ck_documents_processed_le_total",
        ),
    )
    op.create_index("ix_documents_user_id", "documents", ["user_id"])

    # -- vector_chunks (vector index) --
    op.create_table(
        "vector_chunks",
        sa.Column("id", sa.String(300), nullable=False),
        sa.Column("document_id", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("chunk_index", sa.Integer(), nullable=False),
        sa.Column("embedding", Vector(EMBEDDING_DIMENSION), nullable=False),
        sa.Column(
            "metadata",
            JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "upserted_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_vector_chunks"),
    )
    op.create_index("ix_vector_chunks_document_id", "vector_chunks", ["document_id"])
    op.create_index("ix_vector_chunks_user_id", "vector_chunks", ["user_id"])
    # No HNSW/IVFFlat index: pgvector caps those at 2000 dimensions.
    # Queries are exact scans narrowed by the user_id index.


def downgrade() -> None:
    """Drop the vector index and ledger tables."""
    op.drop_index("ix_vector_chunks_user_id", table_name="vector_chunks")
    op.drop_index("ix_vector_chunks_document_id", table_name="vector_chunks")
    op.drop_table("vector_chunks")
    op.drop_index("ix_documents_user_id", table_name="documents")
    op.drop_table("documents")
