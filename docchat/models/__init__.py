from docchat.models.base import Base, TimestampMixin
from docchat.models.orm import DocumentRecord, VectorChunkRecord

__all__ = ["Base", "DocumentRecord", "TimestampMixin", "VectorChunkRecord"]
