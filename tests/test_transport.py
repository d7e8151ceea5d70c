"""
Job Transport Unit Tests

Webhook signature verification with key rotation, the queue and
in-process dispatchers, and the HTTP blob store client. HTTP calls go
through ``httpx.MockTransport``; nothing leaves the process.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json

import httpx
import pytest

from conftest import mock_http
from docchat.core.exceptions import DispatchError, DownloadError, InvalidSignatureError
from docchat.models.schemas import IngestionJob
from docchat.services.blob_store import HttpBlobStore
from docchat.services.dispatcher import LocalDispatcher, QueueDispatcher
from docchat.services.signatures import sign, verify_signature

CURRENT = "sig_current"
NEXT = "sig_next"
BODY = b'{"documentId":"doc-1","userId":"user-1"}'


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------


class TestSignatures:
    def test_current_key_matches_first(self) -> None:
        assert verify_signature(BODY, sign(BODY, CURRENT), [CURRENT, NEXT]) == 0

    def test_next_key_is_accepted_during_rotation(self) -> None:
        assert verify_signature(BODY, sign(BODY, NEXT), [CURRENT, NEXT]) == 1

    def test_base64_and_bare_hex_formats(self) -> None:
        digest = hmac.new(CURRENT.encode(), BODY, hashlib.sha256).digest()

        assert verify_signature(BODY, digest.hex(), [CURRENT]) == 0
        assert verify_signature(BODY, f"sha256={digest.hex()}", [CURRENT]) == 0
        b64 = base64.urlsafe_b64encode(digest).decode().rstrip("=")
        assert verify_signature(BODY, b64, [CURRENT]) == 0

    def test_tampered_body_is_rejected(self) -> None:
        signature = sign(BODY, CURRENT)

        with pytest.raises(InvalidSignatureError, match="Invalid signature"):
            verify_signature(BODY + b" ", signature, [CURRENT, NEXT])

    def test_unknown_key_is_rejected(self) -> None:
        with pytest.raises(InvalidSignatureError):
            verify_signature(BODY, sign(BODY, "attacker"), [CURRENT, NEXT])

    @pytest.mark.parametrize("signature", [None, ""])
    def test_missing_signature(self, signature) -> None:
        with pytest.raises(InvalidSignatureError, match="Missing signature"):
            verify_signature(BODY, signature, [CURRENT])

    def test_no_keys_configured(self) -> None:
        with pytest.raises(InvalidSignatureError, match="No signing keys"):
            verify_signature(BODY, sign(BODY, CURRENT), [])


# ---------------------------------------------------------------------------
# Dispatchers
# ---------------------------------------------------------------------------


class TestQueueDispatcher:
    @pytest.mark.asyncio
    async def test_publishes_job_to_worker_url(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"messageId": "msg_123"})

        dispatcher = QueueDispatcher(
            publish_url="https://queue.test/v2/publish/",
            token="tok",
            worker_url="https://app.test/api/v1/worker/ingest",
            retries=3,
        )
        job = IngestionJob(document_id="doc-1", user_id="user-1")

        with mock_http("docchat.services.dispatcher", handler):
            message_id = await dispatcher.enqueue(job)

        assert message_id == "msg_123"
        (request,) = seen
        assert str(request.url).startswith("https://queue.test/v2/publish/https:")
        assert request.url.path.endswith("/api/v1/worker/ingest")
        assert request.headers["Authorization"] == "Bearer tok"
        assert request.headers["Upstash-Retries"] == "3"
        assert json.loads(request.content) == {"documentId": "doc-1", "userId": "user-1"}

    @pytest.mark.asyncio
    async def test_queue_error_raises_dispatch_error(self) -> None:
        dispatcher = QueueDispatcher(publish_url="https://queue.test", token="tok")

        with mock_http(
            "docchat.services.dispatcher", lambda request: httpx.Response(503)
        ):
            with pytest.raises(DispatchError, match="Could not publish job"):
                await dispatcher.enqueue(IngestionJob(document_id="d", user_id="u"))


class TestLocalDispatcher:
    @pytest.mark.asyncio
    async def test_runs_job_in_background(self) -> None:
        ran: list[str] = []

        async def runner(job: IngestionJob) -> None:
            await asyncio.sleep(0)
            ran.append(job.document_id)

        dispatcher = LocalDispatcher(runner)
        message_id = await dispatcher.enqueue(IngestionJob(document_id="d", user_id="u"))
        await dispatcher.drain()

        assert message_id.startswith("local-")
        assert ran == ["d"]

    @pytest.mark.asyncio
    async def test_runner_failure_does_not_escape(self) -> None:
        async def runner(job: IngestionJob) -> None:
            raise RuntimeError("boom")

        dispatcher = LocalDispatcher(runner)
        await dispatcher.enqueue(IngestionJob(document_id="d", user_id="u"))

        await dispatcher.drain()


# ---------------------------------------------------------------------------
# Blob store
# ---------------------------------------------------------------------------


class TestHttpBlobStore:
    @pytest.mark.asyncio
    async def test_upload_returns_url_from_store(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "PUT"
            assert request.headers["Content-Type"] == "application/pdf"
            assert request.url.raw_path.endswith(b"/my%20report.pdf")
            return httpx.Response(200, json={"url": "https://cdn.test/abc/report.pdf"})

        store = HttpBlobStore(base_url="https://blobs.test/", token="t")
        with mock_http("docchat.services.blob_store", handler):
            url = await store.upload("my report.pdf", b"%PDF", "application/pdf")

        assert url == "https://cdn.test/abc/report.pdf"

    @pytest.mark.asyncio
    async def test_download(self) -> None:
        store = HttpBlobStore(base_url="https://blobs.test")
        with mock_http(
            "docchat.services.blob_store", lambda request: httpx.Response(200, content=b"hi")
        ):
            assert await store.download("https://blobs.test/a/b.txt") == b"hi"

    @pytest.mark.asyncio
    async def test_download_http_error(self) -> None:
        store = HttpBlobStore(base_url="https://blobs.test")
        with mock_http("docchat.services.blob_store", lambda request: httpx.Response(404)):
            with pytest.raises(DownloadError, match="HTTP 404"):
                await store.download("https://blobs.test/a/b.txt")

    @pytest.mark.asyncio
    async def test_download_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        store = HttpBlobStore(base_url="https://blobs.test")
        with mock_http("docchat.services.blob_store", handler):
            with pytest.raises(DownloadError, match="ConnectTimeout"):
                await store.download("https://blobs.test/a/b.txt")

    @pytest.mark.asyncio
    async def test_download_without_url(self) -> None:
        with pytest.raises(DownloadError, match="no blob URL"):
            await HttpBlobStore(base_url="https://blobs.test").download("")

    @pytest.mark.asyncio
    async def test_delete_of_missing_blob_succeeds(self) -> None:
        store = HttpBlobStore(base_url="https://blobs.test")
        with mock_http("docchat.services.blob_store", lambda request: httpx.Response(404)):
            await store.delete("https://blobs.test/a/b.txt")
