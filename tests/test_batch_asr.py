"""Tests for the record-then-transcribe path against a mocked HTTP API."""
import httpx
import pytest

from batch_asr import AssemblyAIBatchTranscriber
from errors import TranscriptionFailed, TranscriptionTimeout


class FakeTranscriptionAPI:
    """Upload -> transcript job -> poll, with a scripted list of poll statuses."""

    def __init__(self, statuses, upload_status=200, text="I have had a headache since Monday"):
        self.statuses = list(statuses)
        self.upload_status = upload_status
        self.text = text
        self.requests = []
        self.polls = 0

    def __call__(self, request):
        self.requests.append(request)
        path = request.url.path
        if path == "/v2/upload":
            if self.upload_status != 200:
                return httpx.Response(self.upload_status, json={"error": "upload failed"})
            return httpx.Response(200, json={"upload_url": "https://cdn.test/clip"})
        if path == "/v2/transcript":
            return httpx.Response(200, json={"id": "tx-1", "status": "queued"})
        if path == "/v2/transcript/tx-1":
            self.polls += 1
            status = self.statuses.pop(0) if self.statuses else "processing"
            body = {"id": "tx-1", "status": status}
            if status == "completed":
                body["text"] = self.text
            if status == "error":
                body["error"] = "Audio file is empty"
            return httpx.Response(200, json=body)
        return httpx.Response(404)


def make_transcriber(api, max_attempts=60):
    async def no_sleep(seconds):
        return None

    return AssemblyAIBatchTranscriber(
        api_key="test-key",
        base_url="https://asr.test",
        max_attempts=max_attempts,
        transport=httpx.MockTransport(api),
        sleep=no_sleep,
    )


@pytest.mark.asyncio
async def test_completed_transcription_returns_text():
    api = FakeTranscriptionAPI(["queued", "processing", "completed"])

    text = await make_transcriber(api).transcribe(b"RIFF....WAVE")

    assert text == "I have had a headache since Monday"
    assert api.polls == 3
    upload = api.requests[0]
    assert upload.headers["Authorization"] == "test-key"
    assert upload.content == b"RIFF....WAVE"


@pytest.mark.asyncio
async def test_error_status_fails():
    api = FakeTranscriptionAPI(["processing", "error"])

    with pytest.raises(TranscriptionFailed, match="Audio file is empty"):
        await make_transcriber(api).transcribe(b"audio")


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    api = FakeTranscriptionAPI([])

    with pytest.raises(TranscriptionTimeout):
        await make_transcriber(api, max_attempts=4).transcribe(b"audio")
    assert api.polls == 4


@pytest.mark.asyncio
async def test_upload_failure():
    api = FakeTranscriptionAPI(["completed"], upload_status=500)

    with pytest.raises(TranscriptionFailed):
        await make_transcriber(api).transcribe(b"audio")
    assert api.polls == 0


@pytest.mark.asyncio
async def test_network_error_wrapped():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    transcriber = AssemblyAIBatchTranscriber(api_key="k", transport=httpx.MockTransport(handler))
    with pytest.raises(TranscriptionFailed):
        await transcriber.transcribe(b"audio")


@pytest.mark.asyncio
async def test_missing_key(monkeypatch):
    monkeypatch.delenv("ASSEMBLYAI_API_KEY", raising=False)
    with pytest.raises(TranscriptionFailed):
        await AssemblyAIBatchTranscriber().transcribe(b"audio")


@pytest.mark.asyncio
async def test_empty_audio():
    with pytest.raises(TranscriptionFailed):
        await AssemblyAIBatchTranscriber(api_key="k").transcribe(b"")


@pytest.mark.asyncio
async def test_non_json_upload_response_fails():
    def handler(request):
        return httpx.Response(200, text="<html>gateway</html>", headers={"content-type": "text/html"})

    transcriber = AssemblyAIBatchTranscriber(api_key="k", transport=httpx.MockTransport(handler))
    with pytest.raises(TranscriptionFailed, match="Invalid upload response"):
        await transcriber.transcribe(b"RIFF")


@pytest.mark.asyncio
async def test_non_object_status_response_fails():
    def handler(request):
        if request.url.path == "/v2/upload":
            return httpx.Response(200, json={"upload_url": "https://cdn.test/clip"})
        if request.url.path == "/v2/transcript":
            return httpx.Response(200, json={"id": "tx-1"})
        return httpx.Response(200, json=["completed"])

    async def no_sleep(seconds):
        return None

    transcriber = AssemblyAIBatchTranscriber(api_key="k", transport=httpx.MockTransport(handler), sleep=no_sleep)
    with pytest.raises(TranscriptionFailed, match="Invalid status response"):
        await transcriber.transcribe(b"RIFF")
