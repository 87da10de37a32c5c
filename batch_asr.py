# batch_asr.py - Record-then-transcribe speech recognition
"""
Batch transcription for the manual recording path: upload a finished clip,
request a transcription job, and poll the job until it completes, fails, or
runs out of polling attempts.
"""

import asyncio
import logging
import os
from typing import Awaitable, Callable, Optional

import httpx

from components import BatchASRInterface
from errors import TranscriptionFailed, TranscriptionTimeout

logger = logging.getLogger(__name__)

PENDING_STATES = ("queued", "processing")


class AssemblyAIBatchTranscriber(BatchASRInterface):
    def __init__(self,
                 api_key: Optional[str] = None,
                 base_url: str = "https://api.assemblyai.com",
                 poll_interval: float = 1.0,
                 max_attempts: int = 60,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.api_key = api_key or os.getenv("ASSEMBLYAI_API_KEY")
        self.base_url = base_url
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.transport = transport
        self._sleep = sleep

    async def transcribe(self, audio: bytes) -> str:
        if not audio:
            raise TranscriptionFailed("No audio provided")
        if not self.api_key:
            raise TranscriptionFailed("Transcription API key is not configured")

        headers = {"Authorization": self.api_key}
        async with httpx.AsyncClient(base_url=self.base_url, headers=headers,
                                     transport=self.transport, timeout=30.0) as client:
            try:
                upload_url = await self._upload(client, audio)
                transcript_id = await self._request_transcript(client, upload_url)
                return await self._poll(client, transcript_id)
            except httpx.HTTPError as e:
                raise TranscriptionFailed(f"Transcription request failed: {e}") from e

    async def _upload(self, client: httpx.AsyncClient, audio: bytes) -> str:
        logger.info("[BatchASR] Uploading %d bytes", len(audio))
        response = await client.post("/v2/upload", content=audio)
        if response.is_error:
            raise TranscriptionFailed(f"Error uploading audio: {response.status_code}")
        upload_url = _json_object(response, "upload").get("upload_url")
        if not upload_url:
            raise TranscriptionFailed("No upload URL returned")
        return upload_url

    async def _request_transcript(self, client: httpx.AsyncClient, upload_url: str) -> str:
        response = await client.post("/v2/transcript", json={"audio_url": upload_url})
        if response.is_error:
            raise TranscriptionFailed(f"Error requesting transcription: {response.status_code}")
        transcript_id = _json_object(response, "transcript request").get("id")
        if not transcript_id:
            raise TranscriptionFailed("No transcript ID returned")
        logger.info("[BatchASR] Transcription %s requested, polling for results", transcript_id)
        return transcript_id

    async def _poll(self, client: httpx.AsyncClient, transcript_id: str) -> str:
        status = "processing"
        attempts = 0
        while status in PENDING_STATES and attempts < self.max_attempts:
            attempts += 1
            await self._sleep(self.poll_interval)

            response = await client.get(f"/v2/transcript/{transcript_id}")
            if response.is_error:
                raise TranscriptionFailed(f"Error checking transcription status: {response.status_code}")
            data = _json_object(response, "status")
            status = data.get("status")
            logger.debug("[BatchASR] Polling attempt %d: status=%s", attempts, status)

            if status == "completed":
                text = data.get("text") or ""
                if not isinstance(text, str):
                    raise TranscriptionFailed("Invalid status response: text is not a string")
                logger.info("[BatchASR] Transcription completed: %r", text)
                return text
            if status == "error":
                raise TranscriptionFailed(f"Transcription error: {data.get('error')}")

        if status in PENDING_STATES:
            raise TranscriptionTimeout(f"Transcription timed out after {attempts} attempts")
        raise TranscriptionFailed(f"Unexpected transcription status: {status}")


def _json_object(response: httpx.Response, what: str) -> dict:
    try:
        data = response.json()
    except ValueError as e:
        raise TranscriptionFailed(f"Invalid {what} response: {e}") from e
    if not isinstance(data, dict):
        raise TranscriptionFailed(f"Invalid {what} response: expected an object")
    return data
