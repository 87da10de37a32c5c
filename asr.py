# asr.py - Streaming speech recognition channel and backends
"""
This module keeps a persistent duplex connection to a streaming speech
recognition backend and turns captured audio into transcript events.

TranscriptionChannel owns the connection lifecycle:
- Forwards PCM frames only while the call is listening
- Dispatches partial and final transcripts to the conversation manager
- Reconnects after a fixed delay when the connection drops, up to a budget of
  consecutive failures, then reports once and gives up (the call continues)
- Reports malformed payloads without dropping the connection

Two backends are provided:
- CartesiaASR: Cartesia's "ink-whisper" streaming model over the SDK websocket
- RealtimeWebSocketASR: a realtime websocket authenticated with a short-lived
  token sent as the first message of the session
"""

import asyncio
import json
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import httpx
import websockets
from cartesia import AsyncCartesia

from components import ASRInterface, STTConnection, TranscriptEvent
from errors import ChannelDisconnected, SpeechRecognitionError

logger = logging.getLogger(__name__)

TranscriptCallback = Callable[[TranscriptEvent], None]
ErrorCallback = Callable[[Exception], None]


class TranscriptionChannel:
    """
    Supervises one streaming recognition session per call.

    reconnect_delay and max_reconnect_attempts form the retry policy; sleep is
    injectable so tests can run the policy without waiting.
    """

    def __init__(self,
                 asr: ASRInterface,
                 on_transcript: TranscriptCallback,
                 on_error: Optional[ErrorCallback] = None,
                 on_connection_change: Optional[Callable[[bool], None]] = None,
                 reconnect_delay: float = 2.0,
                 max_reconnect_attempts: int = 5,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.asr = asr
        self.on_transcript = on_transcript
        self.on_error = on_error
        self.on_connection_change = on_connection_change
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self._sleep = sleep

        self.connected = False
        self.listening = False
        self.failures = 0
        self.connect_attempts = 0
        self._connection: Optional[STTConnection] = None
        self._task: Optional[asyncio.Task] = None
        self._closed = True

    def set_listening(self, listening: bool) -> None:
        self.listening = listening

    def start(self, audio_queue: asyncio.Queue) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._closed = False
            self._task = asyncio.create_task(self.run(audio_queue))
        return self._task

    async def run(self, audio_queue: asyncio.Queue) -> None:
        """Connect, serve, and reconnect until closed or out of retries."""
        self._closed = False
        self.failures = 0
        while not self._closed:
            self.connect_attempts += 1
            try:
                connection = await self.asr.connect()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("[ASR] Connection attempt %d failed: %s", self.connect_attempts, e)
                if not await self._wait_for_retry():
                    break
                continue

            self._connection = connection
            self.failures = 0
            self._set_connected(True)
            try:
                await self._serve(connection, audio_queue)
            finally:
                self._connection = None
                self._set_connected(False)
                await self._close_connection(connection)

            if self._closed:
                break
            logger.warning("[ASR] Connection closed unexpectedly")
            if not await self._wait_for_retry():
                break

    async def _wait_for_retry(self) -> bool:
        self.failures += 1
        if self.failures >= self.max_reconnect_attempts:
            logger.error("[ASR] Giving up after %d consecutive failures", self.failures)
            self._report(ChannelDisconnected(
                f"Speech recognition exceeded retry budget ({self.max_reconnect_attempts} attempts)"))
            return False
        await self._sleep(self.reconnect_delay)
        return not self._closed

    async def _serve(self, connection: STTConnection, audio_queue: asyncio.Queue) -> None:
        sender = asyncio.create_task(self._send_frames(connection, audio_queue))
        receiver = asyncio.create_task(self._receive_events(connection))
        try:
            done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.warning("[ASR] Session error: %s", task.exception())
        finally:
            for task in (sender, receiver):
                task.cancel()
            await asyncio.gather(sender, receiver, return_exceptions=True)

    async def _send_frames(self, connection: STTConnection, audio_queue: asyncio.Queue) -> None:
        while True:
            frame = await audio_queue.get()
            if self.listening:
                await connection.send_audio(frame)

    async def _receive_events(self, connection: STTConnection) -> None:
        async for payload in connection.receive():
            try:
                event = connection.parse(payload)
            except SpeechRecognitionError as e:
                self._report(e)
                continue
            if event is not None and event.text.strip():
                self.on_transcript(event)

    async def close(self) -> None:
        """Stop the session and release the socket. Idempotent."""
        self._closed = True
        self.listening = False
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        connection, self._connection = self._connection, None
        if connection is not None:
            await self._close_connection(connection)
        self._set_connected(False)

    async def _close_connection(self, connection: STTConnection) -> None:
        try:
            await connection.close()
        except Exception as e:
            logger.debug("[ASR] Error while closing connection: %s", e)

    def _set_connected(self, connected: bool) -> None:
        if connected == self.connected:
            return
        self.connected = connected
        logger.info("[ASR] %s", "Connected" if connected else "Disconnected")
        if self.on_connection_change:
            self.on_connection_change(connected)

    def _report(self, error: Exception) -> None:
        logger.warning("[ASR] %s", error)
        if self.on_error:
            self.on_error(error)


class CartesiaSTTConnection(STTConnection):
    def __init__(self, ws):
        self.ws = ws

    async def send_audio(self, frame: bytes) -> None:
        await self.ws.send(frame)

    def receive(self) -> AsyncIterator[Any]:
        return self.ws.receive()

    def parse(self, payload: Any) -> Optional[TranscriptEvent]:
        if not isinstance(payload, dict) or not isinstance(payload.get("type"), str):
            raise SpeechRecognitionError(f"Malformed recognition payload: {payload!r}")

        kind = payload["type"]
        if kind == "transcript":
            text = payload.get("text")
            if not isinstance(text, str):
                raise SpeechRecognitionError(f"Malformed transcript payload: {payload!r}")
            text = text.strip()
            if not text:
                return None
            return TranscriptEvent(text, bool(payload.get("is_final", False)))
        if kind == "error":
            detail = payload.get("message") or payload.get("error") or "Unknown error"
            raise SpeechRecognitionError(f"Speech recognition error: {detail}")
        # "done", "flush_done" and friends carry no transcript
        return None

    async def close(self) -> None:
        await self.ws.close()


class CartesiaASR(ASRInterface):
    """
    Cartesia-powered streaming speech recognition.

    Uses the "ink-whisper" model, which is based on OpenAI's Whisper but
    optimized for real-time streaming. Requires CARTESIA_API_KEY.
    """

    def __init__(self,
                 api_key: Optional[str] = None,
                 model: str = "ink-whisper",
                 language: str = "en",
                 sample_rate: int = 16000,
                 min_volume: float = 0.15,
                 max_silence_duration_secs: float = 2.0):
        self.model = model
        self.language = language
        self.sample_rate = sample_rate
        self.min_volume = min_volume
        self.max_silence_duration_secs = max_silence_duration_secs
        self.client = AsyncCartesia(api_key=api_key or os.getenv("CARTESIA_API_KEY"))

    async def connect(self) -> STTConnection:
        ws = await self.client.stt.websocket(
            model=self.model,
            language=self.language,
            encoding="pcm_s16le",         # 16-bit PCM little-endian format
            sample_rate=self.sample_rate,
            min_volume=self.min_volume,   # below this the audio counts as silence, range 0.0-1.0
            max_silence_duration_secs=self.max_silence_duration_secs,
        )
        return CartesiaSTTConnection(ws)

    async def aclose(self) -> None:
        await self.client.close()


REALTIME_URL = "wss://api.assemblyai.com/v2/realtime/ws"
REALTIME_API_BASE = "https://api.assemblyai.com"


class TemporaryTokenProvider:
    """Exchanges the account key for a short-lived realtime session token."""

    def __init__(self,
                 api_key: Optional[str] = None,
                 base_url: str = REALTIME_API_BASE,
                 expires_in: int = 3600,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key or os.getenv("ASSEMBLYAI_API_KEY")
        self.base_url = base_url
        self.expires_in = expires_in
        self.transport = transport

    async def __call__(self) -> str:
        if not self.api_key:
            raise SpeechRecognitionError("Speech recognition API key is missing")
        async with httpx.AsyncClient(base_url=self.base_url, transport=self.transport, timeout=10.0) as client:
            response = await client.post(
                "/v2/realtime/token",
                headers={"Authorization": self.api_key},
                json={"expires_in": self.expires_in},
            )
            response.raise_for_status()
            token = response.json().get("token")
        if not token:
            raise SpeechRecognitionError("No realtime token returned")
        return token


class RealtimeSTTConnection(STTConnection):
    def __init__(self, ws):
        self.ws = ws

    async def send_audio(self, frame: bytes) -> None:
        await self.ws.send(frame)

    async def receive(self) -> AsyncIterator[Any]:
        async for message in self.ws:
            yield message

    def parse(self, payload: Any) -> Optional[TranscriptEvent]:
        try:
            data = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise SpeechRecognitionError(f"Malformed recognition payload: {e}") from e
        if not isinstance(data, dict):
            raise SpeechRecognitionError(f"Malformed recognition payload: {payload!r}")

        message_type = data.get("message_type")
        if message_type in ("PartialTranscript", "FinalTranscript"):
            text = data.get("text") or ""
            if not isinstance(text, str):
                raise SpeechRecognitionError(f"Malformed transcript payload: {payload!r}")
            if not text.strip():
                return None
            return TranscriptEvent(text, message_type == "FinalTranscript")
        if message_type == "Error":
            raise SpeechRecognitionError(f"Speech recognition error: {data.get('error') or 'Unknown error'}")
        # SessionBegins, SessionTerminated
        return None

    async def close(self) -> None:
        await self.ws.close()


class RealtimeWebSocketASR(ASRInterface):
    """
    Realtime websocket recognition.

    The session is opened unauthenticated and the first message sent is the
    auth handshake carrying a short-lived token and its expiry.
    """

    def __init__(self,
                 token_provider: Callable[[], Awaitable[str]],
                 url: str = REALTIME_URL,
                 sample_rate: int = 16000,
                 token_ttl: int = 3600,
                 connect: Callable[..., Awaitable[Any]] = websockets.connect):
        self.token_provider = token_provider
        self.url = url
        self.sample_rate = sample_rate
        self.token_ttl = token_ttl
        self._connect = connect

    async def connect(self) -> STTConnection:
        token = await self.token_provider()
        ws = await self._connect(f"{self.url}?sample_rate={self.sample_rate}")
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.token_ttl)
        try:
            await ws.send(json.dumps({"token": token, "expires_at": expires_at.isoformat()}))
        except Exception:
            await ws.close()
            raise
        return RealtimeSTTConnection(ws)
