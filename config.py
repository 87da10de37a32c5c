# config.py - Runtime configuration for the voice agent
"""
Settings are read from the environment. main.py loads a .env file first with
python-dotenv, so the usual setup is a .env next to main.py holding the API
keys. Timing policies default to the values the conversation was tuned with.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from dotenv import load_dotenv


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_voice_map(name: str) -> Dict[int, str]:
    """Parse "1:voice-a,2:voice-b" into {1: "voice-a", 2: "voice-b"}."""
    voices = {}
    for entry in (os.getenv(name) or "").split(","):
        if not entry.strip():
            continue
        persona_id, sep, voice_id = entry.partition(":")
        if not sep or not voice_id.strip():
            raise ValueError(f"{name}: expected persona_id:voice_id, got {entry!r}")
        voices[int(persona_id)] = voice_id.strip()
    return voices


@dataclass
class VoiceAgentConfig:
    # Credentials
    anthropic_api_key: Optional[str] = None
    cartesia_api_key: Optional[str] = None
    assemblyai_api_key: Optional[str] = None

    # Reply generation
    llm_model: str = "claude-sonnet-4-20250514"
    llm_temperature: float = 0.7
    llm_max_tokens: int = 500

    # Speech recognition
    stt_backend: str = "cartesia"            # "cartesia" | "assemblyai"
    stt_model: str = "ink-whisper"
    stt_language: str = "en"
    device_sample_rate: int = 44100
    target_sample_rate: int = 16000
    capture_blocksize: int = 4096
    input_device: Optional[int] = None

    # Speech synthesis
    tts_backend: str = "cartesia"            # "cartesia" | "http"
    tts_endpoint: str = "http://localhost:3000/api/tts"
    tts_model: str = "sonic-2"
    tts_voice_id: str = "a0e99841-438c-4a64-b679-ae501e7d6091"
    tts_sample_rate: int = 24000
    tts_persona_voices: Dict[int, str] = field(default_factory=dict)   # persona id -> voice id
    output_device: Optional[int] = None

    # Timing policies
    silence_timeout: float = 2.0             # partial transcript -> final
    reconnect_delay: float = 2.0
    max_reconnect_attempts: int = 5
    speaking_grace: float = 0.5              # speech end -> listening
    synthesis_timeout: float = 15.0
    batch_poll_interval: float = 1.0
    batch_max_attempts: int = 60

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "VoiceAgentConfig":
        load_dotenv(dotenv_path)
        defaults = cls()
        input_device = os.getenv("INPUT_DEVICE")
        output_device = os.getenv("OUTPUT_DEVICE")
        return cls(
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            cartesia_api_key=os.getenv("CARTESIA_API_KEY"),
            assemblyai_api_key=os.getenv("ASSEMBLYAI_API_KEY"),
            llm_model=os.getenv("LLM_MODEL", defaults.llm_model),
            llm_temperature=_env_float("LLM_TEMPERATURE", defaults.llm_temperature),
            llm_max_tokens=_env_int("LLM_MAX_TOKENS", defaults.llm_max_tokens),
            stt_backend=os.getenv("STT_BACKEND", defaults.stt_backend).lower(),
            stt_model=os.getenv("STT_MODEL", defaults.stt_model),
            stt_language=os.getenv("STT_LANGUAGE", defaults.stt_language),
            device_sample_rate=_env_int("DEVICE_SAMPLE_RATE", defaults.device_sample_rate),
            target_sample_rate=_env_int("TARGET_SAMPLE_RATE", defaults.target_sample_rate),
            capture_blocksize=_env_int("CAPTURE_BLOCKSIZE", defaults.capture_blocksize),
            input_device=int(input_device) if input_device else None,
            tts_backend=os.getenv("TTS_BACKEND", defaults.tts_backend).lower(),
            tts_endpoint=os.getenv("TTS_ENDPOINT", defaults.tts_endpoint),
            tts_model=os.getenv("TTS_MODEL", defaults.tts_model),
            tts_voice_id=os.getenv("TTS_VOICE_ID", defaults.tts_voice_id),
            tts_sample_rate=_env_int("TTS_SAMPLE_RATE", defaults.tts_sample_rate),
            tts_persona_voices=_env_voice_map("TTS_PERSONA_VOICES"),
            output_device=int(output_device) if output_device else None,
            silence_timeout=_env_float("SILENCE_TIMEOUT", defaults.silence_timeout),
            reconnect_delay=_env_float("RECONNECT_DELAY", defaults.reconnect_delay),
            max_reconnect_attempts=_env_int("MAX_RECONNECT_ATTEMPTS", defaults.max_reconnect_attempts),
            speaking_grace=_env_float("SPEAKING_GRACE", defaults.speaking_grace),
            synthesis_timeout=_env_float("SYNTHESIS_TIMEOUT", defaults.synthesis_timeout),
            batch_poll_interval=_env_float("BATCH_POLL_INTERVAL", defaults.batch_poll_interval),
            batch_max_attempts=_env_int("BATCH_MAX_ATTEMPTS", defaults.batch_max_attempts),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
        )
