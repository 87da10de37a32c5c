# main.py - Voice Agent entry point
"""
Runs one voice call with a specialist persona from the terminal.

The call wires together all components of the real-time conversation:
- Microphone capture, downsampled to 16kHz PCM
- Streaming speech recognition (Cartesia or a realtime websocket backend)
- Reply generation with Anthropic
- Speech synthesis (Cartesia or an HTTP endpoint) with on-device fallback
- Audio playback

Press Ctrl+C to end the call. With --transcribe FILE the batch transcriber is
run on a recorded clip instead.
"""

import argparse
import asyncio
import logging
import signal

from asr import CartesiaASR, RealtimeWebSocketASR, TemporaryTokenProvider
from audio_player import SoundDeviceAudioPlayer
from batch_asr import AssemblyAIBatchTranscriber
from call_controller import VoiceCall
from components import PersonaProfile, Role, Turn
from config import VoiceAgentConfig
from llm import AnthropicLLM
from local_tts import Pyttsx3SpeechEngine
from sources import RealTimeMicrophoneSource
from tts import CartesiaTTS, HttpTTS

logger = logging.getLogger("voice_agent")


def build_asr(config: VoiceAgentConfig):
    if config.stt_backend == "assemblyai":
        return RealtimeWebSocketASR(TemporaryTokenProvider(config.assemblyai_api_key),
                                    sample_rate=config.target_sample_rate)
    return CartesiaASR(api_key=config.cartesia_api_key, model=config.stt_model,
                       language=config.stt_language, sample_rate=config.target_sample_rate)


def build_tts(config: VoiceAgentConfig):
    if config.tts_backend == "http":
        return HttpTTS(config.tts_endpoint, timeout=config.synthesis_timeout)
    return CartesiaTTS(api_key=config.cartesia_api_key, model_id=config.tts_model,
                       sample_rate=config.tts_sample_rate, voice_id=config.tts_voice_id,
                       persona_voices=config.tts_persona_voices)


def build_call(config: VoiceAgentConfig, persona: PersonaProfile) -> VoiceCall:
    def print_turn(turn: Turn):
        speaker = "You" if turn.role is Role.USER else persona.specialist
        print(f"{speaker}: {turn.content}")

    def print_error(error: Exception):
        print(f"! {error}")

    return VoiceCall(
        persona,
        audio_source=RealTimeMicrophoneSource(
            device_sample_rate=config.device_sample_rate,
            target_sample_rate=config.target_sample_rate,
            blocksize=config.capture_blocksize,
            device=config.input_device,
        ),
        asr=build_asr(config),
        llm=AnthropicLLM(api_key=config.anthropic_api_key, model=config.llm_model,
                         temperature=config.llm_temperature, max_tokens=config.llm_max_tokens),
        tts=build_tts(config),
        audio_output=SoundDeviceAudioPlayer(device=config.output_device),
        local_engine=Pyttsx3SpeechEngine(),
        batch_asr=AssemblyAIBatchTranscriber(config.assemblyai_api_key,
                                             poll_interval=config.batch_poll_interval,
                                             max_attempts=config.batch_max_attempts),
        config=config,
        on_error=print_error,
        on_new_turn=print_turn,
    )


async def run_call(config: VoiceAgentConfig, persona: PersonaProfile) -> None:
    call = build_call(config, persona)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, stop_event.set)
    except NotImplementedError:
        pass

    try:
        async with call:
            print(f"Connected to {persona.specialist}. Press Ctrl+C to end the call.")
            await stop_event.wait()
    finally:
        await call.aclose()
    print("Call ended.")


async def run_transcription(config: VoiceAgentConfig, path: str) -> None:
    transcriber = AssemblyAIBatchTranscriber(config.assemblyai_api_key,
                                             poll_interval=config.batch_poll_interval,
                                             max_attempts=config.batch_max_attempts)
    with open(path, "rb") as f:
        audio = f.read()
    print(await transcriber.transcribe(audio))


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Talk to an AI specialist.")
    parser.add_argument("--persona-id", type=int, default=1)
    parser.add_argument("--specialist", default="General Physician")
    parser.add_argument("--voice", default=None, help="Voice id for remote synthesis")
    parser.add_argument("--prompt", default="", help="System prompt for the specialist")
    parser.add_argument("--transcribe", metavar="FILE", help="Transcribe a recorded clip and exit")
    parser.add_argument("--env-file", default=None)
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    config = VoiceAgentConfig.from_env(args.env_file)
    logging.basicConfig(level=config.log_level,
                        format="%(asctime)s %(levelname)s %(name)s %(message)s")

    if args.transcribe:
        asyncio.run(run_transcription(config, args.transcribe))
        return

    persona = PersonaProfile(id=args.persona_id, specialist=args.specialist,
                             voice_id=args.voice, agent_prompt=args.prompt)
    asyncio.run(run_call(config, persona))


if __name__ == "__main__":
    main()
