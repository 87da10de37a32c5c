# errors.py - Error taxonomy for the voice conversation pipeline
"""
Every failure the pipeline can surface derives from VoiceAgentError.

Only capture start failures (PermissionDenied, DeviceUnavailable) end a call
start. The others are recovered locally and reported through the components'
on_error callbacks as non-fatal notices.
"""


class VoiceAgentError(Exception):
    """Base class for all pipeline errors."""


class PermissionDenied(VoiceAgentError):
    """Microphone access was refused by the OS."""


class DeviceUnavailable(VoiceAgentError):
    """No usable audio input device."""


class ChannelDisconnected(VoiceAgentError):
    """The streaming transcription channel gave up reconnecting."""


class SpeechRecognitionError(VoiceAgentError):
    """The recognition backend sent an error or a payload we cannot read."""


class TranscriptionFailed(VoiceAgentError):
    """A batch transcription job failed."""


class TranscriptionTimeout(VoiceAgentError):
    """A batch transcription job did not finish within the polling budget."""


class ReplyGenerationFailed(VoiceAgentError):
    """The language model could not produce a reply."""


class SynthesisFailed(VoiceAgentError):
    """Remote speech synthesis failed; local synthesis takes over."""


class AudioPlaybackError(VoiceAgentError):
    """The output device could not play a clip."""
