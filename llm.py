# llm.py
import logging
import os
from typing import Dict, List, Optional, Sequence

from anthropic import AsyncAnthropic

from components import LLMInterface, Turn, turns_as_messages
from errors import ReplyGenerationFailed

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI medical assistant. Provide concise, accurate medical information. "
    "Remember that you are not a replacement for professional medical advice, diagnosis, or treatment."
)

VOICE_STYLE = (
    "You are speaking in a voice conversation. Keep your responses natural and conversational, "
    "as if speaking aloud. Avoid using markdown formatting or complex punctuation."
)

# Stands in for the user when the agent opened the call with a greeting.
CALL_OPENER = "(The call has connected.)"


def build_messages(turns: Sequence[Turn]) -> List[Dict[str, str]]:
    """
    Chat messages for the transcript.

    Consecutive turns from the same speaker are merged and the list always
    starts with a user message.
    """
    messages: List[Dict[str, str]] = []
    for message in turns_as_messages(turns):
        if messages and messages[-1]["role"] == message["role"]:
            messages[-1]["content"] += "\n" + message["content"]
        else:
            messages.append(dict(message))
    if messages and messages[0]["role"] == "assistant":
        messages.insert(0, {"role": "user", "content": CALL_OPENER})
    return messages


class AnthropicLLM(LLMInterface):
    def __init__(self,
                 api_key: Optional[str] = None,
                 model: str = "claude-sonnet-4-20250514",
                 temperature: float = 0.7,
                 max_tokens: int = 500):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not self.api_key:
            raise ValueError("ANTHROPIC_API_KEY not found in environment")

        self.client = AsyncAnthropic(api_key=self.api_key)
        logger.info("[LLM] Initialized with model: %s", model)

    async def generate_reply(self, turns: Sequence[Turn], system_prompt: str) -> str:
        """Send the whole transcript and return the complete reply text."""
        messages = build_messages(turns)
        if not messages:
            raise ReplyGenerationFailed("No conversation to reply to")

        system = f"{system_prompt or DEFAULT_SYSTEM_PROMPT}\n\n{VOICE_STYLE}"
        logger.info("[LLM] Sending %d messages", len(messages))

        reply = ""
        try:
            async with self.client.messages.stream(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                system=system,
                messages=messages
            ) as stream:
                async for text in stream.text_stream:
                    if text:
                        reply += text
        except Exception as e:
            logger.error("[LLM] Error in Anthropic API call: %s", e)
            raise ReplyGenerationFailed(str(e)) from e

        reply = reply.strip()
        if not reply:
            raise ReplyGenerationFailed("Empty reply")
        logger.info("[LLM] Reply completed: %r", reply[:100])
        return reply
