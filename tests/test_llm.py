"""Tests for transcript-to-message mapping and the Anthropic reply generator."""
import pytest

from components import Role, Turn
from errors import ReplyGenerationFailed
from llm import CALL_OPENER, VOICE_STYLE, AnthropicLLM, build_messages


def test_build_messages_prepends_opener_and_maps_roles():
    turns = [Turn(Role.AGENT, "Hello, how can I help?"), Turn(Role.USER, "My ear hurts")]
    assert build_messages(turns) == [
        {"role": "user", "content": CALL_OPENER},
        {"role": "assistant", "content": "Hello, how can I help?"},
        {"role": "user", "content": "My ear hurts"},
    ]


def test_build_messages_merges_consecutive_turns():
    turns = [Turn(Role.USER, "I feel sick"), Turn(Role.USER, "since yesterday"), Turn(Role.AGENT, "Any fever?")]
    assert build_messages(turns) == [
        {"role": "user", "content": "I feel sick\nsince yesterday"},
        {"role": "assistant", "content": "Any fever?"},
    ]


def test_build_messages_empty():
    assert build_messages([]) == []


class FakeStream:
    def __init__(self, chunks, error=None):
        self.chunks = chunks
        self.error = error

    async def __aenter__(self):
        if self.error is not None:
            raise self.error
        return self

    async def __aexit__(self, *exc):
        return False

    @property
    async def text_stream(self):
        for chunk in self.chunks:
            yield chunk


class FakeMessages:
    def __init__(self, chunks=(), error=None):
        self.chunks = list(chunks)
        self.error = error
        self.kwargs = None

    def stream(self, **kwargs):
        self.kwargs = kwargs
        return FakeStream(self.chunks, self.error)


class FakeClient:
    def __init__(self, messages):
        self.messages = messages


def make_llm(messages):
    llm = AnthropicLLM(api_key="test-key", model="test-model", temperature=0.2, max_tokens=50)
    llm.client = FakeClient(messages)
    return llm


@pytest.mark.asyncio
async def test_generate_reply_streams_full_text():
    messages = FakeMessages(["Drink ", "plenty of ", "fluids. "])
    llm = make_llm(messages)

    reply = await llm.generate_reply([Turn(Role.USER, "I have a cold")], "You are a GP.")

    assert reply == "Drink plenty of fluids."
    assert messages.kwargs["model"] == "test-model"
    assert messages.kwargs["max_tokens"] == 50
    assert messages.kwargs["temperature"] == 0.2
    assert messages.kwargs["system"] == "You are a GP.\n\n" + VOICE_STYLE
    assert messages.kwargs["messages"] == [{"role": "user", "content": "I have a cold"}]


@pytest.mark.asyncio
async def test_api_error_raises_reply_generation_failed():
    llm = make_llm(FakeMessages(error=RuntimeError("overloaded")))
    with pytest.raises(ReplyGenerationFailed):
        await llm.generate_reply([Turn(Role.USER, "hello")], "prompt")


@pytest.mark.asyncio
async def test_empty_reply_raises():
    llm = make_llm(FakeMessages(["  "]))
    with pytest.raises(ReplyGenerationFailed):
        await llm.generate_reply([Turn(Role.USER, "hello")], "prompt")


def test_missing_key(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    with pytest.raises(ValueError):
        AnthropicLLM(api_key=None)
