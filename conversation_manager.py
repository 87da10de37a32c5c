# conversation_manager.py - Conversation transcript and utterance finalization
"""
ConversationManager owns the call's transcript. It decides when the stream of
partial transcripts for one user utterance is complete, asks the reply
generator for the agent's answer, and appends both turns.

Per utterance: IDLE -> ACCUMULATING -> FINALIZING -> COMMITTED -> IDLE.

A final transcript is finalized immediately. A partial one (re)starts the
silence timer; when it fires, the last partial is finalized. Only one
finalize-and-reply cycle runs at a time; transcripts arriving meanwhile are
dropped.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple

from components import LLMInterface, Role, TranscriptEvent, Turn
from errors import ReplyGenerationFailed
from llm import DEFAULT_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

GREETING = "Hello, I'm your AI medical assistant. Can you tell me your name, age and what is your problem?"
FALLBACK_REPLY = "I'm sorry, I'm having trouble processing your request. Could you please try again?"


class UtteranceState(Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FINALIZING = "finalizing"
    COMMITTED = "committed"


class ConversationManager:
    def __init__(self,
                 llm: LLMInterface,
                 system_prompt: str = "",
                 on_new_turn: Optional[Callable[[Turn], None]] = None,
                 on_error: Optional[Callable[[Exception], None]] = None,
                 silence_timeout: float = 2.0,
                 dedup_window: float = 1.0,
                 greeting: str = GREETING,
                 fallback_reply: str = FALLBACK_REPLY,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 clock: Callable[[], float] = time.time):
        self.llm = llm
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self.on_new_turn = on_new_turn
        self.on_error = on_error
        self.silence_timeout = silence_timeout
        self.dedup_window = dedup_window
        self.greeting = greeting
        self.fallback_reply = fallback_reply
        self._sleep = sleep
        self._clock = clock

        self.state = UtteranceState.IDLE
        self.processing_transcript = False
        self.last_transcript = ""
        self.pending_text = ""
        self._turns: List[Turn] = []
        self._silence_task: Optional[asyncio.Task] = None
        self._reply_task: Optional[asyncio.Task] = None
        # Bumped on reset so replies from an ended call are dropped.
        self.current_session_id = 0

    @property
    def turns(self) -> Tuple[Turn, ...]:
        return tuple(self._turns)

    def start(self) -> Turn:
        """Begin a call: clear state and open with the greeting."""
        self.reset()
        greeting = Turn(Role.AGENT, self.greeting, self._clock())
        self._append(greeting)
        return greeting

    def handle_transcript(self, event: TranscriptEvent) -> None:
        text = event.text
        if not text or not text.strip() or self.processing_transcript:
            return

        self._cancel_silence_timer()
        if event.is_final:
            self._begin_finalize(text)
        else:
            self.state = UtteranceState.ACCUMULATING
            self.pending_text = text
            self._silence_task = asyncio.create_task(self._silence_timer(text))

    async def _silence_timer(self, text: str) -> None:
        await self._sleep(self.silence_timeout)
        self._silence_task = None
        logger.info("[Conversation] Silence detected, processing transcript: %r", text)
        self._begin_finalize(text)

    def _cancel_silence_timer(self) -> None:
        task, self._silence_task = self._silence_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _begin_finalize(self, text: str) -> Optional[asyncio.Task]:
        # Claims the single-flight lock synchronously so two events in the
        # same loop iteration cannot both start a reply.
        if self.processing_transcript or text.strip() == self.last_transcript.strip():
            if not self.processing_transcript:
                self.state = UtteranceState.IDLE
            return None
        self.processing_transcript = True
        self.state = UtteranceState.FINALIZING
        self.pending_text = ""
        self._reply_task = asyncio.create_task(self._finalize(text, self.current_session_id))
        return self._reply_task

    async def _finalize(self, text: str, session_id: int) -> None:
        try:
            self.last_transcript = text
            self._append(Turn(Role.USER, text, self._clock()))
            history = list(self._turns)

            try:
                reply = await self.llm.generate_reply(history, self.system_prompt)
                if not reply or not reply.strip():
                    raise ReplyGenerationFailed("Empty reply")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("[Conversation] Error getting reply: %s", e)
                if session_id == self.current_session_id and self.on_error:
                    self.on_error(e if isinstance(e, ReplyGenerationFailed) else ReplyGenerationFailed(str(e)))
                reply = self.fallback_reply

            if session_id != self.current_session_id:
                logger.info("[Conversation] Discarding reply from an ended call")
                return
            self._append(Turn(Role.AGENT, reply.strip(), self._clock()))
            self.state = UtteranceState.COMMITTED
        finally:
            if session_id == self.current_session_id:
                self.processing_transcript = False
                self.state = UtteranceState.IDLE

    def _append(self, turn: Turn) -> bool:
        for existing in reversed(self._turns):
            if abs(existing.timestamp - turn.timestamp) >= self.dedup_window:
                break
            if existing.role is turn.role and existing.content == turn.content:
                logger.debug("[Conversation] Dropping duplicate %s turn", turn.role.value)
                return False
        self._turns.append(turn)
        if self.on_new_turn:
            self.on_new_turn(turn)
        return True

    async def wait_idle(self) -> None:
        """Wait for the in-flight reply, if any."""
        task = self._reply_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    def reset(self) -> None:
        """Forget the call. An in-flight reply keeps running but is discarded."""
        self.current_session_id += 1
        self._cancel_silence_timer()
        self._reply_task = None
        self._turns.clear()
        self.last_transcript = ""
        self.pending_text = ""
        self.processing_transcript = False
        self.state = UtteranceState.IDLE
