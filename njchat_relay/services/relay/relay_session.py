"""
Relay Session Module

One user turn: drive a provider adapter, route its text through the
ContentRouter, relay normalized events to the caller and persist the final
assistant message exactly once.

    IDLE -> STREAMING -> COMPLETED | FAILED

A failed, stopped or cancelled session persists nothing; its partial answer
is discarded.
"""

import asyncio
import os
import time
from contextlib import aclosing
from enum import Enum
from typing import AsyncGenerator, Callable, List, Optional

from ...core.error_handling import ErrorContext, ErrorLogger
from ...core.exceptions import ChatNotFoundError, NetworkError, UpstreamHTTPError, UpstreamParseError
from ...core.logging import logger
from ...core.models import ChatTurnRequest, StreamEvent, UsageStats
from ...providers.base import BaseProvider
from ...storage.conversation_store import ConversationStore, PersistedMessage
from .content_router import ContentRouter, RouterState
from .usage_accumulator import UsageAccumulator

STOPPED_REASON = "Generation stopped"


class SessionState(Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


class RelaySession:
    """
    Streams one assistant reply.

    Attributes:
        state (SessionState): Current lifecycle state
        router_state (RouterState): Answer/thinking scan state for this session
        persisted_message (Optional[PersistedMessage]): The assistant message,
            set only after a successful run
    """

    def __init__(
        self,
        store: ConversationStore,
        provider: BaseProvider,
        user_id: str,
        chat_id: str,
        request: ChatTurnRequest,
        user_message_id: Optional[str] = None,
        on_completed: Optional[Callable[[PersistedMessage], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        session_id: Optional[str] = None,
    ):
        self.store = store
        self.provider = provider
        self.user_id = user_id
        self.chat_id = chat_id
        self.request = request
        self.user_message_id = user_message_id
        self.on_completed = on_completed
        self.clock = clock
        self.session_id = session_id or os.urandom(8).hex()

        self.state = SessionState.IDLE
        self.router = ContentRouter()
        self.router_state = RouterState()
        self.provider_usage: Optional[UsageStats] = None
        self.persisted_message: Optional[PersistedMessage] = None
        self._answer_parts: List[str] = []
        self._stop_requested = False

    @property
    def answer_text(self) -> str:
        """Visible answer accumulated so far (thinking text excluded)."""
        return "".join(self._answer_parts)

    def stop(self):
        """
        Ask the session to end without persisting. Takes effect at the next
        upstream item; cancelling the consuming task aborts a pending read.
        """
        self._stop_requested = True

    def _track(self, events: List[StreamEvent]) -> List[StreamEvent]:
        for event in events:
            if event.event == "delta":
                self._answer_parts.append(event.content)
            logger.stream_event(self.session_id, event.event, event.data)
        return events

    def _log_extra(self):
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "chat_id": self.chat_id,
            "model_id": self.request.model,
            "provider_name": self.provider.name,
        }

    def _fail(self, reason: str) -> StreamEvent:
        self.state = SessionState.FAILED
        self._answer_parts.clear()
        return StreamEvent.failed(reason)

    async def run(self) -> AsyncGenerator[StreamEvent, None]:
        """
        Yields:
            StreamEvent: optional ack, delta/thinking increments, then exactly
            one final or error event
        """
        if self.state is not SessionState.IDLE:
            raise RuntimeError("RelaySession.run() may only be called once")

        self.state = SessionState.STREAMING
        accumulator = UsageAccumulator(self.clock)
        logger.info("Relay session started", **self._log_extra())

        try:
            if self.user_message_id:
                yield StreamEvent.ack(self.user_message_id)

            async with aclosing(self.provider.stream_chat(self.request)) as outputs:
                async for output in outputs:
                    if self._stop_requested:
                        break
                    if output.usage is not None:
                        self.provider_usage = output.usage
                    if output.text:
                        accumulator.record_fragment(output.text)
                        for event in self._track(self.router.feed(self.router_state, output.text)):
                            yield event

            if self._stop_requested:
                logger.info("Relay session stopped by caller", **self._log_extra())
                yield self._fail(STOPPED_REASON)
                return

            for event in self._track(self.router.flush(self.router_state)):
                yield event

            usage, latency_ms = accumulator.finalize(self.provider_usage)
            self.persisted_message = self.store.append_message(self.user_id, self.chat_id, {
                "role": "assistant",
                "content": self.answer_text,
                "model": self.request.model,
                "usage": usage.to_dict(),
            })
        except (UpstreamHTTPError, NetworkError, UpstreamParseError, ChatNotFoundError) as e:
            ErrorLogger.log_relay_failure(e, ErrorContext(
                request_id=self.session_id,
                user_id=self.user_id,
                chat_id=self.chat_id,
                provider_name=self.provider.name,
                model_id=self.request.model,
            ))
            yield self._fail(e.message)
            return
        except (asyncio.CancelledError, GeneratorExit):
            self.state = SessionState.FAILED
            logger.info("Relay session cancelled, partial answer discarded", **self._log_extra())
            raise
        except Exception as e:
            logger.error(f"Unexpected relay session error: {e}", **self._log_extra())
            yield self._fail(f"An unexpected error occurred during streaming: {e}")
            return

        self.state = SessionState.COMPLETED
        logger.info(
            f"Relay session completed | latency={latency_ms}ms",
            message_id=self.persisted_message.id,
            usage=usage.to_dict(),
            **self._log_extra()
        )

        if self.on_completed is not None:
            try:
                self.on_completed(self.persisted_message)
            except Exception as e:
                logger.warning(f"Post-completion hook failed: {e}", **self._log_extra())

        yield StreamEvent.final(self.persisted_message.id, self.request.model, usage, latency_ms)
