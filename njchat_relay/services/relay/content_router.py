"""
Classification of streamed text into visible answer and hidden reasoning.

Models such as DeepSeek-R1 or Qwen3 wrap their reasoning in <think>...</think>.
The markers may arrive split across any number of provider fragments, so a
suffix that might still become a marker is held back until disambiguated.
"""
from dataclasses import dataclass
from enum import Enum
from typing import List

from ...core.models import StreamEvent

OPEN_MARKER = "<think>"
CLOSE_MARKER = "</think>"


class RouterMode(Enum):
    ANSWER = "answer"
    THINKING = "thinking"


@dataclass
class RouterState:
    """
    Per-session scan state.

    `pending_tail` is processed text that is a strict prefix of the marker
    currently sought; it is never emitted until the next fragment (or the
    final flush) decides what it is.
    """
    mode: RouterMode = RouterMode.ANSWER
    pending_tail: str = ""


def _held_suffix_length(text: str, marker: str) -> int:
    """Length of the longest suffix of `text` that is a non-empty strict prefix of `marker`."""
    for length in range(min(len(marker) - 1, len(text)), 0, -1):
        if text.endswith(marker[:length]):
            return length
    return 0


class ContentRouter:
    """Stateless router; all state lives in the RouterState passed in."""

    @staticmethod
    def _emit(mode: RouterMode, text: str, events: List[StreamEvent]):
        if not text:
            return
        if mode is RouterMode.ANSWER:
            events.append(StreamEvent.delta(text))
        else:
            events.append(StreamEvent.thinking(text))

    def feed(self, state: RouterState, fragment: str) -> List[StreamEvent]:
        """
        Route one fragment.

        Args:
            state: Session scan state, updated in place
            fragment: Raw provider text

        Returns:
            delta/thinking events in emission order
        """
        events: List[StreamEvent] = []
        remaining = state.pending_tail + fragment
        state.pending_tail = ""

        while remaining:
            marker = OPEN_MARKER if state.mode is RouterMode.ANSWER else CLOSE_MARKER
            index = remaining.find(marker)
            if index >= 0:
                self._emit(state.mode, remaining[:index], events)
                remaining = remaining[index + len(marker):]
                state.mode = RouterMode.THINKING if state.mode is RouterMode.ANSWER else RouterMode.ANSWER
                continue

            held = _held_suffix_length(remaining, marker)
            if held:
                self._emit(state.mode, remaining[:-held], events)
                state.pending_tail = remaining[-held:]
            else:
                self._emit(state.mode, remaining, events)
            break

        return events

    def flush(self, state: RouterState) -> List[StreamEvent]:
        """Session end: whatever was held turned out not to be a marker."""
        events: List[StreamEvent] = []
        self._emit(state.mode, state.pending_tail, events)
        state.pending_tail = ""
        return events
