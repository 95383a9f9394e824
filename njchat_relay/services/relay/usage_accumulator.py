"""
Usage Accumulator Module

Tracks timing and emitted text for one session and produces the final
UsageStats, estimating token counts when the provider reports none.
"""

import math
import time
from typing import Callable, Optional, Tuple

from ...core.models import UsageStats

# Rough chars-per-token ratio for English text
CHARS_PER_TOKEN = 4


class UsageAccumulator:
    """
    Collector for timing and token statistics of one streamed completion.

    Attributes:
        session_start (float): Clock reading when the session started
        first_fragment_at (Optional[float]): Clock reading of the first non-empty fragment
        emitted_char_count (int): Characters of generated text seen so far
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.session_start = clock()
        self.first_fragment_at: Optional[float] = None
        self.emitted_char_count = 0

    def record_fragment(self, text: str):
        if not text:
            return
        if self.first_fragment_at is None:
            self.first_fragment_at = self.clock()
        self.emitted_char_count += len(text)

    def elapsed_ms(self) -> int:
        return int(round((self.clock() - self.session_start) * 1000))

    def estimate(self) -> UsageStats:
        """
        Synthesize usage from emitted characters and elapsed time.

        completion_tokens is round(chars / 4); tokens_per_second is None when
        no time has elapsed.
        """
        now = self.clock()
        elapsed_s = now - self.session_start
        # half-up, so 2 chars count as one token
        completion_tokens = int(math.floor(self.emitted_char_count / CHARS_PER_TOKEN + 0.5))
        ttfb_ms = None
        if self.first_fragment_at is not None:
            ttfb_ms = int(round((self.first_fragment_at - self.session_start) * 1000))

        return UsageStats(
            prompt_tokens=None,
            completion_tokens=completion_tokens,
            total_tokens=completion_tokens,
            tokens_per_second=completion_tokens / elapsed_s if elapsed_s > 0 else None,
            time_to_first_byte_ms=ttfb_ms,
            latency_ms=int(round(elapsed_s * 1000)),
        )

    def finalize(self, provider_usage: Optional[UsageStats]) -> Tuple[UsageStats, int]:
        """
        Returns:
            (usage, latency_ms): provider usage unchanged when present, an
            estimate otherwise; latency is measured in both cases
        """
        latency_ms = self.elapsed_ms()
        if provider_usage is not None:
            return provider_usage, latency_ms
        return self.estimate(), latency_ms
