"""Detects a model stuck calling the same tool with the same arguments.

Repeats are matched on the raw serialized argument string, so
``{"q": "x"}`` and ``{ "q": "x" }`` are different calls.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoopVerdict:
    """Result of observing one or more tool calls.

    looping: a loop episode was declared by this observation.
    fatal:   the episode budget is exhausted; the run must stop.
    """
    looping: bool = False
    fatal: bool = False
    tool_name: str | None = None
    episodes: int = 0


class LoopDetector:
    """Sliding window over recent (tool name, argument signature) pairs.

    A loop is declared when the last ``threshold`` calls are identical.
    Each declared loop is one episode; the window is cleared so the
    model gets a fresh start after a corrective hint. Episodes beyond
    ``max_episodes`` are fatal.
    """

    def __init__(
        self,
        window: int = 5,
        threshold: int = 3,
        max_episodes: int = 5,
    ) -> None:
        if threshold < 2:
            raise ValueError("threshold must be at least 2")
        if window < threshold:
            raise ValueError("window must be >= threshold")
        self._threshold = threshold
        self._max_episodes = max_episodes
        self._recent: deque[tuple[str, str]] = deque(maxlen=window)
        self._episodes = 0

    @property
    def episodes(self) -> int:
        return self._episodes

    @property
    def window(self) -> list[tuple[str, str]]:
        return list(self._recent)

    def reset(self) -> None:
        self._recent.clear()
        self._episodes = 0

    def observe(self, tool_name: str, signature: str) -> LoopVerdict:
        """Record one call and report whether it completes a loop."""
        self._recent.append((tool_name, signature))
        if len(self._recent) < self._threshold:
            return LoopVerdict(episodes=self._episodes)

        tail = list(self._recent)[-self._threshold:]
        if any(call != tail[0] for call in tail):
            return LoopVerdict(episodes=self._episodes)

        self._episodes += 1
        self._recent.clear()
        fatal = self._episodes > self._max_episodes
        logger.warning(
            "Loop detected: %s repeated %d times (episode %d/%d)",
            tool_name,
            self._threshold,
            self._episodes,
            self._max_episodes,
        )
        return LoopVerdict(
            looping=True,
            fatal=fatal,
            tool_name=tool_name,
            episodes=self._episodes,
        )

    def observe_batch(self, calls: list[tuple[str, str]]) -> LoopVerdict:
        """Observe one iteration's calls in order.

        At most one episode is reported per batch; a fatal verdict wins.
        """
        verdict = LoopVerdict(episodes=self._episodes)
        for name, signature in calls:
            current = self.observe(name, signature)
            if current.looping and not verdict.looping:
                verdict = current
            if current.fatal:
                return current
        return verdict
