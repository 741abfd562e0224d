"""Assembles streamed tool-call fragments into finished invocations."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from .models import ToolInvocation
from .ports import ToolCallDelta

logger = logging.getLogger(__name__)


@dataclass
class _PendingCall:
    index: int
    id: str
    name: str = ""
    arguments: str = ""
    synthetic_id: bool = False


class ToolCallAccumulator:
    """Merges ToolCallDelta fragments per stream index.

    Fragments may arrive interleaved across indexes. A call whose first
    fragment carries no id gets ``call_<iteration>_<index>``, which is
    unique within a run because the iteration counter only grows.
    Arguments are parsed only in finalize().
    """

    def __init__(self, iteration: int) -> None:
        self._iteration = iteration
        self._calls: dict[int, _PendingCall] = {}

    def __bool__(self) -> bool:
        return bool(self._calls)

    def add(self, delta: ToolCallDelta) -> None:
        call = self._calls.get(delta.index)
        if call is None:
            call = _PendingCall(
                index=delta.index,
                id=delta.id or f"call_{self._iteration}_{delta.index}",
                synthetic_id=not delta.id,
            )
            self._calls[delta.index] = call
        elif delta.id and call.synthetic_id:
            # Late id: provider sent it after the first fragment
            call.id = delta.id
            call.synthetic_id = False
        if delta.name:
            call.name = call.name or delta.name
        if delta.arguments_fragment:
            call.arguments += delta.arguments_fragment

    def finalize(self) -> list[ToolInvocation]:
        """Return calls ordered by stream index, with parsed arguments."""
        finished: list[ToolInvocation] = []
        for index in sorted(self._calls):
            call = self._calls[index]
            finished.append(ToolInvocation(
                id=call.id,
                name=call.name,
                arguments=call.arguments,
                args=parse_arguments(call.arguments),
            ))
        return finished


def parse_arguments(raw: str) -> dict | None:
    """Parse a streamed arguments string. Empty means ``{}``.

    Returns None when the string is not a JSON object.
    """
    if not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Tool call arguments are not valid JSON: %.80s", raw)
        return None
    if not isinstance(value, dict):
        return None
    return value
