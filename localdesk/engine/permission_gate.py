"""Human-in-the-loop approval for individual tool calls.

Each pending request is an asyncio.Future keyed by tool-use id. The
waiter races that future against the run's abort event, so an abort
resolves every outstanding request to "denied" without polling.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

logger = logging.getLogger(__name__)


class PermissionGate:
    """Pending-approval map private to one runner.

    Invariant: each id is resolved at most once. Resolving an unknown
    id (already resolved, cancelled, or never requested) is a no-op.
    """

    def __init__(self, abort_event: asyncio.Event | None = None) -> None:
        self._abort_event = abort_event or asyncio.Event()
        self._pending: dict[str, asyncio.Future[bool]] = {}

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    async def request(
        self,
        tool_use_id: str,
        tool_name: str = "",
        tool_input: dict[str, Any] | None = None,
    ) -> bool:
        """Wait until ``tool_use_id`` is resolved or the run is aborted.

        Returns the approval decision; abort and cancel_all yield False.
        """
        if self._abort_event.is_set():
            return False
        if tool_use_id in self._pending:
            raise ValueError(f"Permission already pending for {tool_use_id}")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[bool] = loop.create_future()
        self._pending[tool_use_id] = future
        logger.info(
            "Permission requested for %s (%s)", tool_name or "tool", tool_use_id[:8],
        )
        abort_waiter = asyncio.ensure_future(self._abort_event.wait())
        try:
            await asyncio.wait(
                {future, abort_waiter},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if future.done() and not future.cancelled():
                return future.result()
            logger.info("Permission wait for %s ended by abort", tool_use_id[:8])
            return False
        finally:
            abort_waiter.cancel()
            self._pending.pop(tool_use_id, None)
            if not future.done():
                future.set_result(False)

    def resolve(self, tool_use_id: str, approved: bool) -> bool:
        """Deliver a decision. Returns False when the id is not pending."""
        future = self._pending.pop(tool_use_id, None)
        if future is None or future.done():
            logger.debug("Ignoring resolution for unknown id %s", tool_use_id[:8])
            return False
        future.set_result(bool(approved))
        return True

    def cancel_all(self) -> None:
        """Resolve every pending request as denied."""
        pending = list(self._pending.items())
        self._pending.clear()
        for tool_use_id, future in pending:
            if not future.done():
                future.set_result(False)
                logger.debug("Cancelled permission request %s", tool_use_id[:8])
