"""Correlation map between gateway requests and host decisions.

Each gated tool use gets a process-unique ``approval-N`` id and a future
the host resolves with ``resolve(request_id, approved)``. Every path out
of ``wait`` removes the entry, so the map never leaks: a decision, the
timeout (denied), cancellation, or ``deny_all`` on teardown.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

_counter = itertools.count(1)


def next_request_id() -> str:
    return f"approval-{next(_counter)}"


@dataclass
class PendingApproval:
    request_id: str
    tool_name: str
    detail: str
    future: asyncio.Future = field(repr=False)
    tool_input: Any = None


class PendingApprovals:
    """requestId -> future map shared by the gateway and the host."""

    def __init__(self) -> None:
        self._pending: dict[str, PendingApproval] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def get(self, request_id: str) -> PendingApproval | None:
        return self._pending.get(request_id)

    @property
    def pending(self) -> list[PendingApproval]:
        return list(self._pending.values())

    def create(self, tool_name: str, detail: str, tool_input: Any = None) -> PendingApproval:
        loop = asyncio.get_running_loop()
        entry = PendingApproval(
            request_id=next_request_id(),
            tool_name=tool_name,
            detail=detail,
            tool_input=tool_input,
            future=loop.create_future(),
        )
        self._pending[entry.request_id] = entry
        logger.info("Approval %s queued for %s", entry.request_id, tool_name)
        return entry

    async def wait(self, entry: PendingApproval, timeout: float | None = None) -> bool:
        """Block until *entry* is decided; a timeout counts as denied."""
        try:
            if timeout is not None and timeout > 0:
                return bool(await asyncio.wait_for(asyncio.shield(entry.future), timeout=timeout))
            return bool(await entry.future)
        except asyncio.TimeoutError:
            logger.warning(
                "Approval %s for %s timed out after %.0fs, denying",
                entry.request_id, entry.tool_name, timeout,
            )
            if not entry.future.done():
                entry.future.set_result(False)
            return False
        finally:
            self._pending.pop(entry.request_id, None)

    def resolve(self, request_id: str, approved: bool) -> bool:
        """Deliver the host's decision. Returns False for unknown/stale ids."""
        entry = self._pending.pop(request_id, None)
        if entry is None:
            logger.debug("resolve: no pending approval %s", request_id)
            return False
        if not entry.future.done():
            entry.future.set_result(bool(approved))
        logger.info("Approval %s resolved: %s", request_id, "allow" if approved else "deny")
        return True

    def deny_all(self) -> int:
        """Resolve every outstanding request as denied."""
        entries = list(self._pending.values())
        self._pending.clear()
        for entry in entries:
            if not entry.future.done():
                entry.future.set_result(False)
        if entries:
            logger.info("Denied %d pending approval(s) on teardown", len(entries))
        return len(entries)
