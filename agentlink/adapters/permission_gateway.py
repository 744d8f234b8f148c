"""Loopback HTTP endpoint that answers the approval hook.

The hook program POSTs ``{toolName, toolInput}`` to ``/approve``; the
gateway renders a human-readable detail string, asks the injected
decision function, and replies ``{approved: bool}``. Malformed bodies,
decision errors and decision timeouts all answer ``approved: false``.

Usage:
    approvals = PendingApprovals()

    async def decide(request: ApprovalRequest) -> bool:
        entry = approvals.create(request.tool_name, request.detail)
        show_prompt(entry)                     # host UI
        return await approvals.wait(entry)

    gateway = PermissionGateway(decide, approvals=approvals)
    port = await gateway.start()
    ...
    await gateway.stop()                       # denies what is still pending
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from aiohttp import web

from agentlink.shared.formatters.tool_detail import DEFAULT_DETAIL_CHARS, format_detail

from .approvals import PendingApprovals

logger = logging.getLogger(__name__)


@dataclass
class ApprovalRequest:
    tool_name: str
    tool_input: Any
    detail: str


DecisionFunction = Callable[[ApprovalRequest], Awaitable[bool]]


class PermissionGateway:
    """aiohttp server bound to 127.0.0.1 on an ephemeral port."""

    def __init__(
        self,
        decide: DecisionFunction,
        *,
        approvals: PendingApprovals | None = None,
        host: str = "127.0.0.1",
        port: int = 0,
        detail_max_chars: int = DEFAULT_DETAIL_CHARS,
        decision_timeout_seconds: float | None = None,
    ) -> None:
        self._decide = decide
        self.approvals = approvals or PendingApprovals()
        self._host = host
        self._requested_port = port
        self._port = 0
        self._detail_max_chars = detail_max_chars
        self._decision_timeout = decision_timeout_seconds
        self._runner: web.AppRunner | None = None
        self._inflight: set[asyncio.Task] = set()

        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.router.add_post("/approve", self._handle_approve)

    @property
    def port(self) -> int:
        return self._port

    @property
    def running(self) -> bool:
        return self._runner is not None

    @property
    def url(self) -> str:
        return f"http://{self._host}:{self._port}/approve"

    async def start(self) -> int:
        """Bind and start serving. Returns the chosen port (idempotent)."""
        if self._runner is not None:
            return self._port
        runner = web.AppRunner(self._app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._requested_port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            await runner.cleanup()
            raise RuntimeError("Permission gateway started but no listening socket was reported.")
        self._runner = runner
        self._port = actual_port
        logger.info("Permission gateway listening on %s:%d", self._host, actual_port)
        return actual_port

    async def stop(self) -> None:
        """Deny outstanding approvals and shut the server down."""
        self.approvals.deny_all()
        # Let decisions waiting on the map observe the denials first.
        await asyncio.sleep(0)
        for task in list(self._inflight):
            task.cancel()
        runner, self._runner = self._runner, None
        if runner is None:
            return
        await asyncio.sleep(0)
        await runner.cleanup()
        logger.info("Permission gateway on port %d stopped", self._port)
        self._port = 0

    @staticmethod
    def _resolve_port(site: web.TCPSite, runner: web.AppRunner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        start = time.monotonic()
        response = await handler(request)
        logger.debug(
            "HTTP %s %s status=%s duration_ms=%.1f",
            request.method, request.path,
            getattr(response, "status", "?"), (time.monotonic() - start) * 1000,
        )
        return response

    async def _handle_approve(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError):
            logger.warning("Rejecting malformed approval request body")
            return web.json_response({"approved": False})
        if not isinstance(body, dict) or not body.get("toolName"):
            logger.warning("Rejecting approval request without toolName")
            return web.json_response({"approved": False})

        tool_name = str(body["toolName"])
        tool_input = body.get("toolInput")
        approval = ApprovalRequest(
            tool_name=tool_name,
            tool_input=tool_input,
            detail=format_detail(tool_name, tool_input, self._detail_max_chars),
        )
        approved = await self._run_decision(approval)
        logger.info("Tool %s %s", tool_name, "approved" if approved else "denied")
        return web.json_response({"approved": approved})

    async def _run_decision(self, approval: ApprovalRequest) -> bool:
        task = asyncio.ensure_future(self._decide(approval))
        self._inflight.add(task)
        try:
            timeout = self._decision_timeout if self._decision_timeout and self._decision_timeout > 0 else None
            await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            # The hook hung up; its decision is no longer wanted.
            task.cancel()
            raise
        finally:
            self._inflight.discard(task)

        if not task.done():
            task.cancel()
            logger.warning(
                "No decision for %s within %.0fs, denying",
                approval.tool_name, self._decision_timeout,
            )
            return False
        if task.cancelled():
            return False
        exc = task.exception()
        if exc is not None:
            logger.error("Approval decision for %s failed: %s", approval.tool_name, exc)
            return False
        return bool(task.result())
