"""PreToolUse hook that asks the permission gateway for a decision.

Launched by the agent before every tool use:

    python -m agentlink.hooks.approval_hook --port PORT [--timeout SECONDS]

Reads ``{"tool_name", "tool_input"}`` from stdin and writes a
``hookSpecificOutput`` decision to stdout.

    safe tool (Read, Grep, ...)     -> allow, gateway not contacted
    gateway answers                 -> allow / deny as decided, exit 0
    no answer within the timeout    -> deny, exit 0
    gateway unreachable             -> deny, exit 0
    unreadable input or response    -> exit 2 (the agent blocks the tool)

Stdout carries only the decision; logs go to stderr.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any

import aiohttp

from agentlink.engine.errors import ApprovalTimeoutError
from agentlink.engine.models import ALWAYS_ALLOWED_TOOLS, SAFE_TOOLS

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 2

DENY_REASON = "User denied this tool use"
TIMEOUT_REASON = "Approval request timed out"
UNREACHABLE_REASON = "Approval service unavailable"


class HookInputError(ValueError):
    """Stdin or the gateway response could not be interpreted."""


def decision_output(approved: bool, reason: str | None = None) -> dict[str, Any]:
    if reason is None:
        reason = "" if approved else DENY_REASON
    return {
        "hookSpecificOutput": {
            "hookEventName": "PreToolUse",
            "permissionDecision": "allow" if approved else "deny",
            "permissionDecisionReason": reason,
        }
    }


def parse_hook_input(stdin_text: str) -> tuple[str, Any]:
    try:
        data = json.loads(stdin_text)
    except json.JSONDecodeError as exc:
        raise HookInputError(f"hook input is not JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise HookInputError("hook input is not an object")
    return str(data.get("tool_name") or ""), data.get("tool_input") or {}


async def request_decision(
    port: int,
    tool_name: str,
    tool_input: Any,
    *,
    timeout: float = 120.0,
    host: str = "127.0.0.1",
) -> bool:
    """POST the request to the gateway and return its decision.

    Raises ApprovalTimeoutError when no answer arrives in time,
    aiohttp.ClientError / OSError when the gateway is unreachable and
    HookInputError for a response that is not ``{approved: bool}``.
    """
    payload = {"toolName": tool_name, "toolInput": json.dumps(tool_input)}
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    try:
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.post(f"http://{host}:{port}/approve", json=payload) as resp:
                if resp.status != 200:
                    raise HookInputError(f"gateway answered HTTP {resp.status}")
                try:
                    body = await resp.json(content_type=None)
                except (json.JSONDecodeError, aiohttp.ContentTypeError) as exc:
                    raise HookInputError("gateway response is not JSON") from exc
    except asyncio.TimeoutError as exc:
        raise ApprovalTimeoutError(tool_name, timeout) from exc
    if not isinstance(body, dict) or not isinstance(body.get("approved"), bool):
        raise HookInputError("gateway response lacks a boolean 'approved'")
    return body["approved"]


async def run_hook(
    stdin_text: str,
    port: int,
    *,
    timeout: float = 120.0,
    host: str = "127.0.0.1",
) -> tuple[int, str]:
    """Decide one tool use. Returns ``(exit_code, stdout_text)``."""
    try:
        tool_name, tool_input = parse_hook_input(stdin_text)
    except HookInputError as exc:
        logger.error("%s", exc)
        return EXIT_FAILURE, ""

    if tool_name in SAFE_TOOLS or tool_name in ALWAYS_ALLOWED_TOOLS:
        logger.debug("Allowing safe tool %s", tool_name)
        return EXIT_OK, json.dumps(decision_output(True))

    try:
        approved = await request_decision(
            port, tool_name, tool_input, timeout=timeout, host=host,
        )
    except ApprovalTimeoutError as exc:
        logger.warning("%s", exc)
        return EXIT_OK, json.dumps(decision_output(False, TIMEOUT_REASON))
    except (aiohttp.ClientError, OSError) as exc:
        logger.warning("Gateway on port %d unreachable: %s", port, exc)
        return EXIT_OK, json.dumps(decision_output(False, UNREACHABLE_REASON))
    except HookInputError as exc:
        logger.error("%s", exc)
        return EXIT_FAILURE, ""
    return EXIT_OK, json.dumps(decision_output(approved))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="agentlink-approval-hook",
        description="PreToolUse hook relaying tool approvals to the host",
    )
    parser.add_argument("--port", type=int, required=True, help="Permission gateway port")
    parser.add_argument(
        "--timeout", type=float, default=120.0,
        help="Seconds to wait for a decision before denying (default: 120)",
    )
    parser.add_argument("--host", default="127.0.0.1")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=os.getenv("AGENTLINK_HOOK_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    code, output = asyncio.run(
        run_hook(sys.stdin.read(), args.port, timeout=args.timeout, host=args.host)
    )
    if output:
        sys.stdout.write(output)
        sys.stdout.flush()
    return code


if __name__ == "__main__":
    sys.exit(main())
