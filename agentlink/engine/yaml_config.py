"""YAML configuration loader.

Layers a YAML file over the env-derived SessionConfig. Keys the file
does not mention keep their env/default values.

Example YAML:
    session:
      command: /usr/local/bin/claude
      approval_mode: askFirst
      model: sonnet
      allowed_tools: [Read, Grep, Glob]
      approval_timeout_seconds: 90
      persist_dir: ~/.agentlink/sessions

    logging:
      level: DEBUG
"""
from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Any

import yaml

from .config import SessionConfig
from .errors import ConfigError
from .models import ApprovalMode

logger = logging.getLogger(__name__)

_FLOAT_FIELDS = {
    "stop_grace_seconds",
    "approval_timeout_seconds",
    "hook_timeout_seconds",
}
_INT_FIELDS = {
    "detail_max_chars",
    "event_queue_size",
    "stderr_tail_lines",
    "max_persisted_turns",
    "max_tool_text_length",
}


def _coerce(name: str, value: Any, source: str) -> Any:
    try:
        if name == "approval_mode":
            return ApprovalMode(value)
        if name in _FLOAT_FIELDS:
            return float(value)
        if name in _INT_FIELDS:
            return int(value)
        if name == "allowed_tools":
            if isinstance(value, str):
                return [t.strip() for t in value.split(",") if t.strip()]
            return [str(t) for t in value]
        if name == "persist_dir" and value:
            return str(Path(str(value)).expanduser())
    except (TypeError, ValueError) as exc:
        raise ConfigError(source, f"bad value for {name!r}: {exc}") from exc
    return value


def load_yaml_config(
    path: str | Path,
    base: SessionConfig | None = None,
) -> SessionConfig:
    """Load a YAML file and apply its ``session`` section over *base*.

    Raises FileNotFoundError when *path* does not exist and ConfigError
    when the document is not a mapping or carries invalid values.
    """
    path = Path(path)
    source = str(path)
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise ConfigError(source, str(exc)) from exc

    if not isinstance(raw, dict):
        raise ConfigError(source, "top level must be a mapping")

    config = base if base is not None else SessionConfig.from_env()
    session = raw.get("session") or {}
    if not isinstance(session, dict):
        raise ConfigError(source, "'session' must be a mapping")

    known = {f.name for f in dataclasses.fields(SessionConfig)}
    updates: dict[str, Any] = {}
    for key, value in session.items():
        if key not in known:
            logger.warning("load_yaml_config: ignoring unknown session key %r", key)
            continue
        updates[key] = _coerce(key, value, source)

    log_section = raw.get("logging") or {}
    if isinstance(log_section, dict) and log_section.get("level"):
        updates["log_level"] = str(log_section["level"]).upper()

    logger.info(
        "Parsed YAML config %s: overrides %s",
        path.name, ", ".join(sorted(updates)) if updates else "(none)",
    )
    return dataclasses.replace(config, **updates)
