"""Config file loading and auto-discovery for alertflow.

Searches for ``alertflow.yaml`` in the current directory and parent
directories, parses it, expands ``${VAR}`` / ``${VAR:-default}`` references
from the environment, and resolves relative paths against the config
file's location.
"""

from __future__ import annotations

import os
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from alertflow.models import (
    Alert,
    AlertRule,
    EscalationPolicy,
    EscalationStep,
    NotificationChannel,
    Severity,
)
from alertflow.rules.conditions import compile_condition

CONFIG_FILENAME = "alertflow.yaml"

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")

_TRUE = frozenset({"true", "yes", "on", "1"})
_FALSE = frozenset({"false", "no", "off", "0"})


@dataclass(frozen=True)
class AlertflowConfig:
    """Parsed alertflow configuration."""

    config_path: Path | None = None
    poll_interval_seconds: float = 30.0
    realtime_bypasses_cooldown: bool = True
    send_timeout_seconds: float = 10.0
    history_limit: int = 50
    max_alerts: int = 1000
    action_base_url: str | None = None
    default_escalation_policy: str | None = "default_escalation"
    use_default_rules: bool = True
    audit_log: str | None = None
    metrics_file: str | None = None
    log_level: str = "INFO"
    channels: list[dict[str, Any]] = field(default_factory=list)
    escalation_policies: list[dict[str, Any]] = field(default_factory=list)
    rules: list[dict[str, Any]] = field(default_factory=list)


def find_config(start: Path | None = None) -> Path | None:
    """Walk from *start* (default ``cwd()``) up to the filesystem root.

    Returns the first ``alertflow.yaml`` found, or ``None``.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
) -> AlertflowConfig:
    """Load an alertflow config file.

    Resolution order:

    1. Explicit *path* (error if it doesn't exist).
    2. Auto-discover by walking parent directories.
    3. Return an empty ``AlertflowConfig`` (all defaults).
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path).resolve()
        if not config_path.is_file():
            msg = f"Config file not found: {config_path}"
            raise FileNotFoundError(msg)
    elif auto_discover:
        config_path = find_config()

    if config_path is None:
        return AlertflowConfig()

    return _parse_config(config_path)


def expand_env(value: Any, environ: dict[str, str] | None = None) -> Any:
    """Recursively expand ``${VAR}`` references in strings.

    An unset variable without a default expands to the empty string.
    """
    env = os.environ if environ is None else environ

    if isinstance(value, str):
        return _ENV_REF.sub(lambda m: env.get(m.group(1), m.group(2) or ""), value)
    if isinstance(value, dict):
        return {k: expand_env(v, env) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env(v, env) for v in value]
    return value


def parse_bool(value: Any, key: str) -> bool:
    """Strict boolean for config switches (quoted and env-expanded values too)."""
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    msg = f"'{key}' must be a boolean (true/false, yes/no, 1/0), got {value!r}"
    raise ValueError(msg)


def _parse_config(config_path: Path) -> AlertflowConfig:
    """Read and parse a YAML config file, resolving relative paths."""
    text = config_path.read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}

    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        raise ValueError(msg)

    data = expand_env(data)
    base = config_path.parent

    def _resolve(key: str) -> str | None:
        val = data.get(key)
        if not val:
            return None
        return str((base / val).resolve())

    def _list(key: str) -> list[dict[str, Any]]:
        val = data.get(key) or []
        if not isinstance(val, list):
            msg = f"'{key}' must be a list in {config_path}"
            raise ValueError(msg)
        return val

    defaults = AlertflowConfig()
    return AlertflowConfig(
        config_path=config_path,
        poll_interval_seconds=float(
            data.get("poll_interval_seconds", defaults.poll_interval_seconds)
        ),
        realtime_bypasses_cooldown=parse_bool(
            data.get("realtime_bypasses_cooldown", defaults.realtime_bypasses_cooldown),
            "realtime_bypasses_cooldown",
        ),
        send_timeout_seconds=float(
            data.get("send_timeout_seconds", defaults.send_timeout_seconds)
        ),
        history_limit=int(data.get("history_limit", defaults.history_limit)),
        max_alerts=int(data.get("max_alerts", defaults.max_alerts)),
        action_base_url=data.get("action_base_url") or None,
        default_escalation_policy=data.get(
            "default_escalation_policy", defaults.default_escalation_policy,
        ),
        use_default_rules=parse_bool(
            data.get("use_default_rules", defaults.use_default_rules), "use_default_rules",
        ),
        audit_log=_resolve("audit_log"),
        metrics_file=_resolve("metrics_file"),
        log_level=str(data.get("log_level", defaults.log_level)).upper(),
        channels=_list("channels"),
        escalation_policies=_list("escalation_policies"),
        rules=_list("rules"),
    )


# --- Builders: raw config lists -> validated models ---


def build_channels(config: AlertflowConfig) -> list[NotificationChannel]:
    """Build channels from ``channels:`` entries.

    Each entry carries ``id``, ``name``, ``type`` and a ``config`` mapping of
    transport settings, plus optional ``enabled``, ``severity_filter`` and
    ``rate_limit_minutes``.
    """
    channels = []
    for entry in config.channels:
        data = dict(entry)
        transport = dict(data.pop("config", None) or {})
        transport["type"] = data.pop("type", transport.get("type"))
        data["config"] = transport
        data.setdefault("name", data.get("id", ""))
        try:
            channels.append(NotificationChannel.model_validate(data))
        except ValueError as exc:
            msg = f"Invalid channel {entry.get('id', '?')!r}: {exc}"
            raise ValueError(msg) from exc
    return channels


def min_severity_condition(minimum: Severity) -> Callable[[Alert], bool]:
    """Escalation-step condition: alert severity is at least *minimum*."""

    def condition(alert: Alert) -> bool:
        return alert.severity.at_least(minimum)

    condition.__name__ = f"min_severity_{minimum.value}"
    return condition


def build_policies(config: AlertflowConfig) -> list[EscalationPolicy]:
    """Build escalation policies from ``escalation_policies:`` entries.

    A step may carry ``min_severity`` as its condition.
    """
    policies = []
    for entry in config.escalation_policies:
        try:
            steps = []
            for raw in entry.get("steps") or []:
                min_sev = raw.get("min_severity")
                steps.append(
                    EscalationStep(
                        delay_minutes=raw.get("delay_minutes", 0),
                        channel_ids=raw.get("channels") or raw.get("channel_ids") or [],
                        condition=(
                            min_severity_condition(Severity(min_sev)) if min_sev else None
                        ),
                    )
                )
            policies.append(
                EscalationPolicy(
                    id=entry["id"],
                    name=entry.get("name", entry["id"]),
                    enabled=entry.get("enabled", True),
                    steps=steps,
                )
            )
        except (KeyError, ValueError) as exc:
            msg = f"Invalid escalation policy {entry.get('id', '?')!r}: {exc}"
            raise ValueError(msg) from exc
    return policies


def build_rules(config: AlertflowConfig) -> list[AlertRule]:
    """Build rules from ``rules:`` entries with threshold conditions."""
    rules = []
    for entry in config.rules:
        try:
            rules.append(
                AlertRule(
                    id=entry["id"],
                    name=entry.get("name", entry["id"]),
                    type=entry["type"],
                    severity=entry["severity"],
                    condition=compile_condition(entry["condition"]),
                    cooldown_seconds=entry.get("cooldown_seconds", 300),
                    auto_resolve=entry.get("auto_resolve", False),
                    escalation_policy_id=entry.get("escalation_policy"),
                    description=entry.get("description", ""),
                )
            )
        except (KeyError, TypeError, ValueError) as exc:
            msg = f"Invalid rule {entry.get('id', '?')!r}: {exc}"
            raise ValueError(msg) from exc
    return rules
