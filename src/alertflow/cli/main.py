"""alertflow CLI: command-line interface for the alerting engine.

Commands:
    run             Poll metrics, dispatch alerts and run escalation timers
    evaluate        Evaluate all rules once against a snapshot file
    channels list   Show configured notification channels
    channels test   Send a test alert through one channel
    audit verify    Verify audit log chain integrity
    audit show      Show recent audit log entries
    validate        Validate the config file
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from alertflow import __version__
from alertflow.audit.logger import AuditLogger, verify_log
from alertflow.config import (
    AlertflowConfig,
    build_channels,
    build_policies,
    build_rules,
    load_config,
)
from alertflow.metrics.provider import (
    FileMetricsProvider,
    MetricsFetchError,
    MetricsProvider,
    StaticMetricsProvider,
    fetch_snapshot,
)
from alertflow.models import AuditAction, Severity
from alertflow.rules.engine import RuleEngine, default_rules
from alertflow.service import AlertingService

# --- Defaults ---

DEFAULT_AUDIT_LOG = "./alertflow-audit.jsonl"
LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"

_SEVERITY_COLORS = {
    Severity.LOW: "green",
    Severity.MEDIUM: "yellow",
    Severity.HIGH: "red",
    Severity.CRITICAL: "magenta",
}


def _severity_badge(severity: Severity) -> str:
    """Return a coloured severity badge for CLI output."""
    return click.style(f"[{severity.value}]", fg=_SEVERITY_COLORS[severity])


def _configure_logging(ctx: click.Context, cfg: AlertflowConfig) -> None:
    level = ctx.find_root().params.get("log_level") or cfg.log_level
    logging.basicConfig(level=level, format=LOG_FORMAT)


def _load_cfg(path: str | None) -> AlertflowConfig:
    """Load config from *path*, or auto-discover (never error when implicit)."""
    if path is not None:
        try:
            return load_config(path)
        except (OSError, ValueError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    try:
        return load_config()
    except Exception:
        return AlertflowConfig()


def _metrics_provider(cfg: AlertflowConfig, metrics_file: str | None) -> MetricsProvider:
    path = metrics_file or cfg.metrics_file
    if path:
        return FileMetricsProvider(path)
    return StaticMetricsProvider()


def _build_service(
    cfg: AlertflowConfig, metrics_file: str | None = None,
) -> AlertingService:
    try:
        return AlertingService.from_config(cfg, _metrics_provider(cfg, metrics_file))
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


config_option = click.option(
    "--config", "config_path", default=None,
    help="Path to alertflow.yaml (default: auto-discover)",
)


# --- Root group ---


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--log-level", default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level (default: from config, else INFO)",
)
def cli(log_level: str | None) -> None:
    """alertflow: operational alerting and escalation."""


# --- run command ---


@cli.command()
@config_option
@click.option("--metrics-file", default=None, help="YAML/JSON metrics snapshot file to poll")
@click.option("--once", is_flag=True, help="Run a single poll tick plus due timers, then exit")
@click.pass_context
def run(
    ctx: click.Context,
    config_path: str | None,
    metrics_file: str | None,
    once: bool,
) -> None:
    """Run the alerting service."""
    cfg = _load_cfg(config_path)
    _configure_logging(ctx, cfg)
    service = _build_service(cfg, metrics_file)

    if once:
        async def _tick() -> int:
            alerts = await service.poll_once()
            await service.run_due_timers()
            return len(alerts)

        count = asyncio.run(_tick())
        click.echo(f"{count} alert(s) triggered.")
        return

    try:
        asyncio.run(service.run())
    except KeyboardInterrupt:
        click.echo("Stopped.")


# --- serve command ---


@cli.command()
@config_option
@click.option("--metrics-file", default=None, help="YAML/JSON metrics snapshot file to poll")
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8080, type=int, help="Bind port")
@click.pass_context
def serve(
    ctx: click.Context,
    config_path: str | None,
    metrics_file: str | None,
    host: str,
    port: int,
) -> None:
    """Run the alerting service with its HTTP API (requires the 'api' extra)."""
    try:
        import uvicorn

        from alertflow.api.app import create_app
    except ImportError:
        click.echo(
            "Error: the HTTP API needs the 'api' extra: pip install 'alertflow[api]'",
            err=True,
        )
        sys.exit(1)

    cfg = _load_cfg(config_path)
    _configure_logging(ctx, cfg)
    service = _build_service(cfg, metrics_file)
    uvicorn.run(create_app(service, run_service=True), host=host, port=port)


# --- evaluate command ---


@cli.command()
@click.argument("snapshot_file", type=click.Path(exists=True, dir_okay=False))
@config_option
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def evaluate(
    ctx: click.Context,
    snapshot_file: str,
    config_path: str | None,
    json_output: bool,
) -> None:
    """Evaluate all rules once against SNAPSHOT_FILE (nothing is sent)."""
    cfg = _load_cfg(config_path)
    _configure_logging(ctx, cfg)

    engine = RuleEngine()
    try:
        rules = (default_rules() if cfg.use_default_rules else []) + build_rules(cfg)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    for rule in rules:
        engine.add_rule(rule)

    try:
        snapshot = asyncio.run(fetch_snapshot(FileMetricsProvider(snapshot_file)))
    except MetricsFetchError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    alerts = engine.evaluate(snapshot)

    if json_output:
        data = [a.model_dump(mode="json") for a in alerts]
        click.echo(json.dumps(data, indent=2))
        return

    if not alerts:
        click.echo("No rules triggered.")
        return
    for alert in alerts:
        click.echo(
            f"  {_severity_badge(alert.severity)} {alert.title:<32} {alert.message}"
        )
    click.echo(f"\n{len(alerts)} alert(s) triggered.")


# --- channels group ---


@cli.group()
def channels() -> None:
    """Notification channel commands."""


@channels.command("list")
@config_option
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def channels_list(ctx: click.Context, config_path: str | None, json_output: bool) -> None:
    """Show configured notification channels."""
    cfg = _load_cfg(config_path)
    _configure_logging(ctx, cfg)
    service = _build_service(cfg)
    items = service.get_channels()

    if json_output:
        click.echo(json.dumps([c.summary() for c in items], indent=2))
        return

    if not items:
        click.echo("No channels configured.")
        return
    for c in items:
        state = (
            click.style("enabled", fg="green")
            if c.enabled else click.style("disabled", fg="red")
        )
        severities = ",".join(c.summary()["severity_filter"])
        click.echo(
            f"  {c.id:<24} {c.type.value:<8} {state:<17} "
            f"severities={severities}  rate_limit={c.rate_limit_minutes:g}m"
        )
    click.echo(f"\n{len(items)} channel(s) configured.")


@channels.command("test")
@click.argument("channel_id")
@config_option
@click.pass_context
def channels_test(ctx: click.Context, channel_id: str, config_path: str | None) -> None:
    """Send a low-severity test alert through CHANNEL_ID."""
    cfg = _load_cfg(config_path)
    _configure_logging(ctx, cfg)
    service = _build_service(cfg)

    if service.channels.get(channel_id) is None:
        click.echo(f"Unknown channel: {channel_id}", err=True)
        sys.exit(1)

    if asyncio.run(service.test_channel(channel_id)):
        click.echo(click.style("OK", fg="green") + f"  test alert sent via {channel_id}")
    else:
        click.echo(click.style("FAIL", fg="red") + f"  test alert via {channel_id} failed")
        sys.exit(1)


# --- validate command ---


@cli.command()
@config_option
def validate(config_path: str | None) -> None:
    """Validate the config file."""
    cfg = _load_cfg(config_path)
    if cfg.config_path is None:
        click.echo("No config file found to validate.")
        return

    errors: list[str] = []

    def _check(
        label: str, build: Callable[[AlertflowConfig], list[Any]],
    ) -> list[Any]:
        try:
            items = build(cfg)
        except ValueError as e:
            errors.append(f"{label}: {e}")
            click.echo(click.style("FAIL", fg="red") + f"  {label}: {e}")
            return []
        click.echo(click.style("OK", fg="green") + f"  {label}: {len(items)} loaded")
        return items

    built_channels = _check("channels", build_channels)
    policies = _check("escalation_policies", build_policies)
    _check("rules", build_rules)

    for channel in built_channels:
        missing = channel.config.missing_fields()
        if channel.enabled and missing:
            errors.append(f"channel {channel.id}: missing {', '.join(missing)}")
            click.echo(
                click.style("FAIL", fg="red")
                + f"  channel {channel.id}: missing {', '.join(missing)}"
            )

    known = {c.id for c in built_channels}
    for policy in policies:
        for i, step in enumerate(policy.steps):
            for cid in step.channel_ids:
                if cid not in known:
                    errors.append(f"policy {policy.id} step {i}: unknown channel {cid}")
                    click.echo(
                        click.style("FAIL", fg="red")
                        + f"  policy {policy.id} step {i}: unknown channel {cid}"
                    )

    if errors:
        click.echo(f"\n{len(errors)} error(s) found.")
        sys.exit(1)
    click.echo(f"\nConfig valid: {cfg.config_path}")


# --- audit group ---


@cli.group()
def audit() -> None:
    """Audit log commands."""


def _audit_path(log_file: str | None) -> Path:
    return Path(log_file or _load_cfg(None).audit_log or DEFAULT_AUDIT_LOG)


@audit.command("verify")
@click.argument("log_file", required=False)
def audit_verify(log_file: str | None) -> None:
    """Verify audit log chain integrity."""
    path = _audit_path(log_file)
    if not path.exists():
        click.echo(f"Audit log not found: {path}")
        sys.exit(1)

    is_valid, errors = verify_log(path)

    if is_valid:
        click.echo(click.style("VALID", fg="green", bold=True)
                   + f": audit log chain is intact ({path})")
    else:
        click.echo(click.style("INVALID", fg="red", bold=True)
                   + f": {len(errors)} error(s) found:")
        for error in errors:
            click.echo(f"  - {error}")
        sys.exit(1)


@audit.command("show")
@click.argument("log_file", required=False)
@click.option("--last", "count", default=20, help="Number of entries to show")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.option(
    "--action-type", default=None,
    type=click.Choice([a.value for a in AuditAction]),
    help="Filter by action type",
)
def audit_show(
    log_file: str | None, count: int, json_output: bool, action_type: str | None,
) -> None:
    """Show recent audit log entries."""
    path = _audit_path(log_file)
    if not path.exists():
        click.echo(f"Audit log not found: {path}")
        sys.exit(1)

    records = AuditLogger(path).read_records()
    if action_type is not None:
        records = [r for r in records if r.action_type == action_type]
    records = records[-count:] if count > 0 else []

    if json_output:
        data = [r.model_dump(mode="json") for r in records]
        click.echo(json.dumps(data, indent=2))
        return

    if not records:
        click.echo("No audit entries found.")
        return
    for r in records:
        click.echo(
            f"  {r.timestamp.isoformat()[:19]}  "
            + click.style(f"{r.action_type.value.upper():<20}", fg="cyan")
            + f" {r.level.value:<8} {r.description}"
        )
    click.echo(f"\n{len(records)} record(s) shown.")
