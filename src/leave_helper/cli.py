"""CLI for leave-helper: run the webhook service and operate on single events."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from leave_helper import __version__
from leave_helper.config import ConfigError, LeaveHelperConfig
from leave_helper.core.logging import configure_logging
from leave_helper.core.telemetry import init_telemetry
from leave_helper.errors import LeaveHelperError
from leave_helper.events import (
    LEAVE_APPROVAL_EVENT,
    LEAVE_APPROVAL_REVERT_EVENT,
    LEAVE_APPROVAL_V2_EVENT,
)
from leave_helper.handlers import HandlerOutcome

logger = logging.getLogger(__name__)

SERVICE_NAME = "leave-helper"
EVENT_TYPES = (LEAVE_APPROVAL_EVENT, LEAVE_APPROVAL_V2_EVENT, LEAVE_APPROVAL_REVERT_EVENT)


def _load_config() -> LeaveHelperConfig:
    try:
        return LeaveHelperConfig.from_env()
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)


def _configure(config: LeaveHelperConfig) -> None:
    configure_logging(
        level=config.log_level,
        fmt=config.log_format,
        log_root=config.log_root,
        service_name=SERVICE_NAME,
    )


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """leave-helper: mirror approved Lark leaves onto calendars as time-off events."""


@cli.command()
def serve() -> None:
    """Run the Lark webhook service."""
    from leave_helper.connectors.lark_events import run_lark_event_connector

    config = _load_config()
    _configure(config)
    init_telemetry(SERVICE_NAME)
    try:
        asyncio.run(run_lark_event_connector(config))
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    except LeaveHelperError as exc:
        click.echo(f"Startup failed: {exc}", err=True)
        sys.exit(1)


@cli.command()
def check() -> None:
    """Validate configuration and Redis connectivity."""
    config = _load_config()
    _configure(config)
    try:
        asyncio.run(_check(config))
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    except LeaveHelperError as exc:
        click.echo(f"Redis ping failed: {exc}", err=True)
        sys.exit(1)
    click.echo("ok")


async def _check(config: LeaveHelperConfig) -> None:
    from leave_helper.connectors.lark_events import build_store

    store = build_store(config)
    try:
        await store.ping()
    finally:
        await store.aclose()


@cli.command()
@click.argument("event_type", type=click.Choice(EVENT_TYPES))
@click.argument("body_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def dispatch(event_type: str, body_path: Path) -> None:
    """Run one event body from BODY_PATH through the matching handler."""
    config = _load_config()
    _configure(config)
    body = body_path.read_bytes()
    try:
        outcome = asyncio.run(_dispatch(config, event_type, body))
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)

    click.echo(f"{outcome.handler} instance_code={outcome.instance_code}")
    for step in outcome.steps:
        detail = f" ({step.detail})" if step.detail else ""
        click.echo(f"  {step.step:<20} {step.status}{detail}")
    if not outcome.ok:
        sys.exit(2)


async def _dispatch(config: LeaveHelperConfig, event_type: str, body: bytes) -> HandlerOutcome:
    from leave_helper.connectors.lark_events import build_components

    store, calendar, handlers = build_components(config)
    try:
        return await handlers.routes()[event_type](body)
    finally:
        await calendar.aclose()
        await store.aclose()


if __name__ == "__main__":
    cli()
