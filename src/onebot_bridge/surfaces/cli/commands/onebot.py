from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, NoReturn, Optional

import typer

from ....core.logging_utils import setup_rotating_logger
from ....integrations.onebot.caches import BridgeRegistry
from ....integrations.onebot.config import (
    DEFAULT_ACCOUNT_ID,
    OneBotConfig,
    load_onebot_config,
)
from ....integrations.onebot.errors import OneBotConfigError, OneBotError
from ....integrations.onebot.outbound import (
    OutboundDispatcher,
    format_target,
    parse_target,
)
from ....integrations.onebot.runtime import ReplyRuntime
from ....integrations.onebot.service import start_account
from ....integrations.onebot.transport import OneBotTransport
from .utils import load_reply_runtime

DEFAULT_CONFIG_PATH = Path("onebot.yml")
SEND_CONNECT_TIMEOUT_SECONDS = 10.0


def _load_accounts(
    path: Path, raise_exit: Callable[..., NoReturn]
) -> dict[str, OneBotConfig]:
    try:
        return load_onebot_config(path)
    except OneBotConfigError as exc:
        raise_exit(str(exc), cause=exc)


async def _send_once(
    config: OneBotConfig, to: str, text: str, *, logger: logging.Logger
) -> int:
    target = parse_target(to)
    transport = OneBotTransport.from_config(config, logger=logger)
    await transport.connect()
    try:
        if not transport.has_http and not await transport.wait_connected(
            SEND_CONNECT_TIMEOUT_SECONDS
        ):
            raise OneBotError(f"Could not connect to {config.ws_url}")
        dispatcher = OutboundDispatcher(config, transport, logger=logger)
        return await dispatcher.send_text(target, text)
    finally:
        await transport.disconnect()


async def _run_accounts(
    accounts: dict[str, OneBotConfig],
    runtime: ReplyRuntime,
    *,
    logger: logging.Logger,
) -> None:
    registry = BridgeRegistry()
    services = []
    try:
        for config in accounts.values():
            services.append(
                await start_account(
                    config, registry=registry, runtime=runtime, logger=logger
                )
            )
        await asyncio.Event().wait()
    finally:
        for service in services:
            await service.stop()


def register_onebot_commands(
    app: typer.Typer,
    *,
    raise_exit: Callable[..., NoReturn],
) -> None:
    @app.command("check-config")
    def check_config(
        config_path: Path = typer.Option(
            DEFAULT_CONFIG_PATH, "--config", "-c", help="YAML config path"
        ),
    ) -> None:
        """Validate the config and list configured accounts."""
        accounts = _load_accounts(config_path, raise_exit)
        for account_id, config in accounts.items():
            transports = ["ws"]
            if config.http_url:
                transports.append("http")
            if config.reverse_ws_port:
                transports.append(f"reverse:{config.reverse_ws_port}")
            typer.echo(
                f"{account_id}: {config.ws_url} "
                f"transports={','.join(transports)} "
                f"admins={len(config.admins)} "
                f"reaction={config.reaction.mode.value}"
            )

    @app.command("parse-target")
    def parse_target_command(
        target: str = typer.Argument(..., help="group:<id>, guild:<id>:<id>, private:<id> or <id>"),
    ) -> None:
        """Show how an outbound target string is interpreted."""
        try:
            parsed = parse_target(target)
        except OneBotError as exc:
            raise_exit(str(exc), cause=exc)
        typer.echo(f"{type(parsed).__name__} {format_target(parsed)}")

    @app.command("send")
    def send(
        target: str = typer.Argument(..., help="Destination target string"),
        text: str = typer.Argument(..., help="Message text"),
        config_path: Path = typer.Option(
            DEFAULT_CONFIG_PATH, "--config", "-c", help="YAML config path"
        ),
        account: str = typer.Option(DEFAULT_ACCOUNT_ID, "--account", help="Account id"),
    ) -> None:
        """Send one text message and exit."""
        accounts = _load_accounts(config_path, raise_exit)
        config = accounts.get(account)
        if config is None:
            raise_exit(f"Unknown account {account!r}")
        logger = setup_rotating_logger("onebot-bridge", level=logging.WARNING)
        try:
            sent = asyncio.run(_send_once(config, target, text, logger=logger))
        except OneBotError as exc:
            raise_exit(str(exc), cause=exc)
        typer.echo(f"Sent {sent} message(s) to {target}")

    @app.command("run")
    def run(
        runtime_spec: str = typer.Option(
            ..., "--runtime", help="Reply runtime as module:attribute"
        ),
        config_path: Path = typer.Option(
            DEFAULT_CONFIG_PATH, "--config", "-c", help="YAML config path"
        ),
        log_file: Optional[Path] = typer.Option(
            None, "--log-file", help="Rotating log file path"
        ),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    ) -> None:
        """Start every configured account and process events until interrupted."""
        accounts = _load_accounts(config_path, raise_exit)
        try:
            runtime = load_reply_runtime(runtime_spec)
        except (ImportError, AttributeError, TypeError, ValueError) as exc:
            raise_exit(f"Unable to load runtime {runtime_spec!r}: {exc}", cause=exc)
        logger = setup_rotating_logger(
            "onebot-bridge",
            log_file,
            level=logging.DEBUG if verbose else logging.INFO,
        )
        try:
            asyncio.run(_run_accounts(accounts, runtime, logger=logger))
        except KeyboardInterrupt:
            typer.echo("OneBot bridge stopped.")
