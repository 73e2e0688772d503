"""Ant node CLI entry point and startup wiring."""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import sys
from importlib import metadata
from typing import Any, NoReturn

import click
from pydantic import ValidationError

from antnode.config import DEFAULT_BLOCK_TIME_S, NodeSettings, load_config
from antnode.core.logging import attach_windows_event_log, setup_logging
from antnode.errors import BootstrapError
from antnode.keystore import open_keystore
from antnode.network import NetworkProfile, resolve_network_profile
from antnode.node import NodeOptions, build_node_options, load_node_factory
from antnode.protocols.node import NodeFactory, NodeHandle
from antnode.provisioning import SignerConfig, configure_signer
from antnode.service import SERVICE_NAME, Program, ServiceRunner, is_windows_service, run_foreground, run_windows_service
from antnode.shutdown import ShutdownOrchestrator, ShutdownOutcome

logger = logging.getLogger(__name__)

_DISTRIBUTION_NAME = "antnode"
_ABANDONED_OUTCOMES = frozenset({ShutdownOutcome.FORCED, ShutdownOutcome.DEADLINE_EXCEEDED})

WELCOME_BANNER = r"""Welcome to Ant....

    ###    ##    ## ########
   ## ##   ###   ##    ##
  ##   ##  ####  ##    ##
 ##     ## ## ## ##    ##
 ######### ##  ####    ##
 ##     ## ##   ###    ##
 ##     ## ##    ##    ##
"""


def _package_version() -> str:
    try:
        return metadata.version(_DISTRIBUTION_NAME)
    except metadata.PackageNotFoundError:
        return "0.0.0+unknown"


@click.group()
@click.version_option(version=_package_version(), prog_name="ant")
def cli() -> None:
    """Ant node CLI."""


def _build_overrides(**options: Any) -> dict[str, Any]:
    bootnodes = options.pop("bootnodes")
    resolver_endpoints = options.pop("resolver_endpoints")
    overrides: dict[str, Any] = {
        "data_dir": options["data_dir"],
        "password": options["password"],
        "password_file": options["password_file"],
        "verbosity": options["verbosity"],
        "network_id": options["network_id"],
        "block_time": options["block_time"],
        "full_node": options["full_node"],
        "bootnode_mode": options["bootnode_mode"],
        "standalone": options["standalone"],
        "api.addr": options["api_addr"],
        "api.debug_api_enable": options["debug_api_enable"],
        "api.debug_api_addr": options["debug_api_addr"],
        "p2p.addr": options["p2p_addr"],
        "clef.enable": options["clef_enable"],
        "clef.endpoint": options["clef_endpoint"],
        "clef.ethereum_address": options["clef_ethereum_address"],
        "node.factory": options["node_factory"],
    }
    # Repeatable options only count as set when given at least once.
    if bootnodes:
        overrides["bootnodes"] = list(bootnodes)
    if resolver_endpoints:
        overrides["resolver_endpoints"] = list(resolver_endpoints)
    return overrides


def _resolve_profile(settings: NodeSettings) -> NetworkProfile:
    return resolve_network_profile(
        settings.network_id,
        DEFAULT_BLOCK_TIME_S,
        bootnodes=settings.bootnodes if settings.explicitly_set("bootnodes") else None,
        block_time=settings.block_time if settings.explicitly_set("block_time") else None,
    )


async def _construct_node(
    factory: NodeFactory,
    settings: NodeSettings,
    signer_config: SignerConfig,
    options: NodeOptions,
) -> NodeHandle:
    node = factory(
        settings.p2p.addr,
        signer_config.public_key,
        signer_config.signer,
        settings.network_id,
        logging.getLogger("antnode.runtime"),
        signer_config.libp2p_key,
        signer_config.pss_key,
        options,
    )
    if inspect.isawaitable(node):
        node = await node
    return node


def _node_program(orchestrator: ShutdownOrchestrator) -> Program:
    async def start() -> None:
        orchestrator.install_signal_handlers()
        await orchestrator.wait_for_interrupt()

    async def stop() -> None:
        try:
            outcome = await orchestrator.shutdown()
        finally:
            orchestrator.remove_signal_handlers()
        logger.debug("shutdown finished: %s", outcome)

    return Program(start=start, stop=stop)


async def _serve_foreground(
    factory: NodeFactory,
    settings: NodeSettings,
    signer_config: SignerConfig,
    options: NodeOptions,
) -> ShutdownOutcome | None:
    node = await _construct_node(factory, settings, signer_config, options)
    orchestrator = ShutdownOrchestrator(node)
    await run_foreground(_node_program(orchestrator))
    return orchestrator.outcome


def _exit_now(code: int) -> NoReturn:
    """Leave the process without unwinding the event loop or its executor."""
    logging.shutdown()
    sys.stdout.flush()
    sys.stderr.flush()
    os._exit(code)


def _close_loop(loop: asyncio.AbstractEventLoop) -> None:
    try:
        pending = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.run_until_complete(loop.shutdown_default_executor())
    finally:
        asyncio.set_event_loop(None)
        loop.close()


def _run_foreground(
    factory: NodeFactory,
    settings: NodeSettings,
    signer_config: SignerConfig,
    options: NodeOptions,
) -> None:
    """Run the node on a loop owned by this thread until it shuts down.

    After a completed shutdown the loop is torn down in order. A forced or
    timed-out shutdown exits the process at once: the node's shutdown task is
    left running, neither cancelled nor awaited.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        outcome = loop.run_until_complete(_serve_foreground(factory, settings, signer_config, options))
    except BaseException:
        _close_loop(loop)
        raise
    if outcome in _ABANDONED_OUTCOMES:
        _exit_now(0)
    _close_loop(loop)


def _serve_windows_service(
    factory: NodeFactory,
    settings: NodeSettings,
    signer_config: SignerConfig,
    options: NodeOptions,
) -> None:
    runner = ServiceRunner()
    node = runner.run_sync(_construct_node(factory, settings, signer_config, options))
    run_windows_service(runner, _node_program(ShutdownOrchestrator(node)))


def _format_validation_error(exc: ValidationError) -> str:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        message = str(error["msg"]).removeprefix("Value error, ")
        messages.append(f"{location}: {message}" if location else message)
    return "; ".join(messages)


@cli.command("start")
@click.option("--config", "config_path", default=None, help="YAML config file (section 'ant' or root mapping).")
@click.option("--data-dir", default=None, help="Data directory; keys are kept in memory when unset.")
@click.option("--password", default=None, help="Password for decrypting keys.")
@click.option("--password-file", default=None, help="Path to a file that contains the password.")
@click.option("--verbosity", default=None, help="0=silent, 1=error, 2=warn, 3=info, 4=debug, 5=trace.")
@click.option("--network-id", type=int, default=None, help="ID of the network.")
@click.option("--bootnode", "bootnodes", multiple=True, help="Initial node to connect to (repeatable).")
@click.option("--block-time", type=int, default=None, help="Chain block time in seconds.")
@click.option("--full-node/--light-node", "full_node", default=None, help="Cache and serve chunks.")
@click.option("--bootnode-mode/--no-bootnode-mode", default=None, help="Run as a boot node.")
@click.option("--standalone/--no-standalone", default=None, help="Do not connect to other nodes.")
@click.option("--api-addr", default=None, help="HTTP API listen address.")
@click.option("--debug-api-enable/--debug-api-disable", default=None, help="Enable the debug HTTP API.")
@click.option("--debug-api-addr", default=None, help="Debug HTTP API listen address.")
@click.option("--p2p-addr", default=None, help="P2P listen address.")
@click.option("--clef-signer-enable/--clef-signer-disable", "clef_enable", default=None, help="Sign with clef.")
@click.option("--clef-signer-endpoint", "clef_endpoint", default=None, help="Clef IPC path or HTTP URL.")
@click.option(
    "--clef-signer-ethereum-address",
    "clef_ethereum_address",
    default=None,
    help="Clef account to use; the first account when unset.",
)
@click.option("--resolver-options", "resolver_endpoints", multiple=True, help="[tld:][contract-addr@]url (repeatable).")
@click.option("--node-factory", default=None, help="Node constructor as module:attribute.")
@click.option("--json-logs", is_flag=True, default=False, help="Emit logs as JSON.")
def start_command(config_path: str | None, json_logs: bool, **options: Any) -> None:
    """Start an ant node."""
    try:
        settings = load_config(config_path, _build_overrides(**options))
    except ValidationError as exc:
        raise click.ClickException(_format_validation_error(exc)) from exc
    except (FileNotFoundError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    windows_service = is_windows_service()
    setup_logging(settings.verbosity, json_output=json_logs)
    if windows_service:
        attach_windows_event_log(SERVICE_NAME)

    click.echo(WELCOME_BANNER)

    try:
        keystore = open_keystore(settings.data_dir)
        signer_config = configure_signer(settings, keystore=keystore)
        logger.info("version: %s", _package_version())

        profile = _resolve_profile(settings)
        options_for_node = build_node_options(settings, profile)
        factory = load_node_factory(settings.node.factory)

        if windows_service:
            _serve_windows_service(factory, settings, signer_config, options_for_node)
        else:
            _run_foreground(factory, settings, signer_config, options_for_node)
    except BootstrapError as exc:
        raise click.ClickException(str(exc)) from exc


__all__ = ["WELCOME_BANNER", "cli"]


if __name__ == "__main__":
    cli()
