"""Command-line interface for the btrfs provisioner."""

import functools
import os
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click
from safir.asyncio import run_with_asyncio
from safir.click import display_help
from safir.kubernetes import initialize_kubernetes
from safir.sentry import initialize_sentry, report_exception

from . import __version__
from .config import Config
from .constants import CONFIG_FILE, CONFIG_FILE_ENV_VAR, NODE_NAME_ENV_VAR
from .factory import Factory

__all__ = ["main", "main_with_sentry"]


def _common(func: Callable[..., Awaitable[None]]) -> Callable[..., None]:
    """Add common Click options, component setup, and error reporting.

    The decorated coroutine is called with a `Factory` as its first
    argument. Any exception it raises is reported to Slack if a webhook is
    configured and then re-raised so that the process exits non-zero.
    """

    @click.option(
        "--debug",
        "-d",
        is_flag=True,
        help="Enable debug logging",
    )
    @click.option(
        "--config-file",
        "-c",
        help="Application configuration file, used if it exists",
        type=Path,
        default=CONFIG_FILE,
    )
    @run_with_asyncio
    @functools.wraps(func)
    async def wrapper(
        *args: Any, config_file: Path, debug: bool, **kwargs: Any
    ) -> None:
        config = _load_config(config_file, debug=debug)
        await initialize_kubernetes()
        async with Factory.standalone(config) as factory:
            slack_client = factory.create_slack_client()
            try:
                await func(factory, *args, **kwargs)
            except Exception as exc:
                await report_exception(exc, slack_client)
                raise

    return wrapper


def _load_config(config_file: Path, *, debug: bool) -> Config:
    """Load the configuration, overriding it from CLI options."""
    # Prefer config file from env var
    if env_config_path := os.getenv(CONFIG_FILE_ENV_VAR):
        config_file = Path(env_config_path)

    if config_file.exists():
        config = Config.from_file(config_file)
    else:
        config = Config()
        config.configure_logging()

    if debug:
        config.debug = debug
        config.configure_logging()

    return config


_node_name_option = click.option(
    "--node-name",
    "-n",
    envvar=NODE_NAME_ENV_VAR,
    required=True,
    help="Name of the node this job runs on",
)


@click.group(
    context_settings={"help_option_names": ["-h", "--help"]},
    invoke_without_command=True,
)
@click.version_option(message="%(version)s", package_name="btrfs-provisioner")
@click.pass_context
def main(ctx: click.Context) -> None:
    """btrfs provisioner command-line interface.

    Without a command, runs the reconciliation controller.
    """
    if ctx.invoked_subcommand is None:
        ctx.invoke(controller)


@main.command()
@click.argument("topic", default=None, required=False, nargs=1)
@click.argument("subtopic", default=None, required=False, nargs=1)
@click.pass_context
def help(ctx: click.Context, topic: str | None, subtopic: str | None) -> None:
    """Show help for any command."""
    display_help(main, ctx, topic, subtopic)


@main.command()
@_common
async def controller(factory: Factory) -> None:
    """Watch Kubernetes and dispatch provisioner jobs."""
    await factory.create_controller().run()


@main.command()
@click.argument("volume_name")
@_node_name_option
@_common
async def delete(
    factory: Factory, *, volume_name: str, node_name: str
) -> None:
    """Delete or archive the subvolume of a persistent volume."""
    provisioner = factory.create_provisioner(node_name)
    await provisioner.delete(volume_name)


@main.command()
@_node_name_option
@_common
async def initialize_node(factory: Factory, *, node_name: str) -> None:
    """Prepare this node for serving volumes."""
    provisioner = factory.create_provisioner(node_name)
    await provisioner.initialize_node()


@main.command()
@click.argument("namespace")
@click.argument("name")
@_node_name_option
@_common
async def provision(
    factory: Factory, *, namespace: str, name: str, node_name: str
) -> None:
    """Provision a volume for a persistent volume claim."""
    provisioner = factory.create_provisioner(node_name)
    await provisioner.provision(namespace, name)


def main_with_sentry() -> None:
    """Call the main command group after initializing Sentry."""
    initialize_sentry(release=__version__)
    main()
