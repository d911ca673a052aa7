"""Command-line interface for anytlsctl.

``anytlsctl deploy`` provisions credentials, writes the sing-box configuration
and (re)starts the container. The remaining commands inspect or tear down an
existing deployment.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.prompt import Prompt
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .credentials import SecretError, SecretStore
from .deploy import Deployer, DeploymentError, DeploymentReport, build_descriptor
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .network import PublicIPProber
from .paths import DeploymentPaths
from .providers.docker import DockerError, DockerProvider, DockerUnavailableError

console = Console()
# Prompts go to stderr so --json keeps stdout machine-readable.
err_console = Console(stderr=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to anytlsctl's YAML config file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of formatted output.",
)
YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Skip the confirmation prompt.",
)
WORKDIR_OPTION = typer.Option(
    None,
    "--workdir",
    file_okay=False,
    help="Directory holding config.json, cert.pem, private.key and uuid.txt.",
)
HOST_PORT_OPTION = typer.Option(
    None,
    "--host-port",
    min=1,
    max=65535,
    help="Port published on the host.",
)
LISTEN_PORT_OPTION = typer.Option(
    None,
    "--listen-port",
    min=1,
    max=65535,
    help="Port sing-box listens on inside the container.",
)
IMAGE_OPTION = typer.Option(
    None,
    "--image",
    help="Container image reference.",
)
COMMON_NAME_OPTION = typer.Option(
    None,
    "--common-name",
    "--cn",
    help="Certificate subject common name (also used as SNI).",
)
DAYS_OPTION = typer.Option(
    None,
    "--days",
    min=1,
    help="Certificate validity in days.",
)
CONTAINER_NAME_OPTION = typer.Option(
    None,
    "--container-name",
    help="Reserved name of the container.",
)
TRANSPORT_OPTION = typer.Option(
    None,
    "--transport",
    help="Transport to publish (tcp or udp). Repeat to publish both.",
)
REGENERATE_TLS_OPTION = typer.Option(
    False,
    "--regenerate-tls",
    help="Replace an existing certificate and key that fail to parse or do not match.",
)
HOST_OPTION = typer.Option(
    None,
    "--host",
    help="Use this host in the link instead of probing the public IP.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Deploy a sing-box anytls server in Docker with a self-signed certificate.

        Credentials and configuration live in one working directory that is
        mounted read-only into the container. Reruns reuse the saved secret and
        certificate and recreate the container.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    paths: DeploymentPaths
    logger: StructuredLogger
    docker: DockerProvider
    prober: PublicIPProber


def _ensure_runtime(
    ctx: typer.Context,
    overrides: Mapping[str, object] | None = None,
) -> RuntimeContext:
    resolved_file = ctx.meta.get("anytlsctl.config_file")
    try:
        config = load_config(config_file=resolved_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=ExitCode.FAILURE) from exc
    runtime = RuntimeContext(
        config=config,
        paths=DeploymentPaths.from_config(config),
        logger=StructuredLogger(config.logs_dir),
        docker=DockerProvider(docker_bin=config.docker.docker_bin),
        prober=PublicIPProber(config.ip_lookup),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(
    ctx: typer.Context,
    overrides: Mapping[str, object] | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext) and not overrides:
        return runtime
    return _ensure_runtime(ctx, overrides)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the anytlsctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"anytlsctl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    if config_file is not None:
        ctx.meta["anytlsctl.config_file"] = config_file

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    hint: str | None = None,
    context: Mapping[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]Error:[/red] {message}", highlight=False)
    if hint:
        console.print(f"Fix: {hint}", markup=False, highlight=False)
    op.error(message, errors=[message], rc=ExitCode.FAILURE, context=dict(context or {}))
    raise typer.Exit(code=ExitCode.FAILURE)


def _console_notify(level: str, message: str) -> None:
    if level == "warning":
        console.print(f"[yellow]Warning:[/yellow] {message}", highlight=False)
        return
    console.print(f"==> {message}", markup=False, highlight=False)


def _confirm_deploy(config: AppConfig) -> bool:
    """Ask the operator to continue; only an explicit ``n`` cancels."""
    err_console.print(
        f"About to deploy the sing-box anytls server ({config.image}).",
        markup=False,
        highlight=False,
    )
    err_console.print(
        f"Files will be stored in: {config.workdir}",
        markup=False,
        highlight=False,
    )
    answer = Prompt.ask(
        "Press Enter to continue, or type n to cancel",
        console=err_console,
        default="",
        show_default=False,
    )
    return answer.strip().lower() != "n"


def _render_report(report: DeploymentReport, config: AppConfig) -> None:
    if report.container_status:
        console.print(report.container_status, markup=False, highlight=False)
    console.print()
    console.print("[green]Deployment complete.[/green]")
    console.print()
    console.print("Connection link:")
    console.print(report.descriptor.to_uri(), markup=False, highlight=False, soft_wrap=True)
    console.print()

    table = Table(title="Node information", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Server", report.public_ip.address)
    table.add_row("Port", str(config.host_port))
    table.add_row("Password", report.secret.value)
    table.add_row("Transports", ", ".join(config.transports))
    console.print(table)

    console.print(f"Configuration directory: {config.workdir}", markup=False, highlight=False)
    console.print(
        f"View logs: {config.docker.docker_bin} logs -f {config.container_name}",
        markup=False,
        highlight=False,
    )
    console.print(
        f"Remove service: {config.docker.docker_bin} rm -f {config.container_name}",
        markup=False,
        highlight=False,
    )
    for warning in report.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}", highlight=False)


@app.command()
def deploy(
    ctx: typer.Context,
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
    workdir: Path | None = WORKDIR_OPTION,
    host_port: int | None = HOST_PORT_OPTION,
    listen_port: int | None = LISTEN_PORT_OPTION,
    image: str | None = IMAGE_OPTION,
    common_name: str | None = COMMON_NAME_OPTION,
    days: int | None = DAYS_OPTION,
    container_name: str | None = CONTAINER_NAME_OPTION,
    transport: list[str] | None = TRANSPORT_OPTION,
    regenerate_tls: bool = REGENERATE_TLS_OPTION,
) -> None:
    """Provision credentials and (re)start the anytls container."""
    overrides: dict[str, object] = {}
    if workdir is not None:
        overrides["workdir"] = str(workdir)
    if host_port is not None:
        overrides["host_port"] = host_port
    if listen_port is not None:
        overrides["listen_port"] = listen_port
    if image:
        overrides["image"] = image
    if common_name:
        overrides["common_name"] = common_name
    if days is not None:
        overrides["days"] = days
    if container_name:
        overrides["container_name"] = container_name
    if transport:
        overrides["transports"] = list(transport)
    if regenerate_tls:
        overrides["regenerate_tls"] = True
    runtime = _get_runtime(ctx, overrides)
    config = runtime.config

    args = {"yes": yes, "json": json_output, **overrides}
    target = {"kind": "container", "name": config.container_name}
    with runtime.logger.operation("deploy", args=args, target=target) as op:
        if not yes and not _confirm_deploy(config):
            console.print("Cancelled.")
            op.success("Deployment cancelled by user.", changed=0)
            raise typer.Exit(code=ExitCode.OK)

        deployer = Deployer(
            config,
            docker=runtime.docker,
            prober=runtime.prober,
            paths=runtime.paths,
            notify=None if json_output else _console_notify,
        )
        try:
            report = deployer.run(op)
        except DeploymentError as exc:
            _command_error(op, str(exc), hint=exc.hint, context={"stage": exc.stage})

        if json_output:
            console.print_json(data=report.to_dict())
        else:
            _render_report(report, config)

        context = {"report": report.to_dict(redact=True)}
        if report.warnings:
            op.warning(
                "Deployment completed with warnings.",
                warnings=report.warnings,
                changed=1,
                context=context,
            )
            return
        op.success("Deployment completed.", changed=1, context=context)


@app.command()
def link(
    ctx: typer.Context,
    host: str | None = HOST_OPTION,
) -> None:
    """Print the connection link for the existing deployment."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "link",
        args={"host": host},
        target={"kind": "container", "name": config.container_name},
    ) as op:
        store = SecretStore(runtime.paths.secret)
        if not store.exists():
            _command_error(
                op,
                f"No saved secret at {runtime.paths.secret}; run `anytlsctl deploy` first.",
            )
        try:
            secret = store.load()
        except SecretError as exc:
            _command_error(op, str(exc))

        resolved_host = host
        if resolved_host is None:
            result = runtime.prober.probe()
            resolved_host = result.address
            if result.placeholder:
                _console_notify(
                    "warning",
                    f"Unable to detect the public IP; replace '{result.address}' manually.",
                )
        descriptor = build_descriptor(config, secret, resolved_host)
        console.print(descriptor.to_uri(), markup=False, highlight=False, soft_wrap=True)
        op.success("Reported connection link.", changed=0, context={"host": resolved_host})


@app.command()
def status(ctx: typer.Context) -> None:
    """Show containers matching the reserved name."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "status",
        target={"kind": "container", "name": config.container_name},
    ) as op:
        try:
            runtime.docker.ensure_available()
            result = runtime.docker.list_matching(config.container_name)
        except DockerUnavailableError as exc:
            _command_error(op, str(exc), hint=exc.hint)
        except DockerError as exc:
            _command_error(op, str(exc))
        console.print((result.stdout or "").rstrip(), markup=False, highlight=False)
        op.success("Reported container status.", changed=0)


@app.command()
def remove(ctx: typer.Context) -> None:
    """Force-remove the container; files in the working directory are kept."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    name = config.container_name
    with runtime.logger.operation(
        "remove",
        target={"kind": "container", "name": name},
    ) as op:
        try:
            runtime.docker.ensure_available()
            exists = runtime.docker.container_exists(name)
            if not exists:
                console.print(f"No container named {name}.", markup=False, highlight=False)
                op.success("Container already absent.", changed=0)
                return
            runtime.docker.remove(name)
        except DockerUnavailableError as exc:
            _command_error(op, str(exc), hint=exc.hint)
        except DockerError as exc:
            _command_error(op, str(exc))
        console.print(f"Removed container {name}.", markup=False, highlight=False)
        op.add_step("container.remove", status="success", detail=name)
        op.success("Container removed.", changed=1)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, (dict, list)):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:  # pragma: no cover - console script entry point
    """Run the Typer application."""
    app()


__all__ = ["app", "main"]
