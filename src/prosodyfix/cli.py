"""Typer-powered command line for ``prosodyfix``.

``render`` writes a Prosody configuration directory without launching
anything, which is handy for inspecting what a fixture would produce.
``run`` launches a throwaway Prosody instance in the foreground for manual
testing until interrupted.
"""
from __future__ import annotations

import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__, fixture, prosody
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .fixture import FixtureError, Option
from .jid import JIDError
from .logging import OperationScope, StructuredLogger
from .templates import TemplateEngine, TemplateRenderError
from .tls import TLSIssueError

console = Console()

app = typer.Typer(
    add_completion=False,
    help="Configure and launch Prosody for XMPP integration tests.",
    no_args_is_help=True,
)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to prosodyfix's YAML config file.",
)
VHOST_OPTION = typer.Option(
    None,
    "--vhost",
    help="Virtual host to serve (repeatable). Defaults to localhost.",
)
MODULE_OPTION = typer.Option(
    None,
    "--module",
    help="Additional Prosody module to enable (repeatable).",
)
TRUST_ALL_OPTION = typer.Option(
    False,
    "--trust-all",
    help="Accept every certificate presented over s2s.",
)
C2S_OPTION = typer.Option(
    True,
    "--c2s/--no-c2s",
    help="Listen for client connections on a random loopback port.",
)
S2S_OPTION = typer.Option(
    False,
    "--s2s/--no-s2s",
    help="Listen for server connections on a random loopback port.",
)
CERT_OPTION = typer.Option(
    None,
    "--cert",
    help="Issue a self-signed certificate for this hostname (repeatable).",
)
OUT_DIR_OPTION = typer.Option(
    ...,
    "--out",
    dir_okay=True,
    file_okay=False,
    help="Directory that receives the rendered configuration files.",
)
USER_OPTION = typer.Option(
    None,
    "--user",
    help="Account to register, e.g. me@localhost. Defaults to me@<first vhost>.",
)
PASSWORD_OPTION = typer.Option(
    prosody.DEFAULT_PASSWORD,
    "--password",
    help="Password for --user.",
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    templates: TemplateEngine


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    if isinstance(ctx.obj, RuntimeContext):
        return ctx.obj
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine.with_overrides(config.templates_dir),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the prosodyfix version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"prosodyfix {__version__}")
        raise typer.Exit(code=int(ExitCode.OK))

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=int(ExitCode.OK))


def _build_options(
    *,
    vhosts: Sequence[str] | None,
    modules: Sequence[str] | None,
    certs: Sequence[str] | None,
    trust_all: bool,
    c2s: bool,
    s2s: bool,
) -> list[Option]:
    options: list[Option] = []
    if c2s:
        options.append(prosody.listen_c2s())
    if s2s:
        options.append(prosody.listen_s2s())
    if vhosts:
        options.append(prosody.vhost(*vhosts))
    for hostname in certs or ():
        options.append(fixture.cert(hostname))
    if modules:
        options.append(prosody.modules(*modules))
    if trust_all:
        options.append(prosody.trust_all())
    return options


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: ExitCode = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _summary_table(cmd: fixture.Cmd, files: Sequence[Path]) -> Table:
    table = Table(title="Prosody fixture", show_header=False)
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_row("Config dir", str(cmd.config_dir))
    table.add_row("VHosts", ", ".join(cmd.config.vhosts))
    table.add_row("Modules", ", ".join(cmd.config.modules) or "-")
    if cmd.c2s_addr is not None:
        table.add_row("C2S", f"[{cmd.c2s_addr[0]}]:{cmd.c2s_addr[1]}")
    if cmd.s2s_addr is not None:
        table.add_row("S2S", f"[{cmd.s2s_addr[0]}]:{cmd.s2s_addr[1]}")
    if cmd.user is not None:
        table.add_row("User", str(cmd.user[0]))
    for path in files:
        table.add_row("File", path.name)
    return table


def _fixture_context(cmd: fixture.Cmd) -> Mapping[str, object]:
    return {
        "config_dir": cmd.config_dir,
        "vhosts": list(cmd.config.vhosts),
        "modules": list(cmd.config.modules),
        "c2s_port": cmd.config.c2s_port,
        "s2s_port": cmd.config.s2s_port,
    }


@app.command()
def render(
    ctx: typer.Context,
    out: Path = OUT_DIR_OPTION,
    vhost: list[str] | None = VHOST_OPTION,
    module: list[str] | None = MODULE_OPTION,
    cert: list[str] | None = CERT_OPTION,
    trust_all: bool = TRUST_ALL_OPTION,
    c2s: bool = C2S_OPTION,
    s2s: bool = S2S_OPTION,
) -> None:
    """Write a Prosody configuration directory without starting Prosody."""
    runtime = _get_runtime(ctx)
    args = {
        "out": str(out),
        "vhost": list(vhost or []),
        "module": list(module or []),
        "cert": list(cert or []),
        "trust_all": trust_all,
        "c2s": c2s,
        "s2s": s2s,
    }
    with runtime.logger.operation("render", args=args, target={"kind": "dir", "path": out}) as op:
        options = _build_options(
            vhosts=vhost,
            modules=module,
            certs=cert,
            trust_all=trust_all,
            c2s=c2s,
            s2s=s2s,
        )
        try:
            cmd = prosody.new(
                *options,
                prosody.default_config,
                settings=runtime.config,
                templates=runtime.templates,
                config_dir=out,
            )
        except (JIDError, OSError, TemplateRenderError, TLSIssueError, FixtureError) as exc:
            _command_error(op, str(exc))
        with cmd:
            files = cmd.write_files()
            for path in files:
                op.add_step("file.write", detail=path)
            console.print(_summary_table(cmd, files))
            console.print(
                "[yellow]Note[/yellow]: user registration only happens when the fixture runs."
            )
            op.success(
                "Rendered Prosody configuration.",
                changed=len(files),
                context=_fixture_context(cmd),
            )


@app.command("run")
def run_command(
    ctx: typer.Context,
    vhost: list[str] | None = VHOST_OPTION,
    module: list[str] | None = MODULE_OPTION,
    cert: list[str] | None = CERT_OPTION,
    trust_all: bool = TRUST_ALL_OPTION,
    c2s: bool = C2S_OPTION,
    s2s: bool = S2S_OPTION,
    user: str | None = USER_OPTION,
    password: str = PASSWORD_OPTION,
) -> None:
    """Launch a throwaway Prosody instance until interrupted (Ctrl+C)."""
    runtime = _get_runtime(ctx)
    args = {
        "vhost": list(vhost or []),
        "module": list(module or []),
        "cert": list(cert or []),
        "trust_all": trust_all,
        "c2s": c2s,
        "s2s": s2s,
        "user": user,
    }
    with runtime.logger.operation("run", args=args, target={"kind": "daemon"}) as op:
        options = _build_options(
            vhosts=vhost,
            modules=module,
            certs=cert,
            trust_all=trust_all,
            c2s=c2s,
            s2s=s2s,
        )
        if user is not None:
            options.append(prosody.create_user(user, password))
        try:
            with prosody.run(
                *options,
                settings=runtime.config,
                templates=runtime.templates,
            ) as cmd:
                op.add_step("daemon.start", detail={"pid": cmd.pid})
                console.print(_summary_table(cmd, []))
                console.print("Prosody is running; press Ctrl+C to stop.")
                try:
                    while cmd.running:
                        time.sleep(0.5)
                except KeyboardInterrupt:
                    op.add_step("daemon.stop", detail="interrupted")
                    op.success("Prosody stopped.", context=_fixture_context(cmd))
                    return
                output = cmd.read_log().strip()
                if output:
                    console.print(output, markup=False, highlight=False)
                _command_error(
                    op,
                    f"Prosody exited unexpectedly (exit {cmd.stop()}).",
                    rc=ExitCode.PROVIDER,
                )
        except (JIDError, TemplateRenderError, TLSIssueError) as exc:
            _command_error(op, str(exc))
        except (prosody.ProsodyCtlError, FixtureError, OSError) as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)


__all__ = ["app"]
