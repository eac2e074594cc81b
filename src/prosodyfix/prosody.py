"""Options for running integration tests against Prosody.

Typical use inside a test::

    with prosody.run(prosody.listen_c2s(), prosody.trust_all()) as cmd:
        jid, password = cmd.user
        host, port = cmd.c2s_addr
        ...

Every function returning an :data:`~prosodyfix.fixture.Option` only mutates
the fixture; nothing touches Prosody until the fixture is started. Options
that change the configuration never modify ``cmd.config`` in place, they
store an updated copy.
"""
from __future__ import annotations

import subprocess
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path

from . import fixture
from .config import AppConfig, default_app_config
from .fixture import Cmd, Option
from .jid import JID, JIDError
from .models import ProsodyConfig
from .templates import TemplateEngine, TemplateRenderError

CFG_FILE_NAME = "prosody.cfg.lua"
CONFIG_FLAG = "--config"
CONFIG_TEMPLATE = "prosody/prosody.cfg.lua.j2"
TRUSTALL_MODULE = "trustall"
TRUSTALL_SOURCE = f"prosody/mod_{TRUSTALL_MODULE}.lua"
DEFAULT_VHOST = "localhost"
DEFAULT_PASSWORD = "password"


class ProsodyCtlError(RuntimeError):
    """Raised when ``prosodyctl`` cannot be launched or exits non-zero."""

    def __init__(self, message: str, *, returncode: int | None = None) -> None:
        """Record the exit status alongside the message."""
        super().__init__(message)
        self.returncode = returncode


def new(
    *options: Option,
    settings: AppConfig | None = None,
    templates: TemplateEngine | None = None,
    config_dir: Path | None = None,
) -> Cmd:
    """Create a new, unstarted Prosody fixture with *options* applied."""
    settings = settings or default_app_config()
    return fixture.new(
        settings.prosody_bin,
        *options,
        settings=settings,
        templates=templates,
        config_dir=config_dir,
    )


@contextmanager
def run(
    *options: Option,
    settings: AppConfig | None = None,
    templates: TemplateEngine | None = None,
    timeout: float | None = None,
) -> Iterator[Cmd]:
    """Start Prosody with *options* plus defaults and stop it on exit.

    :func:`default_config` is always applied after the caller's options.
    """
    cmd = new(*options, default_config, settings=settings, templates=templates)
    with fixture.running(cmd, timeout=timeout) as started:
        yield started


def config_path(cmd: Cmd) -> Path:
    """Return where the Prosody config file for *cmd* is written."""
    return cmd.config_dir / CFG_FILE_NAME


def render_config(cmd: Cmd, cfg: ProsodyConfig) -> str:
    """Render *cfg* into Prosody's Lua configuration syntax."""
    if not cfg.vhosts:
        raise TemplateRenderError("Prosody configuration requires at least one VirtualHost.")
    return cmd.templates.render_to_string(
        CONFIG_TEMPLATE,
        cfg.template_context(str(cmd.config_dir)),
    )


def config_file(cfg: ProsodyConfig) -> Option:
    """Write a Prosody config file generated from *cfg*.

    The file is rendered immediately so later options no longer affect it, and
    ``prosody`` is pointed at it with ``--config``. Once applied, the defaults
    normally filled in by :func:`default_config` are skipped. This option only
    exists for the rare occasion that you need complete control over the
    configuration.
    """

    def option(cmd: Cmd) -> None:
        cmd.config = cfg
        rendered = render_config(cmd, cfg)
        cmd.add_temp_file(CFG_FILE_NAME, lambda _: rendered)
        cmd.args.extend([CONFIG_FLAG, str(config_path(cmd))])

    return option


def run_ctl(cmd: Cmd, *args: str, timeout: float | None = None) -> None:
    """Run ``prosodyctl --config <path> <args...>`` and wait for it to exit.

    Output is inherited from the current process. A timeout kills
    ``prosodyctl`` and raises :class:`subprocess.TimeoutExpired`.
    """
    timeout = cmd.settings.ctl_timeout if timeout is None else timeout
    command = [cmd.settings.prosodyctl_bin, CONFIG_FLAG, str(config_path(cmd)), *args]
    action = args[0] if args else "(no arguments)"
    try:
        result = subprocess.run(command, check=False, timeout=timeout)  # noqa: S603
    except OSError as exc:
        raise ProsodyCtlError(
            f"Failed to launch {cmd.settings.prosodyctl_bin}: {exc}"
        ) from exc
    if result.returncode != 0:
        raise ProsodyCtlError(
            f"{cmd.settings.prosodyctl_bin} {action} failed (exit {result.returncode})",
            returncode=result.returncode,
        )


def ctl(*args: str, timeout: float | None = None) -> Option:
    """Call ``prosodyctl`` with *args* once the fixture has started.

    The ``--config`` flag is supplied automatically.
    """
    return fixture.defer(lambda cmd: run_ctl(cmd, *args, timeout=timeout))


def listen_c2s() -> Option:
    """Listen for client-to-server connections on a random loopback port."""

    def option(cmd: Cmd) -> None:
        # Prosody binds its own sockets, so only a free port number is borrowed.
        port = cmd.c2s_listen(cmd.settings.bind_host)
        cmd.config = replace(cmd.config, c2s_port=port)

    return option


def listen_s2s() -> Option:
    """Listen for server-to-server connections on a random loopback port."""

    def option(cmd: Cmd) -> None:
        port = cmd.s2s_listen(cmd.settings.bind_host)
        cmd.config = replace(cmd.config, s2s_port=port)

    return option


def vhost(*hosts: str) -> Option:
    """Configure one or more virtual hosts.

    Without this option a single ``localhost`` vhost with a self-signed
    certificate is created. When hosts are given explicitly, certificates must
    be provided separately (see :func:`prosodyfix.fixture.cert`).
    """

    def option(cmd: Cmd) -> None:
        cmd.config = replace(cmd.config, vhosts=(*cmd.config.vhosts, *hosts))

    return option


def create_user(address: str, password: str, *, timeout: float | None = None) -> Option:
    """Register a user with ``prosodyctl`` and make it the fixture's identity.

    Equivalent to ``ctl("register", local, domain, password)`` followed by
    recording the account on the fixture.
    """

    def option(cmd: Cmd) -> None:
        jid = JID.parse(address)
        if not jid.localpart:
            raise JIDError(f"User address {address!r} has no localpart.")
        cmd.apply(
            ctl("register", jid.localpart, jid.domainpart, password, timeout=timeout),
            fixture.user(jid, password),
        )

    return option


def modules(*names: str) -> Option:
    """Add *names* to the enabled modules list."""

    def option(cmd: Cmd) -> None:
        cmd.config = replace(cmd.config, modules=(*cmd.config.modules, *names))

    return option


def trust_all() -> Option:
    """Trust every certificate presented over s2s without verification."""

    def option(cmd: Cmd) -> None:
        modules(TRUSTALL_MODULE)(cmd)
        source = cmd.templates.read_source(TRUSTALL_SOURCE)
        cmd.add_temp_file(f"mod_{TRUSTALL_MODULE}.lua", lambda _: source)

    return option


def default_config(cmd: Cmd) -> None:
    """Fill in whatever the caller left unconfigured, then render the config.

    Does nothing when :func:`config_file` was already applied.
    """
    if CONFIG_FLAG in cmd.args:
        return

    if not cmd.config.vhosts:
        vhost(DEFAULT_VHOST)(cmd)
        fixture.cert(DEFAULT_VHOST)(cmd)
    if cmd.user is None:
        create_user(f"me@{cmd.config.vhosts[0]}", DEFAULT_PASSWORD)(cmd)

    config_file(cmd.config)(cmd)


__all__ = [
    "CFG_FILE_NAME",
    "CONFIG_FLAG",
    "ProsodyCtlError",
    "config_file",
    "config_path",
    "create_user",
    "ctl",
    "default_config",
    "listen_c2s",
    "listen_s2s",
    "modules",
    "new",
    "render_config",
    "run",
    "run_ctl",
    "trust_all",
    "vhost",
]
