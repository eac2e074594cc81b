"""Process builder used to configure and launch external test daemons.

A :class:`Cmd` owns a temporary configuration directory, the daemon's command
line, a :class:`~prosodyfix.models.ProsodyConfig` and two queues of work that
options may register:

* temp files, written into the configuration directory right before the
  daemon is started;
* deferred actions, executed once the daemon process is running.

Options are plain callables taking the ``Cmd``. They are applied in order and
the first exception aborts the whole sequence.
"""
from __future__ import annotations

import logging
import os
import shutil
import signal
import socket
import subprocess
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from types import TracebackType
from typing import IO

from .config import AppConfig, default_app_config
from .jid import JID
from .models import ProsodyConfig
from .ports import reserve_port
from .templates import TemplateEngine, write_if_changed
from .tls import issue_self_signed

LOGGER = logging.getLogger(__name__)

Option = Callable[["Cmd"], None]
ContentFactory = Callable[["Cmd"], "str | bytes"]
DeferredAction = Callable[["Cmd"], None]

READY_POLL_INTERVAL = 0.05


class FixtureError(RuntimeError):
    """Raised when a fixture cannot be started, checked or stopped."""


class Cmd:
    """A configurable, launchable instance of an external daemon."""

    def __init__(
        self,
        binary: str,
        *,
        settings: AppConfig | None = None,
        templates: TemplateEngine | None = None,
        config_dir: Path | None = None,
    ) -> None:
        """Create the builder and its configuration directory.

        A caller supplied *config_dir* is created if missing and left in place
        by :meth:`close`; otherwise a private temporary directory is used and
        removed again.
        """
        self.binary = binary
        self.settings = settings or default_app_config()
        self.templates = templates or TemplateEngine.with_overrides(self.settings.templates_dir)
        self.args: list[str] = []
        self.config = ProsodyConfig()
        self.user: tuple[JID, str] | None = None
        self.c2s_addr: tuple[str, int] | None = None
        self.s2s_addr: tuple[str, int] | None = None
        if config_dir is None:
            safe = Path(binary).name or "daemon"
            self._config_dir = Path(tempfile.mkdtemp(prefix=f"{safe}-"))
            self._owns_config_dir = True
        else:
            self._config_dir = config_dir.expanduser().resolve()
            self._config_dir.mkdir(parents=True, exist_ok=True)
            self._owns_config_dir = False
        self._temp_files: list[tuple[str, ContentFactory, int]] = []
        self._deferred: list[DeferredAction] = []
        self._process: subprocess.Popen[bytes] | None = None
        self._log_handle: IO[bytes] | None = None
        self._closed = False

    # ------------------------------------------------------------------
    # Builder surface used by options
    # ------------------------------------------------------------------
    @property
    def config_dir(self) -> Path:
        """Return the directory holding rendered configuration files."""
        return self._config_dir

    @property
    def log_path(self) -> Path:
        """Return the file capturing the daemon's stdout and stderr."""
        return self._config_dir / "daemon.log"

    @property
    def temp_file_names(self) -> list[str]:
        """Return the names of files that will be written on start."""
        return [name for name, _, _ in self._temp_files]

    def c2s_listen(self, host: str, port: int = 0) -> int:
        """Reserve a client-to-server port on *host* and remember its address.

        The port is released again before returning; the daemon binds it on
        start.
        """
        self.c2s_addr = (host, reserve_port(host, port))
        return self.c2s_addr[1]

    def s2s_listen(self, host: str, port: int = 0) -> int:
        """Reserve a server-to-server port on *host* and remember its address."""
        self.s2s_addr = (host, reserve_port(host, port))
        return self.s2s_addr[1]

    def set_user(self, jid: JID, password: str) -> None:
        """Record the identity tests should authenticate as."""
        self.user = (jid, password)

    def add_temp_file(self, name: str, factory: ContentFactory, *, mode: int = 0o644) -> None:
        """Register *factory* to produce ``config_dir/name`` when starting."""
        if Path(name).name != name:
            raise FixtureError(f"Temp file name must not contain directories: {name!r}.")
        self._temp_files.append((name, factory, mode))

    def add_deferred(self, action: DeferredAction) -> None:
        """Register *action* to run after the daemon has been started."""
        self._deferred.append(action)

    def apply(self, *options: Option) -> None:
        """Apply *options* in order, stopping at the first failure."""
        for option in options:
            option(self)

    def write_files(self) -> list[Path]:
        """Write all registered temp files and return the ones that changed.

        Files whose content and mode already match are left untouched.
        """
        written: list[Path] = []
        for name, factory, mode in self._temp_files:
            path = self._config_dir / name
            if write_if_changed(path, factory(self), mode=mode):
                written.append(path)
        return written

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        """Return True while the daemon process has not exited."""
        return self._process is not None and self._process.poll() is None

    @property
    def pid(self) -> int | None:
        """Return the daemon process id once started."""
        return self._process.pid if self._process is not None else None

    def start(self) -> None:
        """Write pending files, launch the daemon and run deferred actions."""
        if self._closed:
            raise FixtureError("Fixture has already been closed.")
        if self._process is not None:
            raise FixtureError(f"{self.binary} has already been started.")

        self.write_files()
        command = [self.binary, *self.args]
        log_handle = self.log_path.open("ab")
        try:
            self._process = subprocess.Popen(  # noqa: S603
                command,
                cwd=self._config_dir,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            log_handle.close()
            raise FixtureError(f"Failed to launch {self.binary}: {exc}") from exc
        self._log_handle = log_handle
        LOGGER.debug("Started %s (pid %s) in %s", command, self._process.pid, self._config_dir)

        try:
            for action in self._deferred:
                action(self)
        except BaseException:
            self.stop()
            raise

    def wait_ready(self, timeout: float | None = None) -> None:
        """Block until the client listener accepts connections.

        Without a recorded client address only an early exit is detected.
        """
        if self._process is None:
            raise FixtureError(f"{self.binary} has not been started.")
        timeout = self.settings.start_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        while True:
            code = self._process.poll()
            if code is not None:
                raise FixtureError(
                    f"{self.binary} exited with status {code} before becoming ready: "
                    f"{self._log_tail() or 'no output'}"
                )
            if self.c2s_addr is None or _accepts_connections(self.c2s_addr):
                return
            if time.monotonic() >= deadline:
                raise FixtureError(
                    f"{self.binary} did not accept connections on "
                    f"{self.c2s_addr[0]} port {self.c2s_addr[1]} within {timeout:.1f}s."
                )
            time.sleep(READY_POLL_INTERVAL)

    def stop(self, timeout: float | None = None) -> int | None:
        """Terminate the daemon, killing it when it ignores SIGTERM."""
        process = self._process
        if process is None:
            return None
        timeout = self.settings.stop_timeout if timeout is None else timeout
        if process.poll() is None:
            _signal_group(process, signal.SIGTERM)
            try:
                process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                LOGGER.debug("%s ignored SIGTERM; killing pid %s", self.binary, process.pid)
                _signal_group(process, signal.SIGKILL)
                process.wait()
        self._close_log()
        LOGGER.debug("Stopped %s (exit %s)", self.binary, process.returncode)
        return process.returncode

    def read_log(self) -> str:
        """Return everything the daemon has written so far."""
        if not self.log_path.exists():
            return ""
        return self.log_path.read_text(encoding="utf-8", errors="replace")

    def close(self) -> None:
        """Stop the daemon and remove a temporary configuration directory."""
        if self._closed:
            return
        try:
            self.stop()
        finally:
            self._closed = True
            if self._owns_config_dir:
                shutil.rmtree(self._config_dir, ignore_errors=True)

    def __enter__(self) -> Cmd:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def _log_tail(self, lines: int = 20) -> str:
        return "\n".join(self.read_log().strip().splitlines()[-lines:])

    def _close_log(self) -> None:
        handle = self._log_handle
        self._log_handle = None
        if handle is not None:
            handle.close()


def new(
    binary: str,
    *options: Option,
    settings: AppConfig | None = None,
    templates: TemplateEngine | None = None,
    config_dir: Path | None = None,
) -> Cmd:
    """Create an unstarted :class:`Cmd` and apply *options* to it.

    The fixture is closed again if any option fails.
    """
    cmd = Cmd(binary, settings=settings, templates=templates, config_dir=config_dir)
    try:
        cmd.apply(*options)
    except BaseException:
        cmd.close()
        raise
    return cmd


@contextmanager
def running(cmd: Cmd, *, timeout: float | None = None) -> Iterator[Cmd]:
    """Start *cmd*, wait for it to become ready and close it on exit."""
    try:
        cmd.start()
        cmd.wait_ready(timeout)
        yield cmd
    finally:
        cmd.close()


# ----------------------------------------------------------------------
# Generic options
# ----------------------------------------------------------------------
def args(*values: str) -> Option:
    """Append *values* to the daemon's command line."""

    def option(cmd: Cmd) -> None:
        cmd.args.extend(values)

    return option


def temp_file(name: str, factory: ContentFactory, *, mode: int = 0o644) -> Option:
    """Write the output of *factory* to ``name`` in the config directory on start."""

    def option(cmd: Cmd) -> None:
        cmd.add_temp_file(name, factory, mode=mode)

    return option


def defer(action: DeferredAction) -> Option:
    """Run *action* after the daemon has been started."""

    def option(cmd: Cmd) -> None:
        cmd.add_deferred(action)

    return option


def user(jid: JID, password: str) -> Option:
    """Record *jid* and *password* as the fixture's default identity."""

    def option(cmd: Cmd) -> None:
        cmd.set_user(jid, password)

    return option


def cert(hostname: str) -> Option:
    """Issue a self-signed certificate for *hostname* into the config directory."""

    def option(cmd: Cmd) -> None:
        material = issue_self_signed(
            hostname,
            key_size=cmd.settings.tls.key_size,
            valid_days=cmd.settings.tls.valid_days,
        )
        cmd.add_temp_file(material.certificate_name, lambda _: material.certificate)
        cmd.add_temp_file(material.key_name, lambda _: material.key, mode=0o600)

    return option


def _accepts_connections(address: tuple[str, int]) -> bool:
    try:
        with socket.create_connection(address, timeout=READY_POLL_INTERVAL * 4):
            return True
    except OSError:
        return False


def _signal_group(process: subprocess.Popen[bytes], signum: int) -> None:
    try:
        os.killpg(process.pid, signum)
    except ProcessLookupError:
        return
    except PermissionError:
        process.send_signal(signum)


__all__ = [
    "Cmd",
    "ContentFactory",
    "DeferredAction",
    "FixtureError",
    "Option",
    "args",
    "cert",
    "defer",
    "new",
    "running",
    "temp_file",
    "user",
]
