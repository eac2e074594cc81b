"""Tests for the Prosody configuration options."""
from __future__ import annotations

import subprocess
import sys
from collections.abc import Iterator, Sequence
from dataclasses import replace
from pathlib import Path

import pytest

from prosodyfix import fixture, prosody
from prosodyfix.config import AppConfig
from prosodyfix.fixture import Cmd
from prosodyfix.jid import JID, JIDError
from prosodyfix.models import ProsodyConfig
from prosodyfix.ports import open_listener
from prosodyfix.templates import TemplateRenderError

SLEEPER = "import time; time.sleep(30)"


class DummyResult:
    """Stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0) -> None:
        """Initialise the dummy result."""
        self.returncode = returncode


class CtlRecorder:
    """Capture ``prosodyctl`` invocations instead of running them."""

    def __init__(self, returncode: int = 0) -> None:
        """Prepare an empty call log."""
        self.returncode = returncode
        self.calls: list[tuple[list[str], float | None]] = []

    def __call__(
        self,
        command: Sequence[str],
        *,
        check: bool = False,
        timeout: float | None = None,
    ) -> DummyResult:
        assert check is False
        self.calls.append((list(command), timeout))
        return DummyResult(self.returncode)


@pytest.fixture
def ctl_calls(monkeypatch: pytest.MonkeyPatch) -> CtlRecorder:
    """Replace ``subprocess.run`` inside the prosody module."""
    recorder = CtlRecorder()
    monkeypatch.setattr(prosody.subprocess, "run", recorder)
    return recorder


@pytest.fixture
def fake_settings(settings: AppConfig) -> AppConfig:
    """Settings launching the current interpreter in place of prosody."""
    return replace(settings, prosody_bin=sys.executable)


@pytest.fixture
def cmd(fake_settings: AppConfig) -> Iterator[Cmd]:
    """Return an unstarted Prosody fixture whose daemon just sleeps."""
    builder = prosody.new(fixture.args("-c", SLEEPER), settings=fake_settings)
    yield builder
    builder.close()


def test_vhost_and_modules_concatenate_in_call_order(cmd: Cmd) -> None:
    """Repeated options append their arguments in the order applied."""
    cmd.apply(
        prosody.vhost("a.test"),
        prosody.modules("mam", "carbons"),
        prosody.vhost("b.test", "c.test"),
        prosody.modules("mam"),
        prosody.vhost(),
    )

    assert cmd.config.vhosts == ("a.test", "b.test", "c.test")
    assert cmd.config.modules == ("mam", "carbons", "mam")


def test_options_replace_config_instead_of_mutating(cmd: Cmd) -> None:
    """Earlier snapshots of the config are never changed by later options."""
    prosody.vhost("a.test")(cmd)
    snapshot = cmd.config

    prosody.vhost("b.test")(cmd)
    prosody.modules("mam")(cmd)

    assert snapshot == ProsodyConfig(vhosts=("a.test",))
    assert cmd.config is not snapshot


def test_listen_c2s_stores_last_reserved_port(cmd: Cmd) -> None:
    """Each call reserves a fresh closed port; the config keeps the last."""
    prosody.listen_c2s()(cmd)
    first = cmd.config.c2s_port
    prosody.listen_c2s()(cmd)
    second = cmd.config.c2s_port

    assert first is not None and 0 < first < 65536
    assert second is not None and 0 < second < 65536
    assert first != second
    assert cmd.c2s_addr == ("127.0.0.1", second)
    assert cmd.config.s2s_port is None
    for port in (first, second):
        with open_listener("127.0.0.1", port):
            pass


def test_listen_s2s_stores_port(cmd: Cmd) -> None:
    """Server-to-server listening fills only the s2s field."""
    prosody.listen_s2s()(cmd)

    assert cmd.config.s2s_port is not None
    assert cmd.s2s_addr == ("127.0.0.1", cmd.config.s2s_port)
    assert cmd.config.c2s_port is None


def test_listen_bind_failure_propagates(fake_settings: AppConfig) -> None:
    """A loopback address that cannot be bound aborts setup."""
    settings = replace(fake_settings, bind_host="192.0.2.1")

    with pytest.raises(OSError):
        prosody.new(prosody.listen_c2s(), settings=settings)


def test_run_ctl_invokes_prosodyctl_with_config_flag(cmd: Cmd, ctl_calls: CtlRecorder) -> None:
    """The admin tool always receives --config before caller arguments."""
    prosody.run_ctl(cmd, "about", timeout=3.0)

    assert ctl_calls.calls == [
        (
            ["prosodyctl", "--config", str(cmd.config_dir / "prosody.cfg.lua"), "about"],
            3.0,
        )
    ]


def test_run_ctl_defaults_timeout_from_settings(cmd: Cmd, ctl_calls: CtlRecorder) -> None:
    """Without an explicit timeout the configured ctl timeout applies."""
    prosody.run_ctl(cmd, "about")

    assert ctl_calls.calls[0][1] == cmd.settings.ctl_timeout


def test_run_ctl_nonzero_exit_raises(cmd: Cmd, monkeypatch: pytest.MonkeyPatch) -> None:
    """Non-zero exits surface with their status."""
    monkeypatch.setattr(prosody.subprocess, "run", CtlRecorder(returncode=1))

    with pytest.raises(prosody.ProsodyCtlError, match=r"register failed \(exit 1\)") as excinfo:
        prosody.run_ctl(cmd, "register", "me", "localhost", "password")
    assert excinfo.value.returncode == 1


def test_run_ctl_launch_failure_raises(cmd: Cmd, monkeypatch: pytest.MonkeyPatch) -> None:
    """A missing prosodyctl binary surfaces as ProsodyCtlError."""

    def missing(*args: object, **kwargs: object) -> DummyResult:
        raise FileNotFoundError("prosodyctl")

    monkeypatch.setattr(prosody.subprocess, "run", missing)

    with pytest.raises(prosody.ProsodyCtlError, match="Failed to launch"):
        prosody.run_ctl(cmd, "about")


def test_run_ctl_timeout_propagates(cmd: Cmd, monkeypatch: pytest.MonkeyPatch) -> None:
    """Timeouts are not retried or wrapped."""

    def slow(command: Sequence[str], **kwargs: object) -> DummyResult:
        raise subprocess.TimeoutExpired(list(command), 0.1)

    monkeypatch.setattr(prosody.subprocess, "run", slow)

    with pytest.raises(subprocess.TimeoutExpired):
        prosody.run_ctl(cmd, "about", timeout=0.1)


def test_ctl_is_deferred_until_start(cmd: Cmd, ctl_calls: CtlRecorder) -> None:
    """ctl only runs once the daemon has been started."""
    prosody.ctl("about")(cmd)
    assert ctl_calls.calls == []

    cmd.start()

    assert [call[0][3:] for call in ctl_calls.calls] == [["about"]]


def test_create_user_registers_and_records_identity(cmd: Cmd, ctl_calls: CtlRecorder) -> None:
    """Registration passes the parsed parts and the password to prosodyctl."""
    prosody.create_user("me@localhost", "password")(cmd)

    assert cmd.user == (JID.parse("me@localhost"), "password")
    cmd.start()

    (call,) = ctl_calls.calls
    assert call[0] == [
        "prosodyctl",
        "--config",
        str(cmd.config_dir / "prosody.cfg.lua"),
        "register",
        "me",
        "localhost",
        "password",
    ]


@pytest.mark.parametrize("address", ["localhost", "me@", "@localhost", ""])
def test_create_user_rejects_malformed_address(cmd: Cmd, address: str) -> None:
    """Bad addresses fail before anything is registered."""
    with pytest.raises(JIDError):
        prosody.create_user(address, "password")(cmd)

    assert cmd.user is None


def test_trust_all_adds_module_and_static_script(cmd: Cmd) -> None:
    """Trust-all enables the module and writes its Lua source."""
    prosody.modules("mam")(cmd)
    prosody.trust_all()(cmd)

    assert cmd.config.modules == ("mam", "trustall")
    paths = {path.name: path for path in cmd.write_files()}
    script = paths["mod_trustall.lua"].read_text(encoding="utf-8")
    expected = cmd.templates.read_source("prosody/mod_trustall.lua")
    assert script == expected
    assert 'session.cert_chain_status = "valid";' in script


def test_config_file_renders_snapshot_and_sets_flag(cmd: Cmd) -> None:
    """Later options update cmd.config but not the rendered file."""
    cfg = ProsodyConfig(vhosts=("a.test",), c2s_port=5999, modules=("mam",))

    prosody.config_file(cfg)(cmd)
    prosody.vhost("b.test")(cmd)

    config_path = cmd.config_dir / "prosody.cfg.lua"
    assert cmd.args[-2:] == ["--config", str(config_path)]
    assert cmd.config.vhosts == ("a.test", "b.test")

    cmd.write_files()
    rendered = config_path.read_text(encoding="utf-8")
    assert 'VirtualHost "a.test"' in rendered
    assert "b.test" not in rendered
    assert "c2s_ports = { 5999 }" in rendered
    assert '"mam";' in rendered
    assert f'plugin_paths = {{ "{cmd.config_dir}" }}' in rendered


def test_config_file_requires_vhost(cmd: Cmd) -> None:
    """Rendering an empty vhost list fails before any flag is added."""
    with pytest.raises(TemplateRenderError, match="VirtualHost"):
        prosody.config_file(ProsodyConfig())(cmd)

    assert "--config" not in cmd.args


def test_config_path_lives_in_config_dir(tmp_path: Path, fake_settings: AppConfig) -> None:
    """The config file name is fixed inside the fixture directory."""
    with prosody.new(settings=fake_settings, config_dir=tmp_path) as builder:
        assert prosody.config_path(builder) == tmp_path.resolve() / "prosody.cfg.lua"


def test_render_config_quotes_lua_strings(cmd: Cmd) -> None:
    """Host names with quotes stay inside their Lua string literal."""
    rendered = prosody.render_config(cmd, ProsodyConfig(vhosts=('a"b',)))

    assert 'VirtualHost "a\\"b"' in rendered
