"""End-to-end tests against a locally installed Prosody."""
from __future__ import annotations

import socket
from dataclasses import replace

import pytest

from prosodyfix import prosody
from prosodyfix.config import AppConfig

pytestmark = pytest.mark.integration


def test_run_accepts_client_connections(settings: AppConfig) -> None:
    """A default fixture answers an XMPP stream header on its c2s port."""
    settings = replace(settings, start_timeout=15.0)

    with prosody.run(prosody.listen_c2s(), settings=settings) as cmd:
        assert cmd.user is not None
        assert str(cmd.user[0]) == "me@localhost"
        assert cmd.c2s_addr is not None

        with socket.create_connection(cmd.c2s_addr, timeout=5.0) as conn:
            conn.sendall(
                b"<?xml version='1.0'?><stream:stream to='localhost' version='1.0' "
                b"xmlns='jabber:client' xmlns:stream='http://etherx.jabber.org/streams'>"
            )
            reply = conn.recv(4096)

        assert b"stream:stream" in reply
        config_dir = cmd.config_dir

    assert not config_dir.exists()


def test_ctl_runs_against_started_daemon(settings: AppConfig) -> None:
    """Extra prosodyctl calls run with the fixture's config."""
    with prosody.run(
        prosody.listen_c2s(),
        prosody.ctl("register", "extra", "localhost", "secret"),
        settings=settings,
    ) as cmd:
        assert cmd.running
