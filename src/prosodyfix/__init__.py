"""prosodyfix package bootstrap.

Integration-test fixtures that configure and launch a real Prosody XMPP
server. The public surface lives in :mod:`prosodyfix.prosody` (options and
entry points) and :mod:`prosodyfix.fixture` (the process builder).
"""
from __future__ import annotations

__all__ = ["__version__"]

# NOTE: The version is duplicated in ``pyproject.toml`` and managed by Hatch.
__version__ = "0.1.0"
