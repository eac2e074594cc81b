"""Ephemeral port helpers for prosodyfix.

Prosody opens its own sockets and cannot adopt an already bound listener, so
fixtures borrow a port from the kernel, close it again and tell Prosody to
bind the same number later. Nothing stops another process from grabbing the
port in between; for short-lived test fixtures that race is accepted.
"""
from __future__ import annotations

import socket


def open_listener(host: str, port: int = 0) -> socket.socket:
    """Return a TCP socket listening on *host*:*port*."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.bind((host, port))
        sock.listen()
    except OSError:
        sock.close()
        raise
    return sock


def listener_port(sock: socket.socket) -> int:
    """Return the port *sock* is bound to."""
    return int(sock.getsockname()[1])


def reserve_port(host: str = "::1", port: int = 0) -> int:
    """Listen on *host*:*port*, close the listener and return the bound port."""
    with open_listener(host, port) as sock:
        return listener_port(sock)


__all__ = ["listener_port", "open_listener", "reserve_port"]
