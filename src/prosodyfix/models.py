"""Data models describing a fixture's desired Prosody state."""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ProsodyConfig:
    """Structured configuration rendered into ``prosody.cfg.lua``.

    Instances are immutable; options derive an updated copy with
    :func:`dataclasses.replace` and store it back on the fixture so earlier
    snapshots (for example one captured by ``config_file``) never change.
    """

    vhosts: tuple[str, ...] = ()
    c2s_port: int | None = None
    s2s_port: int | None = None
    modules: tuple[str, ...] = ()

    def template_context(self, config_dir: str) -> dict[str, object]:
        """Return the variables exposed to the config template."""
        return {
            "vhosts": list(self.vhosts),
            "c2s_port": self.c2s_port,
            "s2s_port": self.s2s_port,
            "modules": list(self.modules),
            "config_dir": config_dir,
        }


__all__ = ["ProsodyConfig"]
