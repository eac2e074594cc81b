"""Jinja2 template rendering for Prosody configuration files."""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateError,
)

_LUA_ESCAPES = {
    "\\": "\\\\",
    '"': '\\"',
    "\n": "\\n",
    "\r": "\\r",
    "\0": "\\0",
}


class TemplateRenderError(RuntimeError):
    """Raised when a template cannot be loaded or rendered."""


def lua_string(value: object) -> str:
    """Return *value* as a double-quoted Lua string literal."""
    return '"' + "".join(_LUA_ESCAPES.get(char, char) for char in str(value)) + '"'


@dataclass(slots=True)
class TemplateEngine:
    """Render packaged templates, optionally shadowed by an override directory."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Build an engine that prefers templates found under *override_dir*."""
        loaders: list[FileSystemLoader | PackageLoader] = []
        if override_dir is not None and Path(override_dir).expanduser().is_dir():
            loaders.append(FileSystemLoader(str(Path(override_dir).expanduser())))
        loaders.append(PackageLoader("prosodyfix", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,
        )
        environment.filters["lua_string"] = lua_string
        return cls(environment=environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context* and return the text."""
        try:
            template = self.environment.get_template(template_name)
            return template.render(**context)
        except TemplateError as exc:
            raise TemplateRenderError(
                f"Failed to render template '{template_name}': {exc}"
            ) from exc

    def read_source(self, template_name: str) -> str:
        """Return the raw, unrendered source of *template_name*."""
        loader = self.environment.loader
        if loader is None:  # pragma: no cover - always configured
            raise TemplateRenderError("Template environment has no loader.")
        try:
            source, _, _ = loader.get_source(self.environment, template_name)
        except TemplateError as exc:
            raise TemplateRenderError(f"Failed to load template '{template_name}': {exc}") from exc
        return source


def write_if_changed(destination: Path, content: str | bytes, *, mode: int = 0o644) -> bool:
    """Atomically write *content* to *destination* unless it already matches.

    The mode is enforced either way. Returns ``True`` when the content changed.
    """
    data = content.encode("utf-8") if isinstance(content, str) else content
    if destination.exists() and destination.read_bytes() == data:
        if (destination.stat().st_mode & 0o777) != mode:
            destination.chmod(mode)
        return False
    destination.parent.mkdir(parents=True, exist_ok=True)
    temp = destination.with_name(f".{destination.name}.tmp")
    temp.write_bytes(data)
    os.chmod(temp, mode)
    temp.replace(destination)
    return True


__all__ = ["TemplateEngine", "TemplateRenderError", "lua_string", "write_if_changed"]
