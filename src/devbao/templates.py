"""Jinja2 rendering for generated server configuration files."""
from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

from jinja2 import (
    BaseLoader,
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateError,
)

from .errors import DevbaoError


class TemplateRenderError(DevbaoError):
    """Raised when a template cannot be loaded or rendered."""


def hcl_string(value: object) -> str:
    """Quote *value* as an HCL string literal."""
    return json.dumps(str(value))


def hcl_bool(value: object) -> str:
    """Render *value* as an HCL boolean."""
    return "true" if value else "false"


class TemplateEngine:
    """Render built-in templates, optionally shadowed by an override directory."""

    def __init__(self, loader: BaseLoader) -> None:
        self.environment = Environment(
            loader=loader,
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.environment.filters["hcl_string"] = hcl_string
        self.environment.filters["hcl_bool"] = hcl_bool

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates found in *override_dir*."""
        loaders: list[BaseLoader] = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("devbao", "templates"))
        return cls(ChoiceLoader(loaders))

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        try:
            template = self.environment.get_template(name)
            return template.render(**context)
        except TemplateError as exc:
            raise TemplateRenderError(f"Failed to render template {name}: {exc}") from exc

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render *name* into *destination*; return ``True`` when the file changed."""
        content = self.render_to_string(name, context)
        return write_text_atomic(Path(destination), content, mode=mode)


def write_text_atomic(destination: Path, content: str, *, mode: int = 0o644) -> bool:
    """Write *content* to *destination* atomically; ``False`` when unchanged."""
    if destination.exists():
        try:
            current = destination.read_text(encoding="utf-8")
        except OSError:
            current = None
        if current == content:
            os.chmod(destination, mode)
            return False

    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, destination)
    finally:
        tmp_path.unlink(missing_ok=True)
    return True


__all__ = ["TemplateEngine", "TemplateRenderError", "hcl_bool", "hcl_string", "write_text_atomic"]
