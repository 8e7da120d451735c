"""Template rendering for instance artifacts.

Templates are plain files using ``{{TOKEN}}`` placeholders, rendered through
Jinja2 with strict undefined handling. Each template is described by a
:class:`TemplateSpec` listing the fields it may use; :meth:`TemplateEngine.render_spec`
refuses to render when the supplied values and the declared fields disagree
or when the template references a placeholder outside its field list, so a
typo fails loudly instead of producing a malformed unit file.

Operators override the built-in templates by dropping files with the same
name into ``<home>/templates``.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateNotFound,
    TemplateSyntaxError,
    UndefinedError,
    meta,
)
from jinja2.loaders import BaseLoader

from ..errors import TemplateMissingError, TemplateRenderError

BUILTIN_TEMPLATES_DIR = Path(__file__).resolve().parent / "builtin"


@dataclass(frozen=True, slots=True)
class TemplateSpec:
    """A template file and the placeholder fields it accepts."""

    name: str
    fields: tuple[str, ...]


UNIT_TEMPLATE = TemplateSpec(
    name="openclaw-instance.container.tmpl",
    fields=(
        "NAME",
        "GATEWAY_PORT",
        "BRIDGE_PORT",
        "DNS_PRIMARY",
        "DNS_FALLBACK",
        "MEMORY",
        "CPUS",
        "IMAGE",
        "USER_MAPPING",
        "OPENCLAW_HOME",
    ),
)

CONFIG_TEMPLATE = TemplateSpec(
    name="openclaw-config.json.tmpl",
    fields=("GATEWAY_PORT", "BRIDGE_PORT"),
)


class TemplateEngine:
    """Render templates from override and built-in directories."""

    def __init__(self, loader: BaseLoader) -> None:
        """Initialise the Jinja environment around *loader*."""
        self._env = Environment(
            loader=loader,
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )

    @classmethod
    def with_overrides(
        cls,
        override_dir: Path | None,
        *,
        include_builtin: bool = True,
    ) -> TemplateEngine:
        """Return an engine preferring *override_dir* over the built-ins."""
        loaders: list[BaseLoader] = []
        if override_dir is not None:
            loaders.append(FileSystemLoader(str(override_dir)))
        if include_builtin:
            loaders.append(FileSystemLoader(str(BUILTIN_TEMPLATES_DIR)))
        return cls(ChoiceLoader(loaders))

    def has_template(self, name: str) -> bool:
        """Return ``True`` when *name* resolves to a template source."""
        try:
            self._source(name)
        except TemplateMissingError:
            return False
        return True

    def require(self, *specs: TemplateSpec) -> None:
        """Raise :class:`TemplateMissingError` unless every spec resolves."""
        missing = [spec.name for spec in specs if not self.has_template(spec.name)]
        if missing:
            raise TemplateMissingError(
                f"Template(s) not found: {', '.join(missing)}."
            )

    def placeholders(self, name: str) -> set[str]:
        """Return the placeholder names referenced by template *name*."""
        source = self._source(name)
        try:
            parsed = self._env.parse(source)
        except TemplateSyntaxError as exc:
            raise TemplateRenderError(f"Template {name} is not valid: {exc}") from exc
        return set(meta.find_undeclared_variables(parsed))

    def render_spec(self, spec: TemplateSpec, values: Mapping[str, object]) -> str:
        """Render *spec* with *values* after validating both against its fields."""
        declared = set(spec.fields)
        supplied = set(values)
        missing = declared - supplied
        if missing:
            raise TemplateRenderError(
                f"No value supplied for {spec.name} field(s): {', '.join(sorted(missing))}."
            )
        extra = supplied - declared
        if extra:
            raise TemplateRenderError(
                f"Unknown field(s) supplied for {spec.name}: {', '.join(sorted(extra))}."
            )
        unknown = self.placeholders(spec.name) - declared
        if unknown:
            raise TemplateRenderError(
                f"Template {spec.name} uses undeclared placeholder(s): "
                f"{', '.join(sorted(unknown))}."
            )
        return self.render_to_string(spec.name, values)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        try:
            template = self._env.get_template(name)
        except TemplateNotFound as exc:
            raise TemplateMissingError(f"Template not found: {name}.") from exc
        except TemplateSyntaxError as exc:
            raise TemplateRenderError(f"Template {name} is not valid: {exc}") from exc
        try:
            return template.render(**context)
        except UndefinedError as exc:
            raise TemplateRenderError(f"Failed to render {name}: {exc}") from exc

    def render_to_path(
        self,
        spec: TemplateSpec,
        destination: Path,
        values: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render *spec* to *destination*; return ``True`` if content changed."""
        content = self.render_spec(spec, values)
        if destination.is_file() and destination.read_text(encoding="utf-8") == content:
            os.chmod(destination, mode)
            return False
        _atomic_write(destination, content, mode)
        return True

    def _source(self, name: str) -> str:
        loader = self._env.loader
        if loader is None:
            raise TemplateMissingError(f"No template loader configured for {name}.")
        try:
            source, _, _ = loader.get_source(self._env, name)
        except TemplateNotFound as exc:
            raise TemplateMissingError(f"Template not found: {name}.") from exc
        return source


def _atomic_write(destination: Path, content: str, mode: int) -> None:
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


__all__ = [
    "CONFIG_TEMPLATE",
    "UNIT_TEMPLATE",
    "TemplateEngine",
    "TemplateSpec",
]
