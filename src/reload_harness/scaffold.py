"""Workspace scaffolding for scenario runs.

The scenario orchestrator only needs something that can materialize a
project into a fresh workspace and later rewrite its sources; that is the
``Scaffold`` protocol. ``TemplateScaffold`` implements it from a declarative
``ScenarioTemplate`` loaded from YAML:

- ``copy_paths`` are copied from a source root (e.g. a build wrapper and
  its support directory),
- ``files`` and ``mutations`` are written with ``${name}`` substitution,
- ``executables`` are marked executable.

Built-in variables are ``python`` (the running interpreter), ``workspace``,
``sep`` and ``pathsep``; template variables override them.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
import shutil
import stat
import string
import sys
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import yaml

from reload_harness.models import ScenarioTemplate

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

logger = logging.getLogger(__name__)

_EXECUTABLE_BITS = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH


@runtime_checkable
class Scaffold(Protocol):
    """Materializes a project into a workspace and mutates its sources."""

    def materialize(self, workspace: Path) -> None:  # noqa: D102
        ...

    def mutate(self, workspace: Path) -> None:  # noqa: D102
        ...


def load_yaml(path: str | Path, label: str) -> dict[str, Any]:
    """Read a YAML mapping from *path*.

    An empty file is an empty mapping, so a config file holding only
    comments leaves every default in place.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is not valid YAML or holds something other
            than a mapping.
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        msg = f"{label} file not found: {path}"
        raise FileNotFoundError(msg) from None

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        msg = f"{label} file {path} is not valid YAML: {exc}"
        raise ValueError(msg) from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"{label} file must contain a YAML mapping, got {type(data).__name__}"
        raise ValueError(msg)
    return data


def load_template(path: str | Path) -> ScenarioTemplate:
    """Load a ``ScenarioTemplate`` from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the content is not a valid scenario definition.
    """
    return ScenarioTemplate(**load_yaml(path, "scenario"))


def expand_variants(template: ScenarioTemplate) -> list[ScenarioTemplate]:
    """Expand *template* into one template per variant.

    Each variant's variables are layered over the template's own, and the
    variant is named after its variables. A template without variants
    expands to itself.
    """
    if not template.variants:
        return [template]
    expanded: list[ScenarioTemplate] = []
    for variant in template.variants:
        label = ", ".join(f"{key}={value}" for key, value in variant.items())
        expanded.append(
            template.model_copy(
                update={
                    "name": f"{template.name} [{label}]",
                    "variables": {**template.variables, **variant},
                    "variants": [],
                }
            )
        )
    return expanded


def builtin_variables(workspace: Path) -> dict[str, str]:
    return {
        "python": sys.executable,
        "workspace": str(workspace),
        "sep": os.sep,
        "pathsep": os.pathsep,
    }


def template_variables(template: ScenarioTemplate, workspace: Path) -> dict[str, str]:
    """Built-in variables for *workspace* overlaid with the template's own."""
    return {**builtin_variables(workspace), **template.variables}


def render(text: str, variables: Mapping[str, str]) -> str:
    """Substitute ``${name}`` references; unknown references are left as-is."""
    return string.Template(text).safe_substitute(variables)


def render_command(argv: Sequence[str], template: ScenarioTemplate, workspace: Path) -> list[str]:
    """Render every argument of *argv* for *workspace*."""
    variables = template_variables(template, workspace)
    return [render(arg, variables) for arg in argv]


class TemplateScaffold:
    """``Scaffold`` backed by a ``ScenarioTemplate``.

    Attributes:
        template: The scenario definition.
        source_root: Directory ``copy_paths`` are resolved against.
    """

    def __init__(self, template: ScenarioTemplate, *, source_root: str | Path | None = None) -> None:
        self.template = template
        self.source_root = Path(source_root) if source_root is not None else Path.cwd()

    def materialize(self, workspace: Path) -> None:
        """Copy seed paths, write generated files and set executable bits.

        Raises:
            FileNotFoundError: If a ``copy_paths`` entry does not exist.
        """
        for rel in self.template.copy_paths:
            src = self.source_root / rel
            dest = workspace / rel
            if src.is_dir():
                shutil.copytree(src, dest, dirs_exist_ok=True)
            elif src.is_file():
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, dest)
            else:
                msg = f"Scaffold source not found: {src}"
                raise FileNotFoundError(msg)

        self._write_files(workspace, self.template.files)

        for rel in self.template.executables:
            path = workspace / rel
            path.chmod(path.stat().st_mode | _EXECUTABLE_BITS)

        logger.info(
            "Materialized %s into %s (%d copied, %d generated)",
            self.template.name,
            workspace,
            len(self.template.copy_paths),
            len(self.template.files),
        )

    def mutate(self, workspace: Path) -> None:
        """Rewrite the sources listed in ``mutations``."""
        self._write_files(workspace, self.template.mutations)
        logger.info("Rewrote %s", ", ".join(self.template.mutations) or "nothing")

    def _write_files(self, workspace: Path, files: Mapping[str, str]) -> None:
        variables = template_variables(self.template, workspace)
        for rel, content in files.items():
            path = workspace / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(render(content, variables), encoding="utf-8")
