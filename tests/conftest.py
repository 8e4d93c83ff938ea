"""Shared fixtures for the reload_harness test suite."""

from __future__ import annotations

from pathlib import Path
import sys
import textwrap
from typing import Any

from reload_harness.models import HarnessConfig, ScenarioMarkers, ScenarioTemplate
from reload_harness.process import process_alive
from reload_harness.scaffold import load_template
import pytest

SCENARIOS_DIR = Path(__file__).resolve().parents[1] / "scenarios"
SAMPLE_SCENARIO = SCENARIOS_DIR / "python_live_reload.yaml"

# ---------------------------------------------------------------------------
# Factory functions (plain functions, importable from conftest)
# ---------------------------------------------------------------------------


def python_command(code: str) -> list[str]:
    """Return a command line running *code* with the current interpreter.

    Args:
        code: Python source, dedented before use.

    Returns:
        ``[sys.executable, "-u", "-c", code]``.
    """
    return [sys.executable, "-u", "-c", textwrap.dedent(code)]


def make_config(**overrides: Any) -> HarnessConfig:
    """Build a HarnessConfig tuned for fast, tolerant test runs.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed HarnessConfig instance.
    """
    defaults: dict[str, Any] = {
        "poll_interval_seconds": 0.05,
        "sync_timeout_seconds": 15.0,
        "assertion_timeout_seconds": 15.0,
        "build_timeout_seconds": 60.0,
        "termination_timeout_seconds": 5.0,
    }
    defaults.update(overrides)
    return HarnessConfig(**defaults)


def make_markers(**overrides: Any) -> ScenarioMarkers:
    """Build the ScenarioMarkers used by the sample scenario.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed ScenarioMarkers instance.
    """
    defaults = load_template(SAMPLE_SCENARIO).markers.model_dump()
    defaults.update(overrides)
    return ScenarioMarkers(**defaults)


def make_template(**overrides: Any) -> ScenarioTemplate:
    """Build a ScenarioTemplate from the bundled sample scenario.

    Args:
        **overrides: Top-level fields to override; the result is
            re-validated.

    Returns:
        A fully constructed ScenarioTemplate instance.
    """
    data = load_template(SAMPLE_SCENARIO).model_dump()
    data.update(overrides)
    return ScenarioTemplate(**data)


def wait_for_exit(pid: int, timeout: float = 5.0) -> bool:
    """Poll the OS process table until *pid* disappears.

    Returns:
        ``True`` if the process is gone within *timeout*.
    """
    import time

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not process_alive(pid):
            return True
        time.sleep(0.05)
    return not process_alive(pid)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _clear_harness_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove RELOAD_HARNESS_* overrides so tests see the configured values."""
    for name in (
        "RELOAD_HARNESS_LOG_LEVEL",
        "RELOAD_HARNESS_POLL_INTERVAL",
        "RELOAD_HARNESS_SYNC_TIMEOUT",
        "RELOAD_HARNESS_ASSERTION_TIMEOUT",
        "RELOAD_HARNESS_BUILD_TIMEOUT",
        "RELOAD_HARNESS_WATCHDOG",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    """Provide an empty workspace directory.

    Args:
        tmp_path: Pytest built-in temp directory fixture.

    Returns:
        Path to the workspace directory.
    """
    work_dir = tmp_path / "workspace"
    work_dir.mkdir()
    return work_dir


@pytest.fixture(scope="session")
def sample_template() -> ScenarioTemplate:
    """Return the bundled sample scenario."""
    return load_template(SAMPLE_SCENARIO)
