"""Tests for the shared data models in ``reload_harness.models``.

Covers configuration validation, scenario template validation (including
workspace path containment), marker validation, and result models.
"""

from __future__ import annotations

from typing import Any

from hypothesis import given, settings, strategies as st
from pydantic import ValidationError
from reload_harness.models import (
    BuildResult,
    BuildSpec,
    HarnessConfig,
    PrepareStep,
    ScenarioPhase,
    ScenarioResult,
    ScenarioTemplate,
    TimeoutEvent,
)
import pytest

from tests.conftest import make_markers


def _template_data(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "name": "demo",
        "build": {"command": ["./mvnw", "--batch-mode"], "goals": ["package"]},
        "target": ["java", "-jar", "remote-app.jar"],
        "monitor": ["java", "-cp", "lib", "RemoteApplication"],
        "markers": make_markers().model_dump(),
    }
    data.update(overrides)
    return data


# ===========================================================================
# HarnessConfig
# ===========================================================================


@pytest.mark.unit
class TestHarnessConfig:
    """HarnessConfig defaults and validators."""

    def test_defaults(self) -> None:
        """Defaults poll every 100 ms, wait 5 s per marker, watchdog one hour."""
        config = HarnessConfig()
        assert config.poll_interval_seconds == pytest.approx(0.1)
        assert config.sync_timeout_seconds == pytest.approx(5.0)
        assert config.assertion_timeout_seconds == pytest.approx(5.0)
        assert config.watchdog_seconds == pytest.approx(3600.0)
        assert config.keep_workspace is False
        assert config.log_file is None

    def test_is_frozen(self) -> None:
        """Config cannot be mutated after construction."""
        config = HarnessConfig()
        with pytest.raises(ValidationError):
            config.poll_interval_seconds = 1.0  # type: ignore[misc]

    @pytest.mark.parametrize(
        "field",
        [
            "poll_interval_seconds",
            "build_timeout_seconds",
            "watchdog_seconds",
            "termination_timeout_seconds",
        ],
    )
    def test_hard_bounds_must_be_positive(self, field: str) -> None:
        """Zero is rejected for intervals and hard deadlines."""
        with pytest.raises(ValidationError, match="must be > 0"):
            HarnessConfig(**{field: 0})

    @pytest.mark.parametrize("field", ["sync_timeout_seconds", "assertion_timeout_seconds"])
    def test_wait_bounds_accept_zero(self, field: str) -> None:
        """A zero wait bound means a single evaluation and is allowed."""
        assert getattr(HarnessConfig(**{field: 0}), field) == 0

    @pytest.mark.parametrize("field", ["sync_timeout_seconds", "assertion_timeout_seconds"])
    def test_wait_bounds_reject_negative(self, field: str) -> None:
        """Negative wait bounds are rejected."""
        with pytest.raises(ValidationError, match="must be >= 0"):
            HarnessConfig(**{field: -0.5})

    @pytest.mark.parametrize(
        "field",
        [
            "poll_interval_seconds",
            "sync_timeout_seconds",
            "assertion_timeout_seconds",
            "build_timeout_seconds",
            "watchdog_seconds",
            "termination_timeout_seconds",
        ],
    )
    @pytest.mark.parametrize("value", [float("inf"), float("nan")])
    def test_non_finite_bounds_rejected(self, field: str, value: float) -> None:
        """No bound may be infinite or NaN, so every wait stays bounded."""
        with pytest.raises(ValidationError, match="finite number of seconds"):
            HarnessConfig(**{field: value})

    @given(value=st.floats(min_value=1e-3, max_value=1e5, allow_nan=False))
    @settings(max_examples=30)
    def test_any_positive_interval_accepted(self, value: float) -> None:
        """Property: every positive poll interval is accepted unchanged."""
        assert HarnessConfig(poll_interval_seconds=value).poll_interval_seconds == value


# ===========================================================================
# ScenarioMarkers / BuildSpec / PrepareStep
# ===========================================================================


@pytest.mark.unit
class TestScenarioMarkers:
    """Markers must all be non-empty."""

    @pytest.mark.parametrize(
        "field",
        ["target_ready", "monitor_ready", "target_restarted", "monitor_uploaded", "monitor_triggered"],
    )
    def test_empty_marker_rejected(self, field: str) -> None:
        """An empty marker would trivially match and is rejected."""
        with pytest.raises(ValidationError, match="non-empty"):
            make_markers(**{field: ""})


@pytest.mark.unit
class TestBuildSpec:
    """BuildSpec validation."""

    def test_goals_default_empty(self) -> None:
        """Goals default to an empty list."""
        assert BuildSpec(command=["mvnw"]).goals == []

    def test_empty_command_rejected(self) -> None:
        """A build command needs an executable."""
        with pytest.raises(ValidationError, match="at least an executable"):
            BuildSpec(command=[])

    def test_prepare_step_default_timeout(self) -> None:
        """Preparation steps wait ten seconds by default."""
        assert PrepareStep(command=["jar", "xf", "app.jar"]).timeout_seconds == pytest.approx(10.0)

    @pytest.mark.parametrize("value", [0, -1, float("inf"), float("nan")])
    def test_build_timeout_must_be_finite_and_positive(self, value: float) -> None:
        """A per-build bound is rejected unless finite and > 0."""
        with pytest.raises(ValidationError, match="Timeout must be > 0|finite number"):
            BuildSpec(command=["mvnw"], timeout_seconds=value)

    @pytest.mark.parametrize("value", [0, -1, float("inf"), float("nan")])
    def test_prepare_timeout_must_be_finite_and_positive(self, value: float) -> None:
        """A preparation bound is rejected unless finite and > 0."""
        with pytest.raises(ValidationError, match="Timeout must be > 0|finite number"):
            PrepareStep(command=["jar", "xf", "app.jar"], timeout_seconds=value)

    def test_build_timeout_may_be_omitted(self) -> None:
        """Without a per-build bound the harness config applies."""
        assert BuildSpec(command=["mvnw"]).timeout_seconds is None


# ===========================================================================
# ScenarioTemplate
# ===========================================================================


@pytest.mark.unit
class TestScenarioTemplate:
    """ScenarioTemplate validation."""

    def test_minimal_template(self) -> None:
        """Only name, build, target, monitor and markers are required."""
        template = ScenarioTemplate(**_template_data())
        assert template.files == {}
        assert template.prepare == []
        assert template.variants == []

    @pytest.mark.parametrize("path", ["/etc/passwd", "../outside.txt", "src/../../x", ""])
    def test_generated_files_must_stay_in_workspace(self, path: str) -> None:
        """Absolute and climbing paths are rejected for generated files."""
        with pytest.raises(ValidationError, match="relative to the workspace"):
            ScenarioTemplate(**_template_data(files={path: "x"}))

    @pytest.mark.parametrize("field", ["copy_paths", "executables"])
    def test_path_lists_must_stay_in_workspace(self, field: str) -> None:
        """copy_paths and executables are checked the same way."""
        with pytest.raises(ValidationError, match="relative to the workspace"):
            ScenarioTemplate(**_template_data(**{field: ["../mvnw"]}))

    def test_nested_relative_paths_accepted(self) -> None:
        """Ordinary nested paths are fine."""
        template = ScenarioTemplate(
            **_template_data(mutations={"src/main/java/app/Application.java": "class A {}"})
        )
        assert "src/main/java/app/Application.java" in template.mutations

    @pytest.mark.parametrize("field", ["target", "monitor"])
    def test_process_commands_required(self, field: str) -> None:
        """Empty target or monitor commands are rejected."""
        with pytest.raises(ValidationError, match="at least an executable"):
            ScenarioTemplate(**_template_data(**{field: []}))

    def test_sample_scenario_loads(self, sample_template: ScenarioTemplate) -> None:
        """The bundled sample scenario is a valid template."""
        assert sample_template.name == "python-live-reload"
        assert sample_template.build.goals == ["package"]
        assert len(sample_template.prepare) == 1


# ===========================================================================
# Results
# ===========================================================================


@pytest.mark.unit
class TestResults:
    """Result and event models."""

    def test_build_result_is_frozen(self) -> None:
        """BuildResult cannot be mutated."""
        result = BuildResult(
            command=["mvnw"], output="ok", exit_code=0, duration_seconds=1.0, succeeded=True
        )
        with pytest.raises(ValidationError):
            result.output = "changed"  # type: ignore[misc]

    def test_timeout_event_keeps_arbitrary_last_value(self) -> None:
        """The last observed value can be any object."""
        event = TimeoutEvent(
            description="x",
            max_wait_seconds=1.0,
            poll_interval_seconds=0.1,
            elapsed_seconds=1.0,
            evaluations=11,
            last_value={"status": 503},
        )
        assert event.last_value == {"status": 503}
        assert event.last_error is None

    def test_scenario_result_defaults(self) -> None:
        """A fresh result starts in SETUP with nothing recorded."""
        result = ScenarioResult(name="demo", workspace="/tmp/ws")
        assert result.phase is ScenarioPhase.SETUP
        assert result.succeeded is False
        assert result.pids == []
        assert result.termination_failures == []

    def test_phases_are_ordered(self) -> None:
        """The state machine phases are declared in execution order."""
        assert list(ScenarioPhase) == [
            ScenarioPhase.SETUP,
            ScenarioPhase.INITIAL_BUILD,
            ScenarioPhase.PROCESSES_LAUNCHED,
            ScenarioPhase.SYNCHRONIZED,
            ScenarioPhase.SOURCE_MUTATED,
            ScenarioPhase.REBUILT,
            ScenarioPhase.ASSERTED,
            ScenarioPhase.TORN_DOWN,
        ]
