"""Core data models for the reload harness.

Defines shared Pydantic models, enums, and configuration types used across
all harness modules. This module is the foundational type system referenced
by the process supervision, polling, build, scaffolding, and scenario
modules.
"""

from __future__ import annotations

from enum import StrEnum
import math
from pathlib import PurePath
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ProcessStatus(StrEnum):
    """Lifecycle status of a captured external process."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    TERMINATED = "terminated"


class WaitOutcome(StrEnum):
    """Which event ended a bounded wait on a captured process."""

    EXITED = "exited"
    TERMINATED = "terminated"
    TIMED_OUT = "timed_out"


class ScenarioPhase(StrEnum):
    """States of the live-reload scenario state machine.

    Phases are entered strictly in declaration order. Any failure jumps
    straight to ``TORN_DOWN``, which is terminal.
    """

    SETUP = "setup"
    INITIAL_BUILD = "initial_build"
    PROCESSES_LAUNCHED = "processes_launched"
    SYNCHRONIZED = "synchronized"
    SOURCE_MUTATED = "source_mutated"
    REBUILT = "rebuilt"
    ASSERTED = "asserted"
    TORN_DOWN = "torn_down"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def _check_finite(v: float) -> None:
    """Reject ``inf`` and ``nan``; every wait in the harness must be bounded."""
    if not math.isfinite(v):
        msg = f"Value must be a finite number of seconds, got {v}"
        raise ValueError(msg)


def _check_timeout(v: float | None) -> float | None:
    """Validate an optional per-command bound: ``None`` or finite and > 0."""
    if v is None:
        return v
    _check_finite(v)
    if v <= 0:
        msg = "Timeout must be > 0"
        raise ValueError(msg)
    return v


class HarnessConfig(BaseModel):
    """Timing bounds and runtime options for a scenario run.

    Defaults mirror a typical live-reload check: markers are expected
    within five seconds, polled every 100 ms, while launched processes get
    a one hour watchdog.

    Attributes:
        poll_interval_seconds: Delay between predicate evaluations.
        sync_timeout_seconds: Bound for each "ready" marker wait.
        assertion_timeout_seconds: Bound for each post-rebuild marker wait.
        build_timeout_seconds: Bound for each build invocation.
        watchdog_seconds: Forced-termination deadline for launched processes.
        termination_timeout_seconds: Bound for reaping a killed process.
        log_level: Logging level string.
        log_file: Optional log file path.
        keep_workspace: Leave the temporary workspace on disk after teardown.
    """

    model_config = ConfigDict(frozen=True)

    poll_interval_seconds: float = 0.1
    sync_timeout_seconds: float = 5.0
    assertion_timeout_seconds: float = 5.0
    build_timeout_seconds: float = 600.0
    watchdog_seconds: float = 3600.0
    termination_timeout_seconds: float = 5.0
    log_level: str = "INFO"
    log_file: str | None = None
    keep_workspace: bool = False

    @field_validator(
        "poll_interval_seconds",
        "build_timeout_seconds",
        "watchdog_seconds",
        "termination_timeout_seconds",
    )
    @classmethod
    def _must_be_positive(cls, v: float) -> float:
        """Validate that intervals and hard deadlines are finite and > 0."""
        _check_finite(v)
        if v <= 0:
            msg = "Value must be > 0"
            raise ValueError(msg)
        return v

    @field_validator("sync_timeout_seconds", "assertion_timeout_seconds")
    @classmethod
    def _must_be_non_negative(cls, v: float) -> float:
        """Validate that wait bounds are finite and >= 0 (zero means a single evaluation)."""
        _check_finite(v)
        if v < 0:
            msg = "Value must be >= 0"
            raise ValueError(msg)
        return v


# ---------------------------------------------------------------------------
# Scenario templates
# ---------------------------------------------------------------------------


def _check_relative(path: str) -> str:
    """Reject absolute paths and paths that climb out of the workspace."""
    pure = PurePath(path)
    if not path or pure.is_absolute() or ".." in pure.parts:
        msg = f"Path must be relative to the workspace: {path!r}"
        raise ValueError(msg)
    return path


class ScenarioMarkers(BaseModel):
    """Output substrings that signal each observable scenario event.

    Attributes:
        target_ready: Printed by the target application once it has started.
        monitor_ready: Printed by the monitor once it is watching for changes.
        target_restarted: Printed by the target after a live restart.
        monitor_uploaded: Printed by the monitor when it transfers changes.
        monitor_triggered: Printed by the monitor when it signals a refresh.
    """

    model_config = ConfigDict(frozen=True)

    target_ready: str
    monitor_ready: str
    target_restarted: str
    monitor_uploaded: str
    monitor_triggered: str

    @field_validator("*")
    @classmethod
    def _must_be_nonempty(cls, v: str) -> str:
        """An empty marker would match any output, including none."""
        if not v:
            msg = "Marker must be a non-empty string"
            raise ValueError(msg)
        return v


class BuildSpec(BaseModel):
    """How to drive the external build tool.

    Attributes:
        command: Build tool launcher and fixed arguments (e.g. a wrapper script
            and ``--batch-mode``).
        windows_command: Alternative launcher used on Windows hosts.
        goals: Goals appended to the command on every invocation.
        timeout_seconds: Per-invocation bound; ``None`` uses the harness config.
    """

    model_config = ConfigDict(frozen=True)

    command: list[str]
    windows_command: list[str] | None = None
    goals: list[str] = []
    timeout_seconds: float | None = None

    @field_validator("command")
    @classmethod
    def _command_must_be_nonempty(cls, v: list[str]) -> list[str]:
        """Validate that the build command names an executable."""
        if not v or not v[0]:
            msg = "Build command must contain at least an executable"
            raise ValueError(msg)
        return v

    @field_validator("timeout_seconds")
    @classmethod
    def _timeout_must_be_positive(cls, v: float | None) -> float | None:
        return _check_timeout(v)


class PrepareStep(BaseModel):
    """A short-lived command run after the initial build, before launch.

    Attributes:
        command: Command line to run inside the workspace.
        timeout_seconds: Bound on waiting for the command to exit.
    """

    model_config = ConfigDict(frozen=True)

    command: list[str]
    timeout_seconds: float = 10.0

    @field_validator("command")
    @classmethod
    def _command_must_be_nonempty(cls, v: list[str]) -> list[str]:
        """Validate that the step names an executable."""
        if not v or not v[0]:
            msg = "Prepare command must contain at least an executable"
            raise ValueError(msg)
        return v

    @field_validator("timeout_seconds")
    @classmethod
    def _timeout_must_be_positive(cls, v: float) -> float:
        return _check_timeout(v)  # type: ignore[return-value]


class ScenarioTemplate(BaseModel):
    """Declarative description of one live-reload scenario.

    All string values in ``files``, ``mutations`` and the command lists may
    reference ``${name}`` variables; see ``reload_harness.scaffold``.

    Attributes:
        name: Human-readable scenario name.
        variables: Substitution variables shared by files and commands.
        variants: Variable overrides; each entry yields an isolated run.
        copy_paths: Files or directories copied into the workspace verbatim.
        files: Workspace-relative path to generated file content.
        mutations: Files rewritten between the two builds.
        executables: Workspace-relative paths marked executable.
        build: Build tool invocation.
        prepare: Commands run after the initial build.
        target: Command line of the long-running target application.
        monitor: Command line of the companion monitor process.
        markers: Output markers observed during the scenario.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    variables: dict[str, str] = {}
    variants: list[dict[str, str]] = []
    copy_paths: list[str] = []
    files: dict[str, str] = {}
    mutations: dict[str, str] = {}
    executables: list[str] = []
    build: BuildSpec
    prepare: list[PrepareStep] = []
    target: list[str]
    monitor: list[str]
    markers: ScenarioMarkers

    @field_validator("copy_paths", "executables")
    @classmethod
    def _paths_must_be_relative(cls, v: list[str]) -> list[str]:
        """Validate that every listed path stays inside the workspace."""
        return [_check_relative(p) for p in v]

    @field_validator("files", "mutations")
    @classmethod
    def _keys_must_be_relative(cls, v: dict[str, str]) -> dict[str, str]:
        """Validate that every generated file stays inside the workspace."""
        for path in v:
            _check_relative(path)
        return v

    @field_validator("target", "monitor")
    @classmethod
    def _command_must_be_nonempty(cls, v: list[str]) -> list[str]:
        """Validate that process commands name an executable."""
        if not v or not v[0]:
            msg = "Process command must contain at least an executable"
            raise ValueError(msg)
        return v


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class BuildResult(BaseModel):
    """Outcome of a single build invocation.

    Attributes:
        command: Full command line that was executed.
        output: Combined stdout and stderr of the build.
        exit_code: Build tool exit code (-1 when killed on timeout).
        duration_seconds: Wall-clock build time.
        succeeded: Whether the build finished with exit code 0.
    """

    model_config = ConfigDict(frozen=True)

    command: list[str]
    output: str
    exit_code: int
    duration_seconds: float
    succeeded: bool


class TimeoutEvent(BaseModel):
    """Description of a condition that never became true within its bound.

    Attributes:
        description: What was being waited for.
        max_wait_seconds: Configured bound.
        poll_interval_seconds: Configured cadence.
        elapsed_seconds: Time spent waiting.
        evaluations: Number of times the predicate was evaluated.
        last_value: Last value the predicate inspected (``None`` if the probe
            never returned).
        last_error: Text of the last transient predicate error, if the final
            evaluation raised.
    """

    model_config = ConfigDict(frozen=True)

    description: str
    max_wait_seconds: float
    poll_interval_seconds: float
    elapsed_seconds: float
    evaluations: int
    last_value: Any = None
    last_error: str | None = None


class TerminationFailure(BaseModel):
    """A process that could not be forcibly terminated during teardown.

    Attributes:
        name: Display name of the process.
        pid: OS process id, if the process was spawned.
        error: Description of the failure.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    pid: int | None = None
    error: str


class ScenarioResult(BaseModel):
    """Summary of a scenario run, produced after teardown.

    Attributes:
        name: Scenario name.
        workspace: Workspace directory used by the run.
        phase: Final state (always ``TORN_DOWN`` once teardown ran).
        failed_phase: Phase in progress when the scenario failed, if any.
        phases: Every phase entered, in order.
        succeeded: Whether every phase completed.
        error: Message of the failure, if any.
        diagnostics: Payload relevant to the failed phase (build log, last
            buffer contents, ...).
        pids: Pids of every process launched by the scenario.
        surviving_pids: Launched pids still present after teardown.
        termination_failures: Processes teardown could not kill.
        duration_seconds: Wall-clock duration of the run.
    """

    name: str
    workspace: str
    phase: ScenarioPhase = ScenarioPhase.SETUP
    failed_phase: ScenarioPhase | None = None
    phases: list[ScenarioPhase] = []
    succeeded: bool = False
    error: str | None = None
    diagnostics: dict[str, Any] = {}
    pids: list[int] = []
    surviving_pids: list[int] = []
    termination_failures: list[TerminationFailure] = []
    duration_seconds: float = 0.0
