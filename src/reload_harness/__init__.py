"""End-to-end harness for live-reload workflows.

Supervises a target application and its change monitor as captured
external processes, polls their output for timing-bounded markers, and
drives the build between them.
"""

from reload_harness.build import BuildInvoker
from reload_harness.errors import (
    BuildError,
    BuildTimeoutError,
    ConditionTimeoutError,
    HarnessError,
    InvocationError,
    LaunchError,
    PreparationError,
    ScenarioError,
    TerminationError,
)
from reload_harness.models import (
    BuildResult,
    HarnessConfig,
    ProcessStatus,
    ScenarioPhase,
    ScenarioResult,
    ScenarioTemplate,
    WaitOutcome,
)
from reload_harness.polling import await_condition, await_output_contains
from reload_harness.process import CapturedProcess, ProcessRegistry
from reload_harness.scenario import run_scenario, run_scenario_sync

__version__ = "0.1.0"

__all__ = [
    "BuildError",
    "BuildInvoker",
    "BuildResult",
    "BuildTimeoutError",
    "CapturedProcess",
    "ConditionTimeoutError",
    "HarnessConfig",
    "HarnessError",
    "InvocationError",
    "LaunchError",
    "PreparationError",
    "ProcessRegistry",
    "ProcessStatus",
    "ScenarioError",
    "ScenarioPhase",
    "ScenarioResult",
    "ScenarioTemplate",
    "TerminationError",
    "WaitOutcome",
    "await_condition",
    "await_output_contains",
    "run_scenario",
    "run_scenario_sync",
]
