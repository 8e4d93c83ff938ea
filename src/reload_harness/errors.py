"""Error taxonomy for the reload harness.

Every failure the harness reports carries a ``diagnostics`` dict so that a
racy subprocess failure can be debugged from captured output alone.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Sequence

    from reload_harness.models import (
        BuildResult,
        ScenarioPhase,
        ScenarioResult,
        TimeoutEvent,
    )


class HarnessError(Exception):
    """Harness failure with diagnostic context.

    Attributes:
        diagnostics: Structured diagnostic information about the failure.
    """

    def __init__(self, message: str, *, diagnostics: dict[str, Any] | None = None) -> None:
        """Initialize with a message and structured diagnostics.

        Args:
            message: Human-readable error description.
            diagnostics: Structured context (output, command, ...).
        """
        super().__init__(message)
        self.diagnostics: dict[str, Any] = dict(diagnostics or {})


class LaunchError(HarnessError):
    """An external command could not be spawned (missing executable, permissions)."""

    def __init__(self, message: str, *, command: Sequence[str], cwd: str) -> None:
        super().__init__(message, diagnostics={"command": list(command), "cwd": cwd})
        self.command = list(command)
        self.cwd = cwd


class InvocationError(HarnessError):
    """The build tool launcher itself could not be started."""


class BuildError(HarnessError):
    """The build tool ran but finished with a failure status.

    The message embeds the full build output; a bare exit code is useless
    without the build log.

    Attributes:
        result: The failed build's result.
        output: Combined build output.
        exit_code: Build tool exit code.
    """

    def __init__(self, message: str, *, result: BuildResult) -> None:
        super().__init__(
            f"{message}\n{result.output}",
            diagnostics={
                "command": result.command,
                "exit_code": result.exit_code,
                "output": result.output,
            },
        )
        self.result = result
        self.output = result.output
        self.exit_code = result.exit_code


class BuildTimeoutError(BuildError):
    """The build did not finish within its bound and was killed."""


class PreparationError(HarnessError):
    """A post-build preparation command failed or overran its bound."""


class ConditionTimeoutError(HarnessError):
    """A polled condition never became true within its bound.

    Attributes:
        event: The timeout event, including the last observed value.
    """

    def __init__(self, message: str, *, event: TimeoutEvent) -> None:
        super().__init__(message, diagnostics=event.model_dump())
        self.event = event

    @property
    def last_value(self) -> Any:
        """Last value the predicate inspected."""
        return self.event.last_value


class TerminationError(HarnessError):
    """A process could not be forcibly terminated."""


class ScenarioError(HarnessError):
    """A scenario failed; raised only after teardown has completed.

    Attributes:
        phase: Phase that was in progress when the failure occurred.
        result: Summary of the run, including teardown outcome.
    """

    def __init__(self, message: str, *, phase: ScenarioPhase, result: ScenarioResult) -> None:
        super().__init__(
            f"Scenario {result.name!r} failed during {phase}: {message}",
            diagnostics=result.diagnostics,
        )
        self.phase = phase
        self.result = result
