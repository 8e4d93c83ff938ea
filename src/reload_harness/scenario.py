"""Scenario orchestrator: one live-reload check from setup to teardown.

Provides ``run_scenario()`` (async) and ``run_scenario_sync()`` (sync
wrapper). A scenario materializes a fresh workspace, builds it, launches
the target application and the monitor, waits for both to report ready,
rewrites a source, rebuilds, and then waits, in order, for the target's
restart marker and the monitor's upload and trigger markers.

Every process is launched through a per-scenario ``ProcessRegistry`` and
``terminate_all`` runs on every exit path before the result is finalized.
Failures are re-raised as ``ScenarioError`` only after teardown, carrying
the phase in progress and the diagnostics relevant to it.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
import shutil
import tempfile
import time
from typing import TYPE_CHECKING, Any

from reload_harness.build import BuildInvoker
from reload_harness.errors import HarnessError, PreparationError, ScenarioError
from reload_harness.models import (
    HarnessConfig,
    ScenarioPhase,
    ScenarioResult,
    ScenarioTemplate,
    TimeoutEvent,
    WaitOutcome,
)
from reload_harness.polling import await_output_contains, excerpt
from reload_harness.process import CapturedProcess, ProcessRegistry, process_alive
from reload_harness.scaffold import (
    Scaffold,
    TemplateScaffold,
    render_command,
    template_variables,
)

if TYPE_CHECKING:
    from reload_harness.polling import TimeoutCallback

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Environment variable support
# ---------------------------------------------------------------------------

_ENV_FIELD_MAP: dict[str, str] = {
    "RELOAD_HARNESS_LOG_LEVEL": "log_level",
    "RELOAD_HARNESS_POLL_INTERVAL": "poll_interval_seconds",
    "RELOAD_HARNESS_SYNC_TIMEOUT": "sync_timeout_seconds",
    "RELOAD_HARNESS_ASSERTION_TIMEOUT": "assertion_timeout_seconds",
    "RELOAD_HARNESS_BUILD_TIMEOUT": "build_timeout_seconds",
    "RELOAD_HARNESS_WATCHDOG": "watchdog_seconds",
}
"""Maps environment variable names to HarnessConfig field names."""


def apply_env_overrides(config: HarnessConfig) -> HarnessConfig:
    """Layer ``RELOAD_HARNESS_*`` variables over fields left at their default.

    A field set to anything other than its default is treated as explicit
    and wins over the environment. Durations must be finite seconds within
    the field's bounds and log levels must name a ``logging`` level; a value
    that is not is logged and skipped, so a typo in CI never turns a bounded
    wait into an unbounded one.

    Returns:
        *config* itself when nothing applies, otherwise an updated copy.
    """
    defaults = HarnessConfig()
    overrides: dict[str, Any] = {}
    for env_var, field_name in _ENV_FIELD_MAP.items():
        raw = os.environ.get(env_var)
        if raw is None or getattr(config, field_name) != getattr(defaults, field_name):
            continue
        try:
            overrides[field_name] = _parse_override(field_name, raw)
        except ValueError as exc:
            logger.warning("Ignoring %s=%r: %s", env_var, raw, exc)
    return config.model_copy(update=overrides) if overrides else config


def _parse_override(field_name: str, raw: str) -> str | float:
    """Parse *raw* for *field_name*.

    Raises:
        ValueError: If *raw* is not a known log level, or not a duration the
            ``HarnessConfig`` validators accept (``inf`` and ``nan`` included).
    """
    if field_name == "log_level":
        level = raw.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            msg = f"unknown log level {raw.strip()!r}"
            raise ValueError(msg)
        return level
    seconds = float(raw)
    HarnessConfig.model_validate({field_name: seconds})
    return seconds


# ---------------------------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------------------------

_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s - %(message)s"
_CONSOLE_HANDLER = "reload_harness.console"


def _attach(harness_logger: logging.Logger, handler: logging.Handler, name: str) -> None:
    handler.set_name(name)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    harness_logger.addHandler(handler)


def configure_logging(config: HarnessConfig) -> None:
    """Route ``reload_harness`` logs to stderr and, optionally, a log file.

    Handlers are named after their destination, so calling this once per
    scenario variant never duplicates output. An unknown level falls back
    to INFO.
    """
    harness_logger = logging.getLogger("reload_harness")
    level = logging.getLevelName(config.log_level.upper())
    harness_logger.setLevel(level if isinstance(level, int) else logging.INFO)

    attached = {h.get_name() for h in harness_logger.handlers}
    if _CONSOLE_HANDLER not in attached:
        _attach(harness_logger, logging.StreamHandler(), _CONSOLE_HANDLER)
    if config.log_file is not None:
        file_name = f"reload_harness.file:{Path(config.log_file).resolve()}"
        if file_name not in attached:
            _attach(harness_logger, logging.FileHandler(config.log_file), file_name)


# ---------------------------------------------------------------------------
# Scenario run
# ---------------------------------------------------------------------------


class _ScenarioRun:
    """State of a single scenario execution."""

    def __init__(
        self,
        template: ScenarioTemplate,
        config: HarnessConfig,
        scaffold: Scaffold,
        workspace: Path,
    ) -> None:
        self.template = template
        self.config = config
        self.scaffold = scaffold
        self.workspace = workspace
        self.registry = ProcessRegistry(
            watchdog_timeout=config.watchdog_seconds,
            termination_timeout=config.termination_timeout_seconds,
        )
        self.invoker = BuildInvoker.from_spec(
            template.build,
            default_timeout=config.build_timeout_seconds,
            variables=template_variables(template, workspace),
        )
        self.result = ScenarioResult(name=template.name, workspace=str(workspace))

    @property
    def phase(self) -> ScenarioPhase:
        return self.result.phase

    def _enter(self, phase: ScenarioPhase) -> None:
        self.result.phase = phase
        self.result.phases.append(phase)
        logger.info("[%s] %s", self.template.name, phase)

    async def execute(self) -> ScenarioResult:
        start = time.monotonic()
        failure: Exception | None = None
        try:
            await self._run_phases()
        except Exception as exc:
            failure = exc
            self._record_failure(exc)
        finally:
            await self._teardown()
            self.result.duration_seconds = time.monotonic() - start

        if failure is not None:
            phase = self.result.failed_phase or ScenarioPhase.SETUP
            raise ScenarioError(str(failure), phase=phase, result=self.result) from failure

        self.result.succeeded = True
        logger.info(
            "[%s] passed in %.1fs", self.template.name, self.result.duration_seconds
        )
        return self.result

    async def _run_phases(self) -> None:
        markers = self.template.markers
        sync_wait = self.config.sync_timeout_seconds
        assert_wait = self.config.assertion_timeout_seconds

        self._enter(ScenarioPhase.SETUP)
        self.scaffold.materialize(self.workspace)

        self._enter(ScenarioPhase.INITIAL_BUILD)
        await self.invoker.build(self.workspace, self.template.build.goals)
        await self._prepare()

        self._enter(ScenarioPhase.PROCESSES_LAUNCHED)
        target = await self._launch(self.template.target, "target")
        monitor = await self._launch(self.template.monitor, "monitor")

        self._enter(ScenarioPhase.SYNCHRONIZED)
        await self._expect(target, markers.target_ready, sync_wait)
        await self._expect(monitor, markers.monitor_ready, sync_wait)

        self._enter(ScenarioPhase.SOURCE_MUTATED)
        self.scaffold.mutate(self.workspace)

        self._enter(ScenarioPhase.REBUILT)
        await self.invoker.build(self.workspace, self.template.build.goals)

        self._enter(ScenarioPhase.ASSERTED)
        await self._expect(target, markers.target_restarted, assert_wait)
        await self._expect(monitor, markers.monitor_uploaded, assert_wait)
        await self._expect(monitor, markers.monitor_triggered, assert_wait)

    async def _launch(self, argv: list[str], name: str) -> CapturedProcess:
        command = render_command(argv, self.template, self.workspace)
        return await self.registry.launch(command, cwd=self.workspace, name=name)

    async def _prepare(self) -> None:
        """Run the post-build preparation steps, each to completion."""
        for step in self.template.prepare:
            command = render_command(step.command, self.template, self.workspace)
            process = await self.registry.launch(
                command, cwd=self.workspace, name=f"prepare:{Path(command[0]).name}"
            )
            outcome = await process.wait_for_completion(step.timeout_seconds)
            diagnostics = {"command": command, "output": process.output}
            if outcome is WaitOutcome.TIMED_OUT:
                await process.terminate()
                msg = f"Preparation step did not finish within {step.timeout_seconds}s"
                raise PreparationError(msg, diagnostics=diagnostics)
            if outcome is WaitOutcome.TERMINATED or process.returncode != 0:
                msg = f"Preparation step failed with exit code {process.returncode}"
                raise PreparationError(f"{msg}\n{process.output}", diagnostics=diagnostics)

    async def _expect(self, process: CapturedProcess, marker: str, max_wait: float) -> None:
        await await_output_contains(
            process,
            marker,
            poll_interval=self.config.poll_interval_seconds,
            max_wait=max_wait,
            on_timeout=self._report_timeout(process, marker),
        )

    def _report_timeout(self, process: CapturedProcess, marker: str) -> TimeoutCallback:
        def _report(event: TimeoutEvent) -> None:
            logger.error(
                "[%s] Expected %s to print %r within %.1fs but got:\n%s",
                self.template.name,
                process.name,
                marker,
                event.max_wait_seconds,
                excerpt(process.output),
            )

        return _report

    def _record_failure(self, exc: Exception) -> None:
        self.result.failed_phase = self.phase
        self.result.error = str(exc)
        diagnostics: dict[str, Any] = {
            "phase": str(self.phase),
            "error_type": type(exc).__name__,
        }
        if isinstance(exc, HarnessError):
            diagnostics.update(exc.diagnostics)
        outputs = {
            f"{p.name} (pid {p.pid})": excerpt(p.output) for p in self.registry.processes
        }
        if outputs:
            diagnostics["process_outputs"] = outputs
        self.result.diagnostics = diagnostics

    async def _teardown(self) -> None:
        failures = await self.registry.terminate_all()
        self.result.termination_failures = failures
        self.result.pids = self.registry.pids
        self.result.surviving_pids = [pid for pid in self.result.pids if process_alive(pid)]
        if self.result.surviving_pids:
            logger.warning(
                "[%s] processes still alive after teardown: %s",
                self.template.name,
                self.result.surviving_pids,
            )
        self._enter(ScenarioPhase.TORN_DOWN)


async def run_scenario(
    template: ScenarioTemplate,
    config: HarnessConfig | None = None,
    *,
    scaffold: Scaffold | None = None,
    workspace: str | Path | None = None,
    source_root: str | Path | None = None,
) -> ScenarioResult:
    """Run one live-reload scenario end to end.

    Args:
        template: Scenario definition (commands, markers, build).
        config: Timing bounds; defaults to ``HarnessConfig()`` with
            ``RELOAD_HARNESS_*`` env overrides applied.
        scaffold: Workspace collaborator; defaults to a ``TemplateScaffold``
            for *template*.
        workspace: Directory to run in; defaults to a fresh temporary
            directory removed after the run unless ``keep_workspace`` is set.
        source_root: Directory ``copy_paths`` are resolved against.

    Returns:
        The ``ScenarioResult`` of a passing run, in phase ``TORN_DOWN``.

    Raises:
        ScenarioError: If any phase failed. Raised after teardown; the
            error's ``result`` describes the run and its ``__cause__`` is
            the underlying failure.
    """
    config = apply_env_overrides(config if config is not None else HarnessConfig())
    owns_workspace = workspace is None
    if workspace is None:
        work_dir = Path(tempfile.mkdtemp(prefix="reload-harness-"))
    else:
        work_dir = Path(workspace)
        work_dir.mkdir(parents=True, exist_ok=True)
    work_dir = work_dir.resolve()

    try:
        if scaffold is None:
            scaffold = TemplateScaffold(template, source_root=source_root)
        run = _ScenarioRun(template, config, scaffold, work_dir)
        return await run.execute()
    finally:
        if owns_workspace and not config.keep_workspace:
            shutil.rmtree(work_dir, ignore_errors=True)
        else:
            logger.info("Workspace kept at %s", work_dir)


def run_scenario_sync(
    template: ScenarioTemplate,
    config: HarnessConfig | None = None,
    **kwargs: Any,
) -> ScenarioResult:
    """Synchronous wrapper for ``run_scenario()``.

    Delegates to :func:`run_scenario` via ``asyncio.run()``.

    Raises:
        ScenarioError: If any phase failed.
    """
    return asyncio.run(run_scenario(template, config, **kwargs))
