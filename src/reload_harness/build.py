"""Build invocation: drive the external build tool and capture its log.

The build tool is an opaque command (a build wrapper script, usually run
in batch mode) executed against the workspace with the requested goals
appended. The call blocks the scenario activity until the build finishes
but, being a coroutine, leaves the output pumps of already-launched
processes running.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import os
from pathlib import Path
import shlex
import sys
import time
from typing import TYPE_CHECKING

from reload_harness.errors import (
    BuildError,
    BuildTimeoutError,
    InvocationError,
    TerminationError,
)
from reload_harness.models import BuildResult
from reload_harness.process import build_process_env, kill_process_group
from reload_harness.scaffold import render

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from reload_harness.models import BuildSpec

logger = logging.getLogger(__name__)

DEFAULT_BUILD_TIMEOUT = 600.0

# Bound on collecting buffered output once a timed-out build was killed.
_DRAIN_SECONDS = 5.0


def resolve_build_command(spec: BuildSpec, *, platform: str | None = None) -> list[str]:
    """Pick the build launcher for the current platform.

    Args:
        spec: Build specification.
        platform: ``sys.platform`` value to resolve for (defaults to the host).

    Returns:
        ``spec.windows_command`` on Windows when provided, else ``spec.command``.
    """
    platform = platform or sys.platform
    if platform.startswith("win") and spec.windows_command:
        return list(spec.windows_command)
    return list(spec.command)


def _resolve_executable(command: Sequence[str], working_dir: Path) -> list[str]:
    """Anchor a workspace-local launcher (``./mvnw``, ``mvnw.cmd``) to *working_dir*.

    A launcher written with a directory separator is always workspace
    relative, even before it exists; a bare name is only anchored when the
    workspace holds such a file, and is otherwise left to ``PATH`` lookup.
    """
    resolved = list(command)
    raw = resolved[0]
    if Path(raw).is_absolute():
        return resolved
    has_separator = os.sep in raw or (os.altsep is not None and os.altsep in raw)
    candidate = working_dir / raw
    if has_separator or candidate.is_file():
        resolved[0] = str(candidate.resolve())
    return resolved
    candidate = working_dir / executable
    if len(executable.parts) > 1 or candidate.is_file():
        resolved[0] = str(candidate.resolve())
    return resolved


class BuildInvoker:
    """Runs build goals against a workspace and captures the combined log.

    Attributes:
        command: Build launcher and fixed arguments; goals are appended.
        timeout: Bound in seconds for a single build.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        timeout: float = DEFAULT_BUILD_TIMEOUT,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if not command:
            msg = "Build command must contain at least an executable"
            raise ValueError(msg)
        if not math.isfinite(timeout) or timeout <= 0:
            msg = "Build timeout must be a finite number > 0"
            raise ValueError(msg)
        self.command = [str(part) for part in command]
        self.timeout = timeout
        self._env = dict(env) if env is not None else build_process_env()

    @classmethod
    def from_spec(
        cls,
        spec: BuildSpec,
        *,
        default_timeout: float = DEFAULT_BUILD_TIMEOUT,
        variables: Mapping[str, str] | None = None,
        env: Mapping[str, str] | None = None,
        platform: str | None = None,
    ) -> BuildInvoker:
        """Create an invoker for *spec* on the current platform.

        Args:
            spec: Build specification.
            default_timeout: Bound used when the spec sets none.
            variables: ``${name}`` values substituted into the launcher.
            env: Environment for the build tool.
            platform: ``sys.platform`` value to resolve the launcher for.
        """
        command = resolve_build_command(spec, platform=platform)
        if variables:
            command = [render(arg, variables) for arg in command]
        return cls(command, timeout=spec.timeout_seconds or default_timeout, env=env)

    async def build(self, working_dir: str | Path, goals: Sequence[str] = ()) -> BuildResult:
        """Run the build tool with *goals* in *working_dir*.

        Args:
            working_dir: Existing workspace directory.
            goals: Build goals, appended to the command.

        Returns:
            A successful ``BuildResult`` carrying the build log.

        Raises:
            InvocationError: If the build tool could not be started.
            BuildError: If the build finished with a non-zero exit code; the
                error carries the full build log.
            BuildTimeoutError: If the build overran ``timeout`` and was killed.
        """
        workspace = Path(working_dir)
        if not workspace.is_dir():
            msg = f"Build directory does not exist: {workspace}"
            raise InvocationError(msg, diagnostics={"cwd": str(workspace)})
        command = [*_resolve_executable(self.command, workspace), *goals]

        logger.info("Running build: %s", shlex.join(command))
        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                cwd=workspace,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=self._env,
                start_new_session=True,
            )
        except OSError as exc:
            msg = f"Cannot start build tool {command[0]!r}: {exc}"
            raise InvocationError(
                msg, diagnostics={"command": command, "cwd": str(workspace)}
            ) from exc

        timed_out = False
        # Shield communicate() so it isn't cancelled on timeout; it still
        # collects the partial log once the build is killed.
        communicate_task = asyncio.ensure_future(proc.communicate())
        try:
            stdout_bytes, _ = await asyncio.wait_for(
                asyncio.shield(communicate_task), timeout=self.timeout
            )
        except TimeoutError:
            timed_out = True
            kill_process_group(proc)
            try:
                stdout_bytes, _ = await asyncio.wait_for(communicate_task, timeout=_DRAIN_SECONDS)
            except TimeoutError:
                stdout_bytes = b""
        finally:
            if proc.returncode is None:
                with contextlib.suppress(TerminationError):
                    kill_process_group(proc)

        duration = time.monotonic() - start
        output = (stdout_bytes or b"").decode("utf-8", errors="replace")
        exit_code = -1 if timed_out or proc.returncode is None else proc.returncode
        result = BuildResult(
            command=command,
            output=output,
            exit_code=exit_code,
            duration_seconds=duration,
            succeeded=exit_code == 0,
        )
        logger.debug("Build output:\n%s", output)

        if timed_out:
            msg = f"Build timed out after {self.timeout}s: {shlex.join(command)}"
            raise BuildTimeoutError(msg, result=result)
        if not result.succeeded:
            msg = f"Build failed with exit code {exit_code}: {shlex.join(command)}"
            raise BuildError(msg, result=result)

        logger.info("Build succeeded in %.1fs", duration)
        return result
