"""Process supervision: captured external processes and the process registry.

Provides ``CapturedProcess``, which launches an external command as an
async subprocess in its own process group and continuously pumps its
combined stdout/stderr into an in-memory ``OutputBuffer``, and
``ProcessRegistry``, which tracks every process started during a scenario
so that teardown can force-terminate all of them regardless of outcome.

Each process owns two background tasks: an output pump draining the pipe
(so the child never blocks on a full pipe) and a supervisor enforcing the
watchdog deadline. Forced termination sends ``SIGKILL`` to the whole
process group; there is no cooperative shutdown signal.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
from pathlib import Path
import shlex
import signal
import threading
from typing import TYPE_CHECKING

from reload_harness.errors import HarnessError, LaunchError, TerminationError
from reload_harness.models import ProcessStatus, TerminationFailure, WaitOutcome

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from types import TracebackType

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 8192

DEFAULT_WATCHDOG_SECONDS = 3600.0
DEFAULT_TERMINATION_TIMEOUT = 5.0


def build_process_env(extra: Mapping[str, str] | None = None) -> dict[str, str]:
    """Build environment variables for a launched process.

    Returns a copy of the current environment with ``PYTHONUNBUFFERED=1``
    so that Python children flush markers as soon as they print them.

    Args:
        extra: Additional variables layered on top.

    Returns:
        A new dict suitable for passing as ``env`` to a subprocess.
    """
    env = dict(os.environ)
    env["PYTHONUNBUFFERED"] = "1"
    if extra:
        env.update(extra)
    return env


def process_alive(pid: int) -> bool:
    """Return whether *pid* is present in the OS process table (POSIX).

    Zombies (exited but unreaped) count as not alive.
    """
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    with contextlib.suppress(OSError, IndexError):
        stat = Path(f"/proc/{pid}/stat").read_text(encoding="utf-8")
        if stat.rsplit(")", 1)[1].split()[0] == "Z":
            return False
    return True


def kill_process_group(proc: asyncio.subprocess.Process) -> None:
    """Send SIGKILL to the process group led by *proc*.

    The process was started with ``start_new_session=True`` so its pid is
    also its process group id; killing the group takes any children it
    spawned down with it.

    Raises:
        TerminationError: If the signal could not be delivered.
    """
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        return
    except OSError as exc:
        msg = f"Cannot kill process group {proc.pid}: {exc}"
        raise TerminationError(msg, diagnostics={"pid": proc.pid}) from exc


class OutputBuffer:
    """Append-only capture of a process's combined output.

    Single writer (the output pump), any number of readers. The lock is
    held only while appending; readers get the current immutable snapshot.
    Text is decoded incrementally, so successive ``text`` snapshots are
    always prefixes or extensions of earlier ones.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data = bytearray()
        self._text = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._closed = False

    def append(self, chunk: bytes) -> None:
        with self._lock:
            if self._closed:
                msg = "Cannot append to a closed output buffer"
                raise ValueError(msg)
            self._data += chunk
            self._text += self._decoder.decode(chunk)

    def close(self) -> None:
        """Flush any trailing partial character. Idempotent."""
        with self._lock:
            if not self._closed:
                self._text += self._decoder.decode(b"", final=True)
                self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def text(self) -> str:
        """Decoded output accumulated so far."""
        return self._text

    def raw(self) -> bytes:
        """Raw bytes accumulated so far."""
        with self._lock:
            return bytes(self._data)

    def __len__(self) -> int:
        return len(self._data)


class CapturedProcess:
    """An external command whose combined output is continuously buffered.

    Create through ``ProcessRegistry.launch`` so that the process is always
    tracked for teardown. Output is read with ``output`` at any time; it
    never blocks and is empty before anything was printed.

    Attributes:
        command: Command line, executable first.
        cwd: Working directory of the process.
        name: Display name used in logs and diagnostics.
        watchdog_timeout: Seconds after which the process is force-terminated.
        termination_timeout: Seconds allowed for reaping a killed process.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        cwd: str | Path,
        name: str | None = None,
        watchdog_timeout: float = DEFAULT_WATCHDOG_SECONDS,
        termination_timeout: float = DEFAULT_TERMINATION_TIMEOUT,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if not command:
            msg = "Command must contain at least an executable"
            raise ValueError(msg)
        if watchdog_timeout <= 0 or termination_timeout <= 0:
            msg = "Watchdog and termination timeouts must be > 0"
            raise ValueError(msg)
        self.command = [str(part) for part in command]
        self.cwd = Path(cwd)
        self.name = name or Path(self.command[0]).name
        self.watchdog_timeout = watchdog_timeout
        self.termination_timeout = termination_timeout
        self._env = dict(env) if env is not None else build_process_env()
        self._buffer = OutputBuffer()
        self._proc: asyncio.subprocess.Process | None = None
        self._status = ProcessStatus.NOT_STARTED
        self._pump_task: asyncio.Task[None] | None = None
        self._supervisor_task: asyncio.Task[None] | None = None
        self._done = asyncio.Event()
        self._terminate_lock = asyncio.Lock()
        self._watchdog_fired = False

    def __repr__(self) -> str:
        return f"<CapturedProcess {self.name} pid={self.pid} status={self._status}>"

    @property
    def status(self) -> ProcessStatus:
        return self._status

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc is not None else None

    @property
    def watchdog_fired(self) -> bool:
        """Whether the watchdog, rather than teardown, killed the process."""
        return self._watchdog_fired

    @property
    def output(self) -> str:
        """Snapshot of the decoded output accumulated so far."""
        return self._buffer.text

    @property
    def output_bytes(self) -> bytes:
        """Snapshot of the raw output bytes accumulated so far."""
        return self._buffer.raw()

    def contains(self, marker: str) -> bool:
        """Return whether the output captured so far contains *marker*."""
        return marker in self._buffer.text

    async def start(self) -> None:
        """Spawn the process and start its output pump and watchdog.

        Raises:
            LaunchError: If the working directory is missing or the command
                cannot be spawned.
            HarnessError: If the process was already started.
        """
        if self._status is not ProcessStatus.NOT_STARTED:
            msg = f"{self.name} has already been started"
            raise HarnessError(msg)
        if not self.cwd.is_dir():
            msg = f"Working directory does not exist: {self.cwd}"
            raise LaunchError(msg, command=self.command, cwd=str(self.cwd))

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=self.cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=self._env,
                start_new_session=True,
            )
        except OSError as exc:
            msg = f"Cannot launch {self.command[0]!r}: {exc}"
            raise LaunchError(msg, command=self.command, cwd=str(self.cwd)) from exc

        self._proc = proc
        self._status = ProcessStatus.RUNNING
        logger.info("Launched %s (pid %d): %s", self.name, proc.pid, shlex.join(self.command))

        if proc.stdout is not None:
            self._pump_task = asyncio.create_task(
                self._pump(proc.stdout), name=f"pump-{self.name}-{proc.pid}"
            )
        self._supervisor_task = asyncio.create_task(
            self._supervise(proc), name=f"watchdog-{self.name}-{proc.pid}"
        )

    async def _pump(self, stream: asyncio.StreamReader) -> None:
        try:
            while chunk := await stream.read(_CHUNK_SIZE):
                self._buffer.append(chunk)
        finally:
            self._buffer.close()

    async def _supervise(self, proc: asyncio.subprocess.Process) -> None:
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.watchdog_timeout)
        except TimeoutError:
            self._watchdog_fired = True
            logger.warning(
                "Watchdog expired after %.1fs for %s (pid %d); terminating",
                self.watchdog_timeout,
                self.name,
                proc.pid,
            )
            try:
                await self.terminate()
            except TerminationError as exc:
                logger.warning("Watchdog could not terminate %s: %s", self.name, exc)
            return

        await self._drain_pump()
        if self._status is ProcessStatus.RUNNING:
            self._status = ProcessStatus.COMPLETED
            logger.info("%s (pid %d) exited with code %s", self.name, proc.pid, proc.returncode)
        self._done.set()

    async def _drain_pump(self) -> None:
        task = self._pump_task
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.termination_timeout)
        except TimeoutError:
            # A detached descendant still holds the pipe open.
            logger.warning("Output pump of %s did not reach EOF; cancelling", self.name)
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def terminate(self) -> None:
        """Forcefully terminate the process and its output pump.

        Idempotent: for a process that was never started this is a no-op.
        For one that already exited or was already terminated the status
        is left alone, but its process group is killed again so that no
        descendant outlives the scenario.

        Raises:
            TerminationError: If the process could not be killed or was not
                reaped within ``termination_timeout``.
        """
        proc = self._proc
        if proc is None:
            return
        async with self._terminate_lock:
            if self._done.is_set():
                # The leader is gone but descendants it spawned may still
                # hold its process group.
                kill_process_group(proc)
                return
            exited_on_its_own = proc.returncode is not None
            if not exited_on_its_own:
                self._status = ProcessStatus.TERMINATED
            elif self._status is ProcessStatus.RUNNING:
                self._status = ProcessStatus.COMPLETED
            kill_process_group(proc)
            if not exited_on_its_own:
                try:
                    await asyncio.wait_for(proc.wait(), timeout=self.termination_timeout)
                except TimeoutError as exc:
                    msg = (
                        f"{self.name} (pid {proc.pid}) not reaped within "
                        f"{self.termination_timeout}s of SIGKILL"
                    )
                    raise TerminationError(msg, diagnostics={"pid": proc.pid}) from exc
                logger.info("Terminated %s (pid %d)", self.name, proc.pid)
            await self._drain_pump()
            self._done.set()

    async def wait_for_completion(self, timeout: float) -> WaitOutcome:
        """Wait until the process exits, is terminated, or *timeout* elapses.

        A timeout is a reportable outcome, not an error.

        Args:
            timeout: Maximum seconds to wait.

        Returns:
            ``EXITED``, ``TERMINATED`` or ``TIMED_OUT``, whichever came first.

        Raises:
            HarnessError: If the process was never started.
            ValueError: If *timeout* is negative.
        """
        if timeout < 0:
            msg = "Timeout must be >= 0"
            raise ValueError(msg)
        if self._status is ProcessStatus.NOT_STARTED:
            msg = f"{self.name} has not been started"
            raise HarnessError(msg)
        if not self._done.is_set():
            try:
                await asyncio.wait_for(self._done.wait(), timeout=timeout)
            except TimeoutError:
                return WaitOutcome.TIMED_OUT
        if self._status is ProcessStatus.COMPLETED:
            return WaitOutcome.EXITED
        return WaitOutcome.TERMINATED


class ProcessRegistry:
    """Owner of every process launched during one scenario.

    Not a singleton: each scenario creates its own registry, so scenarios
    stay isolated. Use as an async context manager to guarantee
    ``terminate_all`` runs on every exit path::

        async with ProcessRegistry() as registry:
            app = await registry.launch(["java", "-jar", "app.jar"], cwd=workspace)

    Attributes:
        watchdog_timeout: Default watchdog for launched processes.
        termination_timeout: Bound for reaping each killed process.
    """

    def __init__(
        self,
        *,
        watchdog_timeout: float = DEFAULT_WATCHDOG_SECONDS,
        termination_timeout: float = DEFAULT_TERMINATION_TIMEOUT,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.watchdog_timeout = watchdog_timeout
        self.termination_timeout = termination_timeout
        self._env = env
        self._processes: list[CapturedProcess] = []
        self._closed = False

    async def __aenter__(self) -> ProcessRegistry:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.terminate_all()

    @property
    def processes(self) -> tuple[CapturedProcess, ...]:
        return tuple(self._processes)

    @property
    def pids(self) -> list[int]:
        return [p.pid for p in self._processes if p.pid is not None]

    @property
    def closed(self) -> bool:
        return self._closed

    def running(self) -> list[CapturedProcess]:
        """Processes that have neither exited nor been terminated."""
        return [p for p in self._processes if p.status is ProcessStatus.RUNNING]

    def register(self, process: CapturedProcess) -> None:
        """Track *process* for teardown. Registering twice is a no-op.

        Raises:
            HarnessError: If the registry has already been torn down.
        """
        if self._closed:
            msg = "Process registry has already been torn down"
            raise HarnessError(msg)
        if any(p is process for p in self._processes):
            return
        self._processes.append(process)

    async def launch(
        self,
        command: Sequence[str],
        *,
        cwd: str | Path,
        name: str | None = None,
        watchdog_timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CapturedProcess:
        """Spawn *command* as a captured process and register it.

        Args:
            command: Command line, executable first.
            cwd: Existing working directory.
            name: Display name for logs; defaults to the executable name.
            watchdog_timeout: Overrides the registry's default watchdog.
            env: Overrides the registry's environment.

        Returns:
            The running, registered process.

        Raises:
            LaunchError: If the command cannot be spawned.
            HarnessError: If the registry was torn down before or during the
                launch; a process spawned meanwhile is terminated.
        """
        if self._closed:
            msg = "Process registry has already been torn down"
            raise HarnessError(msg)
        process = CapturedProcess(
            command,
            cwd=cwd,
            name=name,
            watchdog_timeout=watchdog_timeout or self.watchdog_timeout,
            termination_timeout=self.termination_timeout,
            env=env if env is not None else self._env,
        )
        await process.start()
        if self._closed:
            # terminate_all ran while the process was spawning and missed it.
            await process.terminate()
            msg = f"Process registry was torn down while launching {process.name}"
            raise HarnessError(msg, diagnostics={"command": process.command, "pid": process.pid})
        self.register(process)
        return process

    async def terminate_all(self) -> list[TerminationFailure]:
        """Force-terminate every registered process, newest first.

        Individual failures are logged and collected, never raised, so that
        one stuck process cannot prevent cleanup of the others. Idempotent.

        Returns:
            One entry per process that could not be terminated.
        """
        self._closed = True
        processes = list(reversed(self._processes))
        outcomes = await asyncio.gather(
            *(p.terminate() for p in processes), return_exceptions=True
        )
        failures: list[TerminationFailure] = []
        for process, outcome in zip(processes, outcomes, strict=True):
            if outcome is None:
                continue
            if not isinstance(outcome, Exception):
                raise outcome
            logger.warning("Failed to terminate %s (pid %s): %s", process.name, process.pid, outcome)
            failures.append(
                TerminationFailure(name=process.name, pid=process.pid, error=str(outcome))
            )
        return failures
