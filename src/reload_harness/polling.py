"""Condition polling: wait until a predicate over a polled value holds.

``await_condition`` samples a probe at a fixed cadence until a predicate
over the sampled value becomes true or the wait bound elapses. On timeout
the optional ``on_timeout`` callback receives a ``TimeoutEvent`` exactly
once, then ``ConditionTimeoutError`` is raised carrying the last observed
value so that a racy failure can be diagnosed from captured output alone.

Probes and predicates may raise on transient inspection failures; such
errors count as "not yet satisfied" and only surface, in the timeout
diagnostics, if they persist until the bound elapses.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
import inspect
import logging
import math
import time
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, field_validator

from reload_harness.errors import ConditionTimeoutError
from reload_harness.models import TimeoutEvent

if TYPE_CHECKING:
    from reload_harness.process import CapturedProcess

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.1
DEFAULT_MAX_WAIT = 5.0

_EXCERPT_CHARS = 2000

TimeoutCallback = Callable[[TimeoutEvent], Any]


def excerpt(value: Any, limit: int = _EXCERPT_CHARS) -> str:
    """Return the tail of *value* as text, truncated to *limit* characters.

    The tail is kept because the most recent output is the most relevant
    when a marker never shows up.
    """
    text = value if isinstance(value, str) else repr(value)
    if len(text) <= limit:
        return text
    return f"...[{len(text) - limit} chars truncated]...{text[-limit:]}"


class PollCondition(BaseModel):
    """A bounded, repeatedly evaluated condition.

    Attributes:
        probe: Zero-argument callable (sync or async) returning the value to
            inspect, e.g. a process output snapshot. Must not mutate
            scenario state; it may be evaluated any number of times.
        until: Predicate over the probed value; ``None`` uses truthiness.
        poll_interval: Seconds slept between evaluations.
        max_wait: Bound in seconds; ``0`` evaluates exactly once.
        on_timeout: Called once with the ``TimeoutEvent`` before failing.
        description: What is being waited for, used in logs and errors.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    probe: Callable[[], Any]
    until: Callable[[Any], Any] | None = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    max_wait: float = DEFAULT_MAX_WAIT
    on_timeout: Callable[[TimeoutEvent], Any] | None = None
    description: str = "condition"

    @field_validator("poll_interval")
    @classmethod
    def _interval_must_be_positive(cls, v: float) -> float:
        """Validate that the cadence is finite and > 0 (no busy waiting)."""
        if not math.isfinite(v) or v <= 0:
            msg = "poll_interval must be a finite number > 0"
            raise ValueError(msg)
        return v

    @field_validator("max_wait")
    @classmethod
    def _max_wait_must_be_non_negative(cls, v: float) -> float:
        """Validate that the bound is finite and >= 0."""
        if not math.isfinite(v) or v < 0:
            msg = "max_wait must be a finite number >= 0"
            raise ValueError(msg)
        return v

    async def _evaluate(self, remaining: float) -> tuple[bool, Any]:
        value = self.probe()
        if inspect.isawaitable(value):
            value = await asyncio.wait_for(value, timeout=max(remaining, self.poll_interval))
        satisfied = self.until(value) if self.until is not None else value
        if inspect.isawaitable(satisfied):
            satisfied = await satisfied
        return bool(satisfied), value

    async def wait(self) -> Any:
        """Poll until the condition holds.

        Returns:
            The probed value that satisfied the condition.

        Raises:
            ConditionTimeoutError: If the condition did not hold within
                ``max_wait``. Exceptions raised by ``on_timeout`` propagate
                instead, chained from the timeout error.
        """
        start = time.monotonic()
        deadline = start + self.max_wait
        evaluations = 0
        last_value: Any = None
        last_error: BaseException | None = None

        while True:
            evaluations += 1
            try:
                satisfied, last_value = await self._evaluate(deadline - time.monotonic())
                last_error = None
            except Exception as exc:  # noqa: BLE001
                satisfied = False
                last_error = exc
                logger.debug("Transient failure evaluating %s: %r", self.description, exc)
            if satisfied:
                logger.debug(
                    "%s satisfied after %.2fs (%d evaluations)",
                    self.description,
                    time.monotonic() - start,
                    evaluations,
                )
                return last_value
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.poll_interval, remaining))

        event = TimeoutEvent(
            description=self.description,
            max_wait_seconds=self.max_wait,
            poll_interval_seconds=self.poll_interval,
            elapsed_seconds=time.monotonic() - start,
            evaluations=evaluations,
            last_value=last_value,
            last_error=repr(last_error) if last_error is not None else None,
        )
        logger.warning(
            "Timed out after %.2fs waiting for %s; last value: %s",
            event.elapsed_seconds,
            self.description,
            excerpt(last_value),
        )
        message = (
            f"Timed out after {event.elapsed_seconds:.2f}s waiting for {self.description} "
            f"({evaluations} evaluations)"
        )
        if last_error is not None:
            message += f"; last error: {last_error!r}"
        message += f"; last value: {excerpt(last_value)}"
        error = ConditionTimeoutError(message, event=event)
        if self.on_timeout is not None:
            try:
                self.on_timeout(event)
            except Exception as callback_error:
                raise callback_error from error
        raise error


async def await_condition(
    probe: Callable[[], Any],
    *,
    until: Callable[[Any], Any] | None = None,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    max_wait: float = DEFAULT_MAX_WAIT,
    on_timeout: TimeoutCallback | None = None,
    description: str = "condition",
) -> Any:
    """Wait until ``until(probe())`` (or ``probe()`` itself) is truthy.

    Success is returned as soon as the predicate holds, without waiting for
    the next tick. The wait never exceeds *max_wait* by more than one
    *poll_interval*.

    Args:
        probe: Callable returning the value to inspect (sync or async).
        until: Predicate over the probed value; ``None`` uses truthiness.
        poll_interval: Seconds between evaluations.
        max_wait: Bound in seconds; ``0`` evaluates exactly once.
        on_timeout: Called once with a ``TimeoutEvent`` before failing.
        description: What is being waited for.

    Returns:
        The probed value that satisfied the predicate.

    Raises:
        ConditionTimeoutError: If the predicate never held within *max_wait*.
        ValueError: If *poll_interval* or *max_wait* is out of range.
    """
    condition = PollCondition(
        probe=probe,
        until=until,
        poll_interval=poll_interval,
        max_wait=max_wait,
        on_timeout=on_timeout,
        description=description,
    )
    return await condition.wait()


def output_contains(marker: str) -> Callable[[str], bool]:
    """Predicate factory: the inspected output contains *marker*."""

    def _contains(output: str) -> bool:
        return marker in output

    return _contains


async def await_output_contains(
    process: CapturedProcess,
    marker: str,
    *,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    max_wait: float = DEFAULT_MAX_WAIT,
    on_timeout: TimeoutCallback | None = None,
) -> str:
    """Wait until *process* has printed *marker*.

    Returns:
        The output snapshot that contained the marker.

    Raises:
        ConditionTimeoutError: If the marker did not appear within
            *max_wait*; the error's ``last_value`` is the final snapshot.
    """
    output = await await_condition(
        lambda: process.output,
        until=output_contains(marker),
        poll_interval=poll_interval,
        max_wait=max_wait,
        on_timeout=on_timeout,
        description=f"{process.name} output to contain {marker!r}",
    )
    logger.info("Observed %r in %s output", marker, process.name)
    return output
