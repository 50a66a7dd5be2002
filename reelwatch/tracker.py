"""Lifecycle tracker for long-running generation jobs.

One ``TrackerState`` follows one submitted job:

    idle -> submitting -> polling -> completed
                 |           |
                 +-----------+--> failed

``completed`` and ``failed`` are terminal. ``cancel`` moves any live state
back to ``idle`` with ``cancelled`` set, after which nothing mutates it.

Polling is driven by a fixed-rate ticker task owned by the state. A tick that
fires while the previous poll call is still outstanding is skipped, so a
state never has two poll calls in flight. The first poll failure is final:
a job whose status cannot be read is re-submitted by the caller, not
re-polled.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol

import structlog

from .errors import PollError, ProtocolViolation, SubmissionError, TrackerError, classify_error
from .models import JobRequest
from .security import CredentialStatus

logger = structlog.get_logger(__name__)

DEFAULT_POLL_INTERVAL = 10.0
MISSING_RESULT_MESSAGE = "Video generation finished but no video URI was found."


class Phase(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_PHASES = frozenset({Phase.COMPLETED, Phase.FAILED})

STATUS_MESSAGES: dict[Phase, str] = {
    Phase.IDLE: "",
    Phase.SUBMITTING: "Initializing video generation...",
    Phase.POLLING: "Creating your video. This can take a few minutes...",
    Phase.COMPLETED: "Video generation complete!",
    Phase.FAILED: "An error occurred.",
}


class JobHandle(Protocol):
    done: bool
    result_uri: Optional[str]


class JobSubmitter(Protocol):
    async def submit(self, prompt_text: str, options: dict[str, Any]) -> JobHandle: ...


class JobPoller(Protocol):
    async def poll(self, handle: JobHandle) -> JobHandle: ...


def _is_done(handle: Any) -> bool:
    return bool(getattr(handle, "done", False))


def _result_of(handle: Any) -> Optional[str]:
    return getattr(handle, "result_uri", None) or None


@dataclass(eq=False)
class TrackerState:
    request: JobRequest
    phase: Phase = Phase.IDLE
    current_handle: Any = None
    last_error: Optional[TrackerError] = None
    cancelled: bool = False
    poll_count: int = 0
    credential_invalidated: bool = False
    _timer: Optional[asyncio.Task] = field(default=None, init=False, repr=False)
    _in_flight: Optional[asyncio.Task] = field(default=None, init=False, repr=False)
    _finished: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)

    @property
    def terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def live(self) -> bool:
        return not (self.terminal or self.cancelled)

    @property
    def result_uri(self) -> Optional[str]:
        if self.phase is not Phase.COMPLETED:
            return None
        return _result_of(self.current_handle)

    @property
    def status_message(self) -> str:
        return STATUS_MESSAGES[self.phase]

    def pending_tasks(self) -> list[asyncio.Task]:
        return [task for task in (self._timer, self._in_flight) if task is not None and not task.done()]

    async def wait(self, timeout: float | None = None) -> "TrackerState":
        """Wait until the job reaches a terminal phase or is cancelled."""
        await asyncio.wait_for(self._finished.wait(), timeout)
        return self


Listener = Callable[[TrackerState, Phase], None]


class OperationTracker:
    """Submits jobs and follows them to completion.

    The submitter and poller are injected; any object with the matching
    coroutine method works. ``credentials`` is cleared when a failure is
    classified as a credential problem.
    """

    def __init__(
        self,
        submitter: JobSubmitter,
        poller: JobPoller,
        credentials: CredentialStatus | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.submitter = submitter
        self.poller = poller
        self.credentials = credentials
        self.poll_interval = poll_interval
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener(state, previous_phase)`` on every phase change."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return unsubscribe

    def submit(self, request: JobRequest) -> TrackerState:
        """Start a job and return its live state without waiting on the backend.

        Must be called from a running event loop.
        """
        loop = asyncio.get_running_loop()
        state = TrackerState(request=request)
        self._transition(state, Phase.SUBMITTING)
        state._in_flight = loop.create_task(self._run_submission(state))
        return state

    def cancel(self, state: TrackerState) -> None:
        """Abandon a job. Safe to call repeatedly and on finished jobs.

        The outstanding submit or poll call, if any, is cancelled and its
        result is never applied. The backend is not told.
        """
        if not state.live:
            return
        state.cancelled = True
        self._stop_timer(state)
        in_flight = state._in_flight
        state._in_flight = None
        if in_flight is not None and not in_flight.done():
            in_flight.cancel()
        logger.info("tracker.cancelled", phase=state.phase.value, polls=state.poll_count)
        self._transition(state, Phase.IDLE)
        state._finished.set()

    async def _run_submission(self, state: TrackerState) -> None:
        logger.info("tracker.submit.started", aspect_ratio=state.request.aspect_ratio.value)
        try:
            handle = await self.submitter.submit(state.request.prompt, state.request.options())
        except Exception as exc:
            state._in_flight = None
            if state.cancelled:
                logger.info("tracker.submit.discarded", outcome="error")
                return
            self._fail(state, classify_error(exc, SubmissionError))
            return

        state._in_flight = None
        if state.cancelled:
            logger.info("tracker.submit.discarded", outcome="handle")
            return

        state.current_handle = handle
        self._transition(state, Phase.POLLING)
        # A listener may already have cancelled the job
        if state.live:
            state._timer = asyncio.create_task(self._run_timer(state))

    async def _run_timer(self, state: TrackerState) -> None:
        while state.phase is Phase.POLLING and not state.cancelled:
            await asyncio.sleep(self.poll_interval)
            if state.phase is not Phase.POLLING or state.cancelled:
                return
            if state._in_flight is not None:
                logger.debug("tracker.poll.skipped", polls=state.poll_count)
                continue
            state._in_flight = asyncio.create_task(self._poll_once(state))

    async def _poll_once(self, state: TrackerState) -> None:
        # Scheduled by a tick that raced with cancel()
        if state.cancelled or state.phase is not Phase.POLLING:
            state._in_flight = None
            return
        state.poll_count += 1
        poll_number = state.poll_count
        try:
            refreshed = await self.poller.poll(state.current_handle)
        except Exception as exc:
            state._in_flight = None
            if state.cancelled:
                logger.info("tracker.poll.discarded", poll_number=poll_number, outcome="error")
                return
            self._stop_timer(state)
            self._fail(state, classify_error(exc, PollError))
            return

        state._in_flight = None
        if state.cancelled or state.phase is not Phase.POLLING:
            logger.info("tracker.poll.discarded", poll_number=poll_number, outcome="handle")
            return

        state.current_handle = refreshed
        if not _is_done(refreshed):
            logger.debug("tracker.poll.pending", poll_number=poll_number)
            return

        self._stop_timer(state)
        if _result_of(refreshed) is None:
            self._fail(state, ProtocolViolation(MISSING_RESULT_MESSAGE))
            return
        logger.info("tracker.completed", polls=poll_number, result_uri=_result_of(refreshed))
        self._transition(state, Phase.COMPLETED)

    def _fail(self, state: TrackerState, error: TrackerError) -> None:
        state.last_error = error
        if error.credential_invalid:
            state.credential_invalidated = True
            if self.credentials is not None:
                self.credentials.invalidate(error.message)
        logger.error(
            "tracker.failed",
            error_type=error.kind,
            error_message=error.message,
            tag=error.tag,
            polls=state.poll_count,
        )
        self._transition(state, Phase.FAILED)

    @staticmethod
    def _stop_timer(state: TrackerState) -> None:
        timer = state._timer
        state._timer = None
        if timer is not None and not timer.done():
            timer.cancel()

    def _transition(self, state: TrackerState, phase: Phase) -> None:
        previous = state.phase
        state.phase = phase
        if phase in TERMINAL_PHASES:
            state._finished.set()
        logger.debug("tracker.phase.changed", previous=previous.value, phase=phase.value)
        for listener in list(self._listeners):
            try:
                listener(state, previous)
            except Exception:
                logger.exception("tracker.listener.failed", phase=phase.value)
