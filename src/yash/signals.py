"""Signal dispatcher: how the shell learns about its children.

Three signals drive job control:

    - **SIGCHLD**: a child changed state.  The handler collects every
      child that is ready (``waitpid(-1, WNOHANG | WUNTRACED)`` in a loop,
      so all members of a pipeline are seen, not just the group leader)
      and queues one ``ChildEvent`` per state change.
    - **SIGINT** (Ctrl-C): forwarded to the foreground job's process
      group, which is flagged as interrupted.  It only becomes KILLED once
      its processes are reaped; one that ignores SIGINT may still stop.
      The shell itself keeps running.
    - **SIGTSTP** (Ctrl-Z): forwarded the same way; the job is marked
      STOPPED.

Only the forwarded process groups keep the default dispositions, so only
they actually die or stop.

Design choices:
    - **Message passing, not shared mutation.**  A handler may interrupt
      the main loop between any two bytecodes.  The SIGCHLD handler never
      touches the job table; it appends to a ``deque`` that the main loop
      drains between prompts.  The SIGINT/SIGTSTP handlers make exactly
      one write on the foreground job and queue a ``Forwarded`` record
      for the main loop to log.
    - **The dispatcher holds no table.**  The only job it knows about is
      ``foreground``, which the wait protocol sets and clears.
    - **Handlers are plain methods** so tests can call them directly to
      simulate delivery without sending real signals to the test runner.
"""

from __future__ import annotations

import contextlib
import os
import signal
from collections import deque
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from yash.jobs import JobStatus, JobTable

if TYPE_CHECKING:
    from collections.abc import Iterator
    from types import FrameType

    from yash.jobs import Job


class EventKind(StrEnum):
    """What happened to a reaped child."""

    EXITED = "exited"
    SIGNALED = "signaled"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ChildEvent:
    """One ``waitpid`` result: which pid, what happened, and the code.

    ``code`` is the exit status for EXITED and the signal number for
    SIGNALED and STOPPED.
    """

    pid: int
    kind: EventKind
    code: int

    @classmethod
    def from_wait_status(cls, pid: int, status: int) -> ChildEvent:
        """Decode a raw ``waitpid`` status word."""
        if os.WIFSTOPPED(status):
            return cls(pid=pid, kind=EventKind.STOPPED, code=os.WSTOPSIG(status))
        if os.WIFSIGNALED(status):
            return cls(pid=pid, kind=EventKind.SIGNALED, code=os.WTERMSIG(status))
        return cls(pid=pid, kind=EventKind.EXITED, code=os.WEXITSTATUS(status))


@dataclass(frozen=True)
class Forwarded:
    """A signal the shell passed on to a foreground job."""

    job_id: int
    group_pid: int
    signum: signal.Signals


class SignalDispatcher:
    """Install and run the shell's SIGCHLD, SIGINT and SIGTSTP handlers."""

    HANDLED: tuple[signal.Signals, ...] = (signal.SIGCHLD, signal.SIGINT, signal.SIGTSTP)

    def __init__(self) -> None:
        """Create a dispatcher with empty queues, not yet installed."""
        self.foreground: Job | None = None
        self._events: deque[ChildEvent] = deque()
        self._forwards: deque[Forwarded] = deque()
        self._previous: dict[signal.Signals, Any] = {}

    @property
    def pending(self) -> int:
        """Return the number of queued, undrained events."""
        return len(self._events)

    @property
    def is_installed(self) -> bool:
        """Return True while the handlers are installed."""
        return bool(self._previous)

    # -- handlers ----------------------------------------------------------

    def handle_sigchld(self, _signum: int, _frame: FrameType | None) -> None:
        """Reap every ready child and queue its event."""
        while True:
            try:
                pid, status = os.waitpid(-1, os.WNOHANG | os.WUNTRACED)
            except ChildProcessError:
                return
            if pid == 0:
                return
            self._events.append(ChildEvent.from_wait_status(pid, status))

    def handle_sigint(self, _signum: int, _frame: FrameType | None) -> None:
        """Forward Ctrl-C to the foreground job and flag it as interrupted."""
        job = self._forward(signal.SIGINT)
        if job is not None:
            job.interrupted = True

    def handle_sigtstp(self, _signum: int, _frame: FrameType | None) -> None:
        """Forward Ctrl-Z to the foreground job and mark it STOPPED."""
        job = self._forward(signal.SIGTSTP)
        if job is not None:
            JobTable.set_status(job, JobStatus.STOPPED)

    def _forward(self, signum: signal.Signals) -> Job | None:
        job = self.foreground
        if job is None or not job.group_pid:
            return None
        with contextlib.suppress(ProcessLookupError):
            os.killpg(job.group_pid, signum)
        self._forwards.append(Forwarded(job.job_id, job.group_pid, signum))
        return job

    # -- main-loop side ----------------------------------------------------

    def drain(self) -> list[ChildEvent]:
        """Pop and return every queued event, oldest first."""
        events: list[ChildEvent] = []
        while self._events:
            events.append(self._events.popleft())
        return events

    def drain_forwards(self) -> list[Forwarded]:
        """Pop and return every queued forwarding record, oldest first."""
        forwards: list[Forwarded] = []
        while self._forwards:
            forwards.append(self._forwards.popleft())
        return forwards

    def install(self) -> None:
        """Install the handlers, remembering the previous dispositions."""
        handlers = {
            signal.SIGCHLD: self.handle_sigchld,
            signal.SIGINT: self.handle_sigint,
            signal.SIGTSTP: self.handle_sigtstp,
        }
        for signum, handler in handlers.items():
            self._previous[signum] = signal.signal(signum, handler)

    def restore(self) -> None:
        """Put back the dispositions that were active before ``install``."""
        for signum, previous in self._previous.items():
            # None means the old handler was not installed from Python.
            signal.signal(signum, signal.SIG_DFL if previous is None else previous)
        self._previous.clear()

    @contextlib.contextmanager
    def installed(self) -> Iterator[SignalDispatcher]:
        """Keep the handlers installed for the duration of a ``with`` block."""
        self.install()
        try:
            yield self
        finally:
            self.restore()
