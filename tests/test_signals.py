"""Tests for the signal dispatcher.

The handlers are plain methods, so most tests call them directly to
simulate delivery.  Real child processes are used throughout: the
dispatcher's whole job is talking to the OS.
"""

import os
import signal
import time

import pytest

from yash.jobs import Job, JobStatus, JobTable
from yash.launcher import ProcessLauncher
from yash.pipeline import build_pipeline
from yash.signals import ChildEvent, EventKind, Forwarded, SignalDispatcher

_TIMEOUT = 5.0


def _launch(table: JobTable, command: str) -> Job:
    """Launch *command* as a new job in its own process group."""
    job = table.create(table.next_job_id(), command)
    ProcessLauncher().launch(job, build_pipeline(command.split()))
    return job


def _kill(job: Job) -> None:
    """Kill and reap whatever is left of *job*."""
    for pid in job.pids:
        try:
            os.kill(pid, signal.SIGKILL)
            os.waitpid(pid, 0)
        except (ProcessLookupError, ChildProcessError):
            continue


def _reap_until(dispatcher: SignalDispatcher, count: int) -> list[ChildEvent]:
    """Simulate SIGCHLD deliveries until *count* events are queued."""
    deadline = time.monotonic() + _TIMEOUT
    while dispatcher.pending < count and time.monotonic() < deadline:
        dispatcher.handle_sigchld(signal.SIGCHLD, None)
        time.sleep(0.01)
    return dispatcher.drain()


class TestChildEvent:
    """Verify decoding of raw wait status words."""

    def test_exited(self) -> None:
        """A normal exit carries the exit status."""
        event = ChildEvent.from_wait_status(10, 3 << 8)
        assert event == ChildEvent(pid=10, kind=EventKind.EXITED, code=3)

    def test_signaled(self) -> None:
        """Death by signal carries the signal number."""
        event = ChildEvent.from_wait_status(10, signal.SIGKILL)
        assert event.kind is EventKind.SIGNALED
        assert event.code == signal.SIGKILL

    def test_stopped(self) -> None:
        """A stop carries the stopping signal."""
        event = ChildEvent.from_wait_status(10, (signal.SIGTSTP << 8) | 0x7F)
        assert event.kind is EventKind.STOPPED
        assert event.code == signal.SIGTSTP


class TestSigchld:
    """Verify reaping into the event queue."""

    def test_reaps_exited_child(self) -> None:
        """An exited child is reaped and queued with its status."""
        dispatcher = SignalDispatcher()
        table = JobTable()
        job = _launch(table, "false")
        events = _reap_until(dispatcher, 1)
        assert events == [ChildEvent(pid=job.leader_pid, kind=EventKind.EXITED, code=1)]

    def test_reaps_every_pipeline_member(self) -> None:
        """The non-blocking sweep collects all stages, not just the leader."""
        dispatcher = SignalDispatcher()
        table = JobTable()
        job = _launch(table, "true | true | true")
        events = _reap_until(dispatcher, 3)
        assert sorted(e.pid for e in events) == sorted(job.pids)

    def test_reports_stopped_child(self) -> None:
        """A child stopped by a signal is reported without being reaped."""
        dispatcher = SignalDispatcher()
        job = _launch(JobTable(), "sleep 10")
        try:
            os.kill(job.leader_pid, signal.SIGSTOP)
            events = _reap_until(dispatcher, 1)
            assert events == [
                ChildEvent(pid=job.leader_pid, kind=EventKind.STOPPED, code=signal.SIGSTOP)
            ]
            assert os.waitpid(job.leader_pid, os.WNOHANG) == (0, 0)
        finally:
            _kill(job)

    def test_handler_does_not_touch_jobs(self) -> None:
        """Reaping only queues events; job status is left to the main loop."""
        dispatcher = SignalDispatcher()
        table = JobTable()
        job = _launch(table, "true")
        _reap_until(dispatcher, 1)
        assert job.status is JobStatus.RUNNING
        assert job.live_pids == {job.leader_pid}

    def test_no_children_is_quiet(self) -> None:
        """With nothing to reap the handler just returns."""
        dispatcher = SignalDispatcher()
        dispatcher.handle_sigchld(signal.SIGCHLD, None)
        assert dispatcher.drain() == []

    def test_drain_empties_queue(self) -> None:
        """Drained events are not returned twice."""
        dispatcher = SignalDispatcher()
        _launch(JobTable(), "true")
        _reap_until(dispatcher, 1)
        assert dispatcher.pending == 0
        assert dispatcher.drain() == []


class TestForwarding:
    """Verify SIGINT/SIGTSTP go to the foreground group."""

    def test_sigint_kills_foreground_group(self) -> None:
        """Ctrl-C reaches every stage and flags the job as interrupted."""
        dispatcher = SignalDispatcher()
        job = _launch(JobTable(), "sleep 10 | sleep 10")
        dispatcher.foreground = job
        try:
            dispatcher.handle_sigint(signal.SIGINT, None)
            assert job.interrupted
            assert job.status is JobStatus.RUNNING
            for pid in job.pids:
                _, status = os.waitpid(pid, 0)
                assert os.WIFSIGNALED(status)
                assert os.WTERMSIG(status) == signal.SIGINT
        finally:
            _kill(job)

    @pytest.mark.parametrize("attempt", range(5))
    def test_sigint_right_after_launch(self, attempt: int) -> None:
        """Ctrl-C forwarded the moment launch returns still kills every stage."""
        del attempt
        dispatcher = SignalDispatcher()
        job = _launch(JobTable(), "sleep 10 | sleep 10 | sleep 10")
        dispatcher.foreground = job
        try:
            dispatcher.handle_sigint(signal.SIGINT, None)
            for pid in job.pids:
                _, status = os.waitpid(pid, 0)
                assert os.WIFSIGNALED(status)
                assert os.WTERMSIG(status) == signal.SIGINT
        finally:
            _kill(job)

    def test_sigtstp_stops_foreground_group(self) -> None:
        """Ctrl-Z stops the job and marks it STOPPED."""
        dispatcher = SignalDispatcher()
        job = _launch(JobTable(), "sleep 10")
        dispatcher.foreground = job
        try:
            dispatcher.handle_sigtstp(signal.SIGTSTP, None)
            assert job.status is JobStatus.STOPPED
            _, status = os.waitpid(job.leader_pid, os.WUNTRACED)
            assert os.WIFSTOPPED(status)
        finally:
            _kill(job)

    def test_forward_is_queued_for_the_main_loop(self) -> None:
        """Each forwarded signal is queued as a record, not logged in the handler."""
        dispatcher = SignalDispatcher()
        job = _launch(JobTable(), "sleep 10")
        dispatcher.foreground = job
        try:
            dispatcher.handle_sigint(signal.SIGINT, None)
            assert dispatcher.drain_forwards() == [
                Forwarded(job_id=1, group_pid=job.group_pid, signum=signal.SIGINT)
            ]
            assert dispatcher.drain_forwards() == []
        finally:
            _kill(job)

    def test_no_foreground_job(self) -> None:
        """Without a foreground job nothing is sent and nothing fails."""
        dispatcher = SignalDispatcher()
        job = _launch(JobTable(), "sleep 10")
        try:
            dispatcher.handle_sigint(signal.SIGINT, None)
            assert job.status is JobStatus.RUNNING
            assert os.waitpid(job.leader_pid, os.WNOHANG) == (0, 0)
        finally:
            _kill(job)

    def test_background_jobs_are_immune(self) -> None:
        """Only the foreground group receives the forwarded signal."""
        dispatcher = SignalDispatcher()
        table = JobTable()
        background = _launch(table, "sleep 10")
        foreground = _launch(table, "sleep 10")
        dispatcher.foreground = foreground
        try:
            dispatcher.handle_sigint(signal.SIGINT, None)
            os.waitpid(foreground.leader_pid, 0)
            assert os.waitpid(background.leader_pid, os.WNOHANG) == (0, 0)
        finally:
            _kill(background)
            _kill(foreground)


class TestInstall:
    """Verify handler installation and restoration."""

    def test_installed_then_restored(self) -> None:
        """Handlers are active inside the block and previous ones come back."""
        dispatcher = SignalDispatcher()
        before = {s: signal.getsignal(s) for s in SignalDispatcher.HANDLED}
        with dispatcher.installed():
            assert dispatcher.is_installed
            assert signal.getsignal(signal.SIGINT) == dispatcher.handle_sigint
            assert signal.getsignal(signal.SIGTSTP) == dispatcher.handle_sigtstp
            assert signal.getsignal(signal.SIGCHLD) == dispatcher.handle_sigchld
        assert not dispatcher.is_installed
        assert {s: signal.getsignal(s) for s in SignalDispatcher.HANDLED} == before

    @pytest.mark.parametrize("signum", [signal.SIGINT, signal.SIGTSTP])
    def test_shell_survives_its_own_signals(self, signum: signal.Signals) -> None:
        """A real Ctrl-C/Ctrl-Z sent to the shell neither kills nor stops it."""
        dispatcher = SignalDispatcher()
        with dispatcher.installed():
            os.kill(os.getpid(), signum)
            time.sleep(0.01)
        assert dispatcher.foreground is None
