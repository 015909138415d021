"""Process launcher: turning stages into wired-up OS processes.

For a pipeline of N stages the launcher:

1. Opens N−1 pipes up front.  Stage *i* writes into pipe *i*; stage
   *i+1* reads from it.
2. Forks once per stage, in order.

   - **Parent**: records the pid on the stage and the job.  The first pid
     becomes the process group id, and every stage is moved into that
     group with ``setpgid`` so one ``killpg`` reaches the whole pipeline.
   - **Child**: joins the group itself, restores default signal
     dispositions, closes every pipe descriptor that isn't its own, binds
     its pipe ends to stdin/stdout, resolves redirections, and execs.

3. Closes every pipe descriptor in the parent.  A write end left open
   anywhere would keep the next stage waiting for an EOF that never
   comes.

Design choices:
    - **Both sides call setpgid.**  Whichever runs first wins; the other
      call is a harmless repeat.  That narrows the window in which a
      stage could miss a signal forwarded to its group.
    - **SIGCHLD is blocked while forking.**  Otherwise the handler could
      reap an early stage (say, the group leader of ``true | sleep 1``)
      before a later stage joins its group, and the group would vanish.
    - **SIGINT and SIGTSTP are blocked too.**  A child inherits the
      shell's Python handlers, which only set a flag that ``exec`` then
      discards.  The child resets all three to ``SIG_DFL`` before
      unblocking, so a Ctrl-C forwarded mid-launch is delivered with its
      default action instead of being lost.
    - **The child never returns.**  Every path out of the child ends in
      ``os._exit``, so parent code (or a test runner) never runs twice.
"""

from __future__ import annotations

import contextlib
import os
import signal
import sys
from itertools import chain
from typing import TYPE_CHECKING, NoReturn, TypeAlias

from yash.logging import Logger, LogLevel
from yash.pipeline import RedirectionFailure, apply_bindings, resolve_redirections

if TYPE_CHECKING:
    from yash.jobs import Job
    from yash.pipeline import Stage

Pipe: TypeAlias = tuple[int, int]

# Exit status of a child that could not exec its program.
CHILD_FAILURE = 1

# Blocked in the shell while forking, reset to SIG_DFL in every child.
_CHILD_DEFAULTS = (signal.SIGINT, signal.SIGTSTP, signal.SIGCHLD)


class LaunchError(Exception):
    """Raise when a pipeline cannot be started (pipe or fork failed)."""


def open_pipes(n_stages: int) -> list[Pipe]:
    """Create the N−1 pipes that join *n_stages* stages.

    Raises:
        LaunchError: If ``pipe()`` fails; pipes already opened are closed.

    """
    pipes: list[Pipe] = []
    try:
        for _ in range(n_stages - 1):
            pipes.append(os.pipe())
    except OSError as e:
        close_pipes(pipes)
        msg = f"pipe: {e.strerror}"
        raise LaunchError(msg) from e
    return pipes


def close_pipes(pipes: list[Pipe]) -> None:
    """Close both ends of every pipe."""
    for fd in chain.from_iterable(pipes):
        os.close(fd)


class ProcessLauncher:
    """Fork, wire and exec the stages of one job."""

    def __init__(self, *, logger: Logger | None = None) -> None:
        """Create a launcher that records its activity in *logger*."""
        self._logger = logger if logger is not None else Logger()

    def launch(self, job: Job, stages: list[Stage]) -> None:
        """Start every stage of *job* in a single process group.

        The job must already be in the job table.  On return each stage's
        ``pid`` is set and ``job.pids`` lists them in stage order.

        Args:
            job: The job the processes belong to.
            stages: The pipeline, in order.

        Raises:
            LaunchError: If a pipe or fork fails.  Any stage that was
                already started is killed and reaped first.

        """
        pipes = open_pipes(len(stages))
        saved_mask = signal.pthread_sigmask(signal.SIG_BLOCK, set(_CHILD_DEFAULTS))
        try:
            for index, stage in enumerate(stages):
                self._fork_stage(job, stages, index, pipes, saved_mask)
        except OSError as e:
            self._abort(job)
            msg = f"fork: {e.strerror}"
            self._logger.log(LogLevel.ERROR, f"job [{job.job_id}] {msg}", source="launcher")
            raise LaunchError(msg) from e
        finally:
            close_pipes(pipes)
            signal.pthread_sigmask(signal.SIG_SETMASK, saved_mask)

        self._logger.log(
            LogLevel.INFO,
            f"job [{job.job_id}] pgid={job.group_pid} pids={job.pids} pipes={len(pipes)}",
            source="launcher",
        )

    def _fork_stage(
        self,
        job: Job,
        stages: list[Stage],
        index: int,
        pipes: list[Pipe],
        saved_mask: set[signal.Signals],
    ) -> None:
        # Anything still buffered would be written twice, once per process.
        sys.stdout.flush()
        sys.stderr.flush()

        group = job.group_pid
        pid = os.fork()
        if pid == 0:
            _run_child(stages, index, pipes, group, saved_mask)

        stages[index].pid = pid
        job.add_pid(pid)
        with contextlib.suppress(PermissionError, ProcessLookupError):
            os.setpgid(pid, job.group_pid)

    def _abort(self, job: Job) -> None:
        """Kill and reap the stages of a half-launched job."""
        if not job.pids:
            return
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(job.group_pid, signal.SIGKILL)
        for pid in job.pids:
            with contextlib.suppress(ChildProcessError):
                os.waitpid(pid, 0)
        job.live_pids.clear()


def _run_child(
    stages: list[Stage],
    index: int,
    pipes: list[Pipe],
    group: int,
    saved_mask: set[signal.Signals],
) -> NoReturn:
    """Wire up stage *index* and exec it.  Runs only in the forked child."""
    try:
        for signum in _CHILD_DEFAULTS:
            signal.signal(signum, signal.SIG_DFL)
        signal.pthread_sigmask(signal.SIG_SETMASK, saved_mask)
        os.setpgid(0, group)
        _exec_stage(stages[index], index, pipes, last=len(stages) - 1)
    except OSError as e:
        _write_stderr(f"yash: {e.strerror}")
    finally:
        os._exit(CHILD_FAILURE)


def _exec_stage(stage: Stage, index: int, pipes: list[Pipe], *, last: int) -> None:
    own: set[int] = set()
    if index > 0:
        stage.stdin_fd = pipes[index - 1][0]
        own.add(stage.stdin_fd)
    if index < last:
        stage.stdout_fd = pipes[index][1]
        own.add(stage.stdout_fd)
    for fd in chain.from_iterable(pipes):
        if fd not in own:
            os.close(fd)

    resolved = resolve_redirections(stage)
    if isinstance(resolved, RedirectionFailure):
        _write_stderr(f"yash: {resolved}")
        return
    apply_bindings(resolved)
    for fd in own:
        os.close(fd)

    try:
        os.execvp(resolved.argv[0], resolved.argv)
    except OSError:
        _write_stderr(f"yash: {resolved.argv[0]}: command not found")


def _write_stderr(message: str) -> None:
    os.write(2, f"{message}\n".encode())
