"""The shell: command dispatch, the wait protocol, and job control.

``Shell.execute`` takes one command line through the whole core:

1. Scan it into words and a background flag.
2. Build the pipeline (``|`` splitting, syntax checks).
3. A built-in runs in the shell process itself, before any fork.
4. Otherwise a job is inserted into the table, *then* the launcher forks
   its stages, so a SIGCHLD that races the fork loop can always map
   pid → job.
5. A foreground job is waited on until every stage is reaped or the job
   stops; a background job returns straight to the prompt.

``check_jobs`` is the other half: called once per prompt, it drains the
events the SIGCHLD handler queued, applies them to the table, reports
jobs that finished, and removes them.  Structural changes to the table
happen only here and in the wait protocol, never in a signal handler.

Design choices:
    - **Returns strings, not prints.**  Built-in output and job notices
      come back to the caller (the REPL decides how to display them).
      The one exception is ``fg``, which must echo the command line
      *before* it blocks.
    - **Command dispatch via a dict.**  Adding a built-in means writing a
      method and adding one dict entry.
    - **Errors are exceptions.**  Malformed lines and misused built-ins
      raise; the REPL reports them on stderr and keeps going.
    - **A job ends when all its stages are reaped.**  The leader's fate
      decides DONE vs KILLED, but a pipeline isn't finished while any
      member is still running.
"""

import os
import signal
import sys
from collections.abc import Callable
from typing import TextIO, TypeAlias

from yash.jobs import Job, JobStatus, JobTable
from yash.launcher import LaunchError, ProcessLauncher
from yash.logging import Logger, LogLevel
from yash.pipeline import Stage, build_pipeline
from yash.signals import ChildEvent, EventKind, SignalDispatcher
from yash.tokens import BACKGROUND_TOKEN, split_background, tokenize

# Type alias for a built-in handler: takes a list of args, returns output.
_Handler: TypeAlias = Callable[[list[str]], str]


class BuiltinError(Exception):
    """Raise when a built-in command is misused."""


class Shell:
    """Command interpreter with pipelines, redirection and job control."""

    EXIT_SENTINEL = "__EXIT__"

    def __init__(
        self,
        *,
        dispatcher: SignalDispatcher | None = None,
        launcher: ProcessLauncher | None = None,
        logger: Logger | None = None,
        out: TextIO | None = None,
    ) -> None:
        """Create a shell.

        Args:
            dispatcher: Signal dispatcher whose event queue and foreground
                slot the shell uses.  Installing its handlers is the
                caller's job (the REPL does it).
            launcher: Process launcher; defaults to one sharing *logger*.
            logger: Event log; a fresh one by default.
            out: Stream for output that cannot wait for a return value
                (``fg`` echoing its command).  Defaults to ``sys.stdout``.

        """
        self._logger = logger if logger is not None else Logger()
        self._dispatcher = dispatcher if dispatcher is not None else SignalDispatcher()
        self._launcher = launcher if launcher is not None else ProcessLauncher(logger=self._logger)
        self._out = out
        self._jobs = JobTable()
        self._history: list[str] = []

        # Built-in dispatch table: command name to handler method.
        self._commands: dict[str, _Handler] = {
            "cd": self._cmd_cd,
            "jobs": self._cmd_jobs,
            "fg": self._cmd_fg,
            "bg": self._cmd_bg,
            "exit": self._cmd_exit,
            "help": self._cmd_help,
            "history": self._cmd_history,
            "log": self._cmd_log,
        }

    @property
    def jobs(self) -> JobTable:
        """Return the job table."""
        return self._jobs

    @property
    def logger(self) -> Logger:
        """Return the shell's event log."""
        return self._logger

    @property
    def dispatcher(self) -> SignalDispatcher:
        """Return the signal dispatcher."""
        return self._dispatcher

    @property
    def command_names(self) -> list[str]:
        """Return the sorted names of all built-in commands."""
        return sorted(self._commands)

    def execute(self, line: str) -> str:
        """Parse and run one command line.

        Args:
            line: The raw line (e.g. ``"ls -l | sort > out.txt &"``).

        Returns:
            Output for the caller to show: built-in output, a
            ``[job] pgid`` notice for background jobs, a Stopped notice,
            or ``""``.

        Raises:
            PipelineSyntaxError: If the line is not a valid pipeline.
            BuiltinError: If a built-in is misused.
            LaunchError: If the pipeline could not be started.

        """
        stripped = line.strip()
        if stripped:
            self._history.append(stripped)

        tokens, background = split_background(tokenize(stripped))
        stages = build_pipeline(tokens)
        if not stages:
            return ""

        handler = self._commands.get(stages[0].program)
        if handler is not None:
            if len(stages) > 1:
                msg = f"{stages[0].program}: cannot be used in a pipeline"
                raise BuiltinError(msg)
            return handler(stages[0].argv[1:])

        return self._run_pipeline(stripped, stages, background=background)

    def check_jobs(self) -> str:
        """Reconcile queued child events and sweep finished jobs.

        Returns:
            One ``[id] ± Done<TAB>command`` (or ``Killed``) line per job
            that finished since the last call; those jobs are removed.

        """
        self._reconcile()
        listed = self._jobs.list_jobs()
        newest = listed[0] if listed else None
        lines: list[str] = []
        for job in self._jobs.for_each_terminal():
            marker = "+" if job is newest else "-"
            lines.append(f"[{job.job_id}] {marker} {job.status}\t{job.command_text}")
            self._jobs.remove(job)
            self._logger.log(LogLevel.INFO, f"job [{job.job_id}] removed", source="shell")
        return "\n".join(lines)

    # -- launching and waiting -----------------------------------------------

    def _run_pipeline(self, command_text: str, stages: list[Stage], *, background: bool) -> str:
        job = self._jobs.create(self._jobs.next_job_id(), command_text)
        self._logger.log(LogLevel.INFO, f"job [{job.job_id}] created: {command_text}", source="shell")
        if not background:
            # Ctrl-C typed while the stages are being forked still reaches them.
            self._dispatcher.foreground = job
        try:
            self._launcher.launch(job, stages)
        except LaunchError:
            self._dispatcher.foreground = None
            self._jobs.remove(job)
            raise

        if background:
            self._jobs.set_status(job, JobStatus.BACKGROUND)
            return f"[{job.job_id}] {job.group_pid}"
        return self._wait_foreground(job)

    def _wait_foreground(self, job: Job) -> str:
        """Block until *job* stops or every one of its stages is reaped."""
        self._dispatcher.foreground = job
        # The handler must not collect this job's reports behind our back:
        # a stop it swallowed would leave waitpid blocked forever.
        saved_mask = signal.pthread_sigmask(signal.SIG_BLOCK, {signal.SIGCHLD})
        try:
            while job.live_pids:
                if self._stopped(job, self._reconcile()):
                    return self._stopped_notice(job)
                if not job.live_pids:
                    break
                try:
                    pid, status = os.waitpid(-job.group_pid, os.WUNTRACED)
                except ChildProcessError:
                    job.live_pids.clear()
                    break
                event = ChildEvent.from_wait_status(pid, status)
                self._apply(event)
                if self._stopped(job, [event]):
                    return self._stopped_notice(job)
        finally:
            self._dispatcher.foreground = None
            signal.pthread_sigmask(signal.SIG_SETMASK, saved_mask)

        self._reconcile()
        self._finish(job)
        self._jobs.remove(job)
        self._logger.log(LogLevel.INFO, f"job [{job.job_id}] removed", source="shell")
        return ""

    @staticmethod
    def _stopped(job: Job, events: list[ChildEvent]) -> bool:
        return any(e.kind is EventKind.STOPPED and e.pid in job.pids for e in events)

    @staticmethod
    def _stopped_notice(job: Job) -> str:
        return f"[{job.job_id}] + {JobStatus.STOPPED}\t{job.command_text}"

    def _reconcile(self) -> list[ChildEvent]:
        """Log queued forwards and apply every queued child event.

        Returns:
            The child events that were applied, oldest first.

        """
        for fwd in self._dispatcher.drain_forwards():
            self._logger.log(
                LogLevel.INFO,
                f"forwarded {fwd.signum.name} to job [{fwd.job_id}] pgid={fwd.group_pid}",
                source="signals",
            )
        events = self._dispatcher.drain()
        for event in events:
            self._apply(event)
        return events

    def _apply(self, event: ChildEvent) -> None:
        job = self._jobs.lookup_by_pid(event.pid)
        if job is None:
            self._logger.log(LogLevel.DEBUG, f"reaped unknown pid {event.pid}", source="shell")
            return

        if event.kind is EventKind.STOPPED:
            self._jobs.set_status(job, JobStatus.STOPPED)
            self._logger.log(
                LogLevel.INFO, f"job [{job.job_id}] stopped by signal {event.code}", source="shell"
            )
            return

        job.live_pids.discard(event.pid)
        if event.pid == job.leader_pid and event.kind is EventKind.SIGNALED:
            job.leader_signaled = True
        if not job.live_pids:
            self._finish(job)

    def _finish(self, job: Job) -> None:
        if job.status.is_terminal:
            return
        status = JobStatus.KILLED if job.leader_signaled or job.interrupted else JobStatus.DONE
        self._jobs.set_status(job, status)
        self._logger.log(LogLevel.INFO, f"job [{job.job_id}] {status.lower()}", source="shell")

    def _select_job(self, args: list[str], name: str, *statuses: JobStatus) -> Job:
        """Pick the job for ``fg``/``bg``: ``%N``/``N`` if given, else the newest."""
        if not args:
            job = self._jobs.most_recent(*statuses)
            if job is None:
                msg = f"{name}: no current job"
                raise BuiltinError(msg)
            return job
        try:
            job_id = int(args[0].removeprefix("%"))
        except ValueError:
            msg = f"{name}: invalid job id '{args[0]}'"
            raise BuiltinError(msg) from None
        job = self._jobs.lookup_by_id(job_id)
        if job is None or job.status not in statuses:
            msg = f"{name}: {job_id}: no such job"
            raise BuiltinError(msg)
        return job

    def _continue(self, job: Job) -> None:
        """Send SIGCONT to the whole job; an earlier Ctrl-C no longer counts."""
        job.interrupted = False
        try:
            os.killpg(job.group_pid, signal.SIGCONT)
        except ProcessLookupError:
            self._logger.log(
                LogLevel.WARNING, f"job [{job.job_id}] has no processes left", source="shell"
            )

    # -- built-in commands ---------------------------------------------------

    def _cmd_cd(self, args: list[str]) -> str:
        """Change the shell's working directory."""
        if not args:
            msg = 'cd: expected argument to "cd"'
            raise BuiltinError(msg)
        try:
            os.chdir(args[0])
        except OSError as e:
            msg = f"cd: {args[0]}: {e.strerror}"
            raise BuiltinError(msg) from e
        return ""

    def _cmd_jobs(self, _args: list[str]) -> str:
        """List jobs, newest first, marking the newest with ``+``."""
        self._reconcile()
        lines = [
            f"[{job.job_id}] {'+' if i == 0 else '-'} {job.status.label}\t{job.command_text}"
            for i, job in enumerate(self._jobs.list_jobs())
        ]
        return "\n".join(lines)

    def _cmd_fg(self, args: list[str]) -> str:
        """Resume a stopped or background job and wait for it."""
        self._reconcile()
        job = self._select_job(args, "fg", JobStatus.STOPPED, JobStatus.BACKGROUND)
        print(job.command_text, file=self._out or sys.stdout, flush=True)  # noqa: T201
        self._jobs.set_status(job, JobStatus.RUNNING)
        self._continue(job)
        return self._wait_foreground(job)

    def _cmd_bg(self, args: list[str]) -> str:
        """Resume a stopped job without waiting for it."""
        self._reconcile()
        job = self._select_job(args, "bg", JobStatus.STOPPED)
        self._jobs.set_status(job, JobStatus.BACKGROUND)
        self._continue(job)
        line = job.command_text
        if not line.endswith(BACKGROUND_TOKEN):
            line = f"{line} {BACKGROUND_TOKEN}"
        return f"[{job.job_id}] {line}"

    def _cmd_exit(self, _args: list[str]) -> str:
        """Signal the REPL to stop."""
        return self.EXIT_SENTINEL

    def _cmd_help(self, _args: list[str]) -> str:
        """List built-in commands."""
        return "Built-in commands: " + ", ".join(self.command_names)

    def _cmd_history(self, _args: list[str]) -> str:
        """Show command history."""
        if not self._history:
            return "No history."
        lines = [f"  {i + 1}  {cmd}" for i, cmd in enumerate(self._history)]
        return "\n".join(lines)

    def _cmd_log(self, args: list[str]) -> str:
        """Show the event log: ``log [LEVEL [SOURCE]]`` or ``log clear``.

        LEVEL (``debug``, ``info``, ``warning``, ``error``) hides entries
        below it; SOURCE keeps only one component's entries.
        """
        if args == ["clear"]:
            self._logger.clear()
            return "Log cleared."
        if len(args) > 2:
            msg = "log: usage: log [LEVEL [SOURCE]] | log clear"
            raise BuiltinError(msg)

        min_level: LogLevel | None = None
        if args:
            try:
                min_level = LogLevel[args[0].upper()]
            except KeyError:
                msg = f"log: unknown level '{args[0]}'"
                raise BuiltinError(msg) from None
        source = args[1] if len(args) > 1 else None

        entries = self._logger.filter(min_level=min_level, source=source)
        return "\n".join(str(e) for e in entries) if entries else "No log entries."
