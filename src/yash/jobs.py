"""Job control: the shell's table of in-flight command lines.

In Unix, a "job" is a shell concept layered on top of kernel processes.
When you run ``sleep 60 | cat &``, the shell forks two processes, puts
them in one process group, and tracks them together as job ``[1]``.  Job
control commands (``jobs``, ``fg``, ``bg``, ``Ctrl-Z``) operate on these
shell-level jobs, never on individual pids.

Key ideas:
    - **Jobs are not processes** — a job wraps every process of one
      pipeline, plus the group id that lets one ``killpg`` reach them all.
    - **Job numbers are small** — ``[1]``, ``[2]``, etc., for human
      convenience (unlike PIDs which can be large).
    - **Job status** — RUNNING (the shell is waiting on it), BACKGROUND
      (started with ``&`` or resumed with ``bg``), STOPPED (Ctrl-Z),
      DONE and KILLED (terminal; reported once, then removed).

Design choices:
    - ``JobTable`` is owned by the main loop.  Only the main loop inserts
      or removes; signal handlers never hold a reference to the table.
    - Auto-incrementing job IDs via ``itertools.count`` — an id is never
      handed out twice, so it cannot be reused while still listed.
    - A plain ``dict`` keeps insertion order; display order is simply
      that order reversed (most recent first).
"""

from dataclasses import dataclass, field
from enum import StrEnum
from itertools import count


class JobError(Exception):
    """Raise when a job-table operation is invalid."""


class JobStatus(StrEnum):
    """Status of a shell job."""

    RUNNING = "Running"
    STOPPED = "Stopped"
    BACKGROUND = "Background"
    DONE = "Done"
    KILLED = "Killed"

    @property
    def is_terminal(self) -> bool:
        """Return True for DONE and KILLED."""
        return self in (JobStatus.DONE, JobStatus.KILLED)

    @property
    def label(self) -> str:
        """Return the word ``jobs`` shows for this status."""
        if self in (JobStatus.RUNNING, JobStatus.BACKGROUND):
            return "Running"
        return self.value


@dataclass
class Job:
    """One command line's pipeline, tracked as a unit.

    Attributes:
        job_id: Small human-friendly job number ([1], [2], ...).
        command_text: The line as the user typed it.
        status: Current job status.
        pids: Every stage's pid, in stage order.
        live_pids: Stage pids that have not been reaped yet.
        leader_signaled: True once the leader is known to have died
            from a signal (decides DONE vs KILLED).
        interrupted: True once Ctrl-C was forwarded to the job; it ends
            KILLED when reaped, whatever its exit status.

    """

    job_id: int
    command_text: str
    status: JobStatus = JobStatus.RUNNING
    pids: list[int] = field(default_factory=list)
    live_pids: set[int] = field(default_factory=set)
    leader_signaled: bool = False
    interrupted: bool = False
    _group_pid: int = 0

    @property
    def group_pid(self) -> int:
        """Return the process group id (0 until the first fork)."""
        return self._group_pid

    @group_pid.setter
    def group_pid(self, pgid: int) -> None:
        if self._group_pid and self._group_pid != pgid:
            msg = f"job {self.job_id} already belongs to group {self._group_pid}"
            raise JobError(msg)
        self._group_pid = pgid

    @property
    def leader_pid(self) -> int:
        """Return the first stage's pid (0 until the first fork)."""
        return self.pids[0] if self.pids else 0

    def add_pid(self, pid: int) -> None:
        """Record a freshly forked stage; the first one leads the group."""
        if not self.pids:
            self.group_pid = pid
        self.pids.append(pid)
        self.live_pids.add(pid)


class JobTable:
    """Registry of the shell's live jobs.

    Jobs are indexed by job id; pid lookup walks the live jobs, which is
    O(number of jobs) and allocates nothing.
    """

    def __init__(self) -> None:
        """Create an empty job table."""
        self._jobs: dict[int, Job] = {}
        self._counter = count(start=1)

    def next_job_id(self) -> int:
        """Return a job id that has never been handed out before."""
        return next(self._counter)

    def create(self, job_id: int, command_text: str) -> Job:
        """Insert a new RUNNING job.

        Called before any fork for the line, so a pid lookup made while
        the pipeline is being launched always finds the record.

        Args:
            job_id: The id from ``next_job_id``.
            command_text: The original command line.

        Returns:
            The newly created job.

        Raises:
            JobError: If a job with this id is still in the table.

        """
        if job_id in self._jobs:
            msg = f"job {job_id} already exists"
            raise JobError(msg)
        job = Job(job_id=job_id, command_text=command_text)
        self._jobs[job_id] = job
        return job

    def lookup_by_id(self, job_id: int) -> Job | None:
        """Return a job by its id, or None."""
        return self._jobs.get(job_id)

    def lookup_by_pid(self, pid: int) -> Job | None:
        """Return the job owning *pid* (any stage), or None."""
        for job in self._jobs.values():
            if pid in job.pids:
                return job
        return None

    @staticmethod
    def set_status(job: Job, status: JobStatus) -> None:
        """Change a job's status; DONE and KILLED are never left."""
        if job.status.is_terminal:
            return
        job.status = status

    def remove(self, job: Job) -> None:
        """Remove a job from tracking (no-op if it is already gone)."""
        if self._jobs.get(job.job_id) is job:
            del self._jobs[job.job_id]

    def for_each_terminal(self) -> list[Job]:
        """Return jobs that are DONE or KILLED, most recent first."""
        return [job for job in self.list_jobs() if job.status.is_terminal]

    def list_jobs(self) -> list[Job]:
        """Return all tracked jobs, most recent first."""
        return list(reversed(self._jobs.values()))

    def most_recent(self, *statuses: JobStatus) -> Job | None:
        """Return the newest job whose status is one of *statuses*."""
        return next((job for job in self.list_jobs() if job.status in statuses), None)

    def __len__(self) -> int:
        """Return the number of tracked jobs."""
        return len(self._jobs)

    def __contains__(self, job: object) -> bool:
        """Return True if *job* is the record stored under its id."""
        return isinstance(job, Job) and self._jobs.get(job.job_id) is job
