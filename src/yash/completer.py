"""Context-aware tab completer for the shell.

The completer separates **what to complete** (pure logic, fully
testable) from **how to wire it** (readline integration in the REPL).

The ``complete(text, state)`` method is the readline callback.  It
delegates to ``completions(text, line)`` which looks at the current
pipeline stage (the words after the last ``|``) and returns a list of
candidate strings:

    - first word of a stage → built-ins and executables on ``$PATH``
    - after ``fg``/``bg`` → ``%N`` job ids
    - anywhere else → file and directory names
"""

from __future__ import annotations

import os
import readline
from typing import TYPE_CHECKING

from yash.pipeline import PIPE_TOKEN

if TYPE_CHECKING:
    from yash.shell import Shell

# Built-ins whose argument is a job id.
_JOB_COMMANDS: frozenset[str] = frozenset(["fg", "bg"])


class Completer:
    """Context-aware tab completer for the shell."""

    def __init__(self, shell: Shell, *, path: str | None = None) -> None:
        """Create a completer attached to a shell instance.

        Args:
            shell: The shell whose built-ins and jobs are completed.
            path: Search path for executables; ``$PATH`` when omitted.

        """
        self._shell = shell
        self._path = path

    def complete(self, text: str, state: int) -> str | None:
        """Readline callback: return the *state*-th candidate for *text*.

        Args:
            text: The partial word being completed.
            state: Index into the candidate list (0, 1, 2, …).

        Returns:
            The candidate at *state*, or ``None`` when exhausted.

        """
        line = readline.get_line_buffer()
        candidates = self.completions(text, line)
        if state < len(candidates):
            return candidates[state]
        return None

    def completions(self, text: str, line: str) -> list[str]:
        """Return completion candidates based on context.

        Args:
            text: The partial word under the cursor.
            line: The full input line so far.

        Returns:
            Sorted list of matching candidates.

        """
        words = line.split()
        if PIPE_TOKEN in words:
            last_pipe = len(words) - 1 - words[::-1].index(PIPE_TOKEN)
            words = words[last_pipe + 1 :]

        # No words yet, or still typing the first word → command completion
        if not words or (len(words) == 1 and not line.endswith(" ")):
            return self._complete_commands(text)

        if words[0] in _JOB_COMMANDS:
            return self._complete_jobs(text)
        return self._complete_paths(text)

    # -- private completers ------------------------------------------------

    def _complete_commands(self, text: str) -> list[str]:
        """Complete built-in names and executables found on the search path."""
        names = {cmd for cmd in self._shell.command_names if cmd.startswith(text)}
        names.update(self._executables(text))
        return sorted(names)

    def _executables(self, prefix: str) -> set[str]:
        search = self._path if self._path is not None else os.environ.get("PATH", "")
        found: set[str] = set()
        for directory in filter(None, search.split(os.pathsep)):
            try:
                entries = os.listdir(directory)
            except OSError:
                continue
            found.update(
                name
                for name in entries
                if name.startswith(prefix) and os.access(os.path.join(directory, name), os.X_OK)
            )
        return found

    def _complete_jobs(self, text: str) -> list[str]:
        """Complete ``%N`` job ids from the job table."""
        ids = (f"%{job.job_id}" for job in self._shell.jobs.list_jobs())
        return sorted(i for i in ids if i.startswith(text))

    @staticmethod
    def _complete_paths(text: str) -> list[str]:
        """Complete file names relative to the current directory.

        Split the partial path into a directory and a name prefix, list
        the directory, and filter by prefix.  Directories get a trailing
        ``/`` suffix.
        """
        directory, prefix = os.path.split(text)
        try:
            entries = os.listdir(directory or ".")
        except OSError:
            return []

        candidates: list[str] = []
        for entry in entries:
            if not entry.startswith(prefix):
                continue
            full = os.path.join(directory, entry)
            if os.path.isdir(full):
                full += "/"
            candidates.append(full)
        return sorted(candidates)
