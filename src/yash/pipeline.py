"""Pipeline builder and descriptor-binding resolution.

A command line like ``cat < in.txt | sort | head -n 3 > out.txt`` is a
**pipeline** of three **stages**.  Each stage becomes one OS process; the
shell joins neighbouring stages with pipes so stage *i*'s stdout feeds
stage *i+1*'s stdin.

Building happens in two steps, at two different times:

1. ``build_pipeline`` runs in the shell before anything is forked.  It only
   splits the words at ``|`` and rejects malformed shapes (a dangling or
   doubled ``|``).  Redirection operators stay inside each stage's argv.
2. ``resolve_redirections`` runs in the forked child, right before exec,
   once the pipe ends are known.  It interprets ``<``, ``>``, ``2>`` and
   ``2>&1`` left to right, opens the files, and returns the final
   descriptor bindings plus the argv the program should actually see.

Design choices:
    - **Resolution returns a value, it doesn't exit.**  Failures come back
      as a ``RedirectionFailure`` so the step can be tested without a
      fork; only the launcher's child turns a failure into ``_exit(1)``.
    - **Descriptor numbers, not dup2, until the very end.**  Bindings are
      tracked as plain integers while resolving, so ``2>&1`` can alias
      "whatever stdout is right now" (a pipe, a file or the terminal).
      ``apply_bindings`` performs the ``dup2`` calls in one place.
    - **argv stops at the first redirection token.**  Words after it are
      operands or ignored, never program arguments.
"""

import os
from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum

PIPE_TOKEN = "|"

# Permission bits for files created by ``>`` and ``2>``.
FILE_MODE = 0o644

_STDIN, _STDOUT, _STDERR = 0, 1, 2


class PipelineSyntaxError(Exception):
    """Raise when a command line is not a well-formed pipeline."""


class Redirect(StrEnum):
    """Redirection operators understood by the launcher."""

    STDIN = "<"
    STDOUT = ">"
    STDERR = "2>"
    STDERR_TO_STDOUT = "2>&1"


_OPERATORS: frozenset[str] = frozenset(Redirect)


@dataclass
class Stage:
    """One program invocation within a pipeline.

    Attributes:
        argv: Words passed to exec, redirection tokens still embedded.
        stdin_fd: Descriptor bound to the program's stdin.
        stdout_fd: Descriptor bound to the program's stdout.
        stderr_fd: Descriptor bound to the program's stderr.
        pid: Set by the parent once the stage is forked (0 before).

    """

    argv: list[str]
    stdin_fd: int = _STDIN
    stdout_fd: int = _STDOUT
    stderr_fd: int = _STDERR
    pid: int = 0

    @property
    def program(self) -> str:
        """Return the executable name (``argv[0]``)."""
        return self.argv[0]


class FailureKind(StrEnum):
    """Why a stage's redirections could not be resolved."""

    SYNTAX = "syntax error"
    NO_SUCH_FILE = "no such file"
    CANNOT_OPEN = "cannot open"


@dataclass(frozen=True)
class RedirectionFailure:
    """A named failure from ``resolve_redirections``."""

    kind: FailureKind
    operand: str | None = None

    def __str__(self) -> str:
        """Format as ``kind: operand`` (or just ``kind``)."""
        if self.operand is None:
            return str(self.kind)
        return f"{self.kind}: {self.operand}"


@dataclass(frozen=True)
class Resolved:
    """Final descriptor bindings and visible argv for one stage."""

    argv: list[str]
    stdin_fd: int
    stdout_fd: int
    stderr_fd: int
    opened: tuple[int, ...] = ()


def build_pipeline(tokens: list[str]) -> list[Stage]:
    """Split a token list at ``|`` into stages.

    Args:
        tokens: Words of one command line, trailing ``&`` already removed.

    Returns:
        The stages in order.  An empty token list gives an empty pipeline.

    Raises:
        PipelineSyntaxError: On a leading, trailing or doubled ``|``.

    """
    stages: list[Stage] = []
    current: list[str] = []
    for token in tokens:
        if token != PIPE_TOKEN:
            current.append(token)
            continue
        if not current:
            msg = "unexpected '|'"
            raise PipelineSyntaxError(msg)
        stages.append(Stage(argv=current))
        current = []

    if current:
        stages.append(Stage(argv=current))
    elif stages:
        msg = "pipeline ends with '|'"
        raise PipelineSyntaxError(msg)
    return stages


def resolve_redirections(stage: Stage) -> Resolved | RedirectionFailure:
    """Interpret a stage's redirection tokens against its current bindings.

    The stage's ``*_fd`` fields are the starting point, so pipe ends set
    by the launcher are overridden by any explicit redirection.  Files are
    opened here; on failure every descriptor opened so far is closed.

    Args:
        stage: The stage to resolve.  It is not modified.

    Returns:
        A ``Resolved`` binding set, or a ``RedirectionFailure``.

    """
    stdin_fd, stdout_fd, stderr_fd = stage.stdin_fd, stage.stdout_fd, stage.stderr_fd
    opened: list[int] = []
    cut: int | None = None
    argv = stage.argv

    i = 0
    while i < len(argv):
        word = argv[i]
        if word not in _OPERATORS:
            i += 1
            continue
        if cut is None:
            cut = i

        if word == Redirect.STDERR_TO_STDOUT:
            stderr_fd = stdout_fd
            i += 1
            continue

        target = argv[i + 1] if i + 1 < len(argv) else None
        if target is None or target in _OPERATORS:
            _close_all(opened)
            return RedirectionFailure(FailureKind.SYNTAX, word)

        try:
            fd = os.open(target, os.O_RDWR) if word == Redirect.STDIN else _create(target)
        except OSError:
            _close_all(opened)
            kind = FailureKind.NO_SUCH_FILE if word == Redirect.STDIN else FailureKind.CANNOT_OPEN
            return RedirectionFailure(kind, target)
        opened.append(fd)

        if word == Redirect.STDIN:
            stdin_fd = fd
        elif word == Redirect.STDOUT:
            if stderr_fd == stdout_fd:
                stderr_fd = fd
            stdout_fd = fd
        else:
            stderr_fd = fd
        i += 2

    visible = argv if cut is None else argv[:cut]
    if not visible:
        _close_all(opened)
        return RedirectionFailure(FailureKind.SYNTAX)
    return Resolved(
        argv=list(visible),
        stdin_fd=stdin_fd,
        stdout_fd=stdout_fd,
        stderr_fd=stderr_fd,
        opened=tuple(opened),
    )


def apply_bindings(resolved: Resolved) -> None:
    """Install resolved bindings onto fds 0, 1 and 2 (child only)."""
    for fd, standard in (
        (resolved.stdin_fd, _STDIN),
        (resolved.stdout_fd, _STDOUT),
        (resolved.stderr_fd, _STDERR),
    ):
        if fd != standard:
            os.dup2(fd, standard)
    _close_all(fd for fd in resolved.opened if fd > _STDERR)


def _create(path: str) -> int:
    """Open *path* for writing, created/truncated with ``FILE_MODE``."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
    # The umask may have masked bits off; force the exact mode.
    os.fchmod(fd, FILE_MODE)
    return fd


def _close_all(fds: Iterable[int]) -> None:
    for fd in fds:
        os.close(fd)
