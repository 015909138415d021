"""Read-Eval-Print Loop — the interactive terminal interface.

The REPL is the outermost layer:

    1. **Report** — print jobs that finished since the last prompt.
    2. **Read** — display a prompt and read a line.
    3. **Eval** — pass the line to ``shell.execute()``.
    4. **Print** — display the result, or the error on stderr.
    5. **Loop** — repeat until end of input or ``exit``.

This module keeps the I/O loop separate from the shell logic.  The shell
returns strings and raises exceptions; the REPL is the thin I/O wrapper
that connects it to ``stdin``/``stdout``/``stderr``.

The helper functions (``build_prompt``, ``format_error``) are pure and
testable.  ``run()`` is the I/O entrypoint and the ``yash`` console
script.
"""

import os
import readline
import sys
from collections.abc import Mapping
from typing import TypeAlias

from yash.completer import Completer
from yash.jobs import JobError
from yash.launcher import LaunchError
from yash.pipeline import PipelineSyntaxError
from yash.shell import BuiltinError, Shell
from yash.signals import SignalDispatcher

DEFAULT_PROMPT = "$ "

ShellError: TypeAlias = PipelineSyntaxError | BuiltinError | LaunchError | JobError


def build_prompt(environ: Mapping[str, str] | None = None) -> str:
    """Return ``$PS1`` if it is set, otherwise ``DEFAULT_PROMPT``."""
    env = os.environ if environ is None else environ
    return env.get("PS1") or DEFAULT_PROMPT


def format_error(error: ShellError) -> str:
    """Format a shell error as the one-line diagnostic shown on stderr."""
    if isinstance(error, PipelineSyntaxError):
        return f"yash: syntax error: {error}"
    return f"yash: {error}"


def run() -> None:
    """Run the interactive shell until end of input.

    This is the main entrypoint.  It handles:
    - Installing the SIGCHLD/SIGINT/SIGTSTP handlers for the session.
    - Tab completion via readline.
    - The read-eval-print loop, with a job report before every prompt.
    - Ctrl+D (EOF) and ``exit`` ending the session with status 0.
    """
    dispatcher = SignalDispatcher()
    shell = Shell(dispatcher=dispatcher)

    # Wire up tab completion via readline.
    completer = Completer(shell)
    readline.set_completer(completer.complete)
    readline.set_completer_delims(" \t")
    readline.parse_and_bind("tab: complete")

    try:
        with dispatcher.installed():
            _loop(shell)
    except MemoryError:
        print("yash: allocation error", file=sys.stderr)  # noqa: T201
        sys.exit(1)


def _loop(shell: Shell) -> None:
    while True:
        notices = shell.check_jobs()
        if notices:
            print(notices)  # noqa: T201

        try:
            line = input(build_prompt())
        except EOFError:
            # Ctrl+D
            print()  # noqa: T201
            return

        try:
            result = shell.execute(line)
        except (PipelineSyntaxError, BuiltinError, LaunchError, JobError) as e:
            print(format_error(e), file=sys.stderr)  # noqa: T201
            continue

        if result == Shell.EXIT_SENTINEL:
            return
        if result:
            print(result)  # noqa: T201
