"""Token scanner: the thin layer between a raw line and the pipeline builder.

The shell has no quoting rules: a line is split on whitespace and every
operator (``|``, ``<``, ``>``, ``2>``, ``2>&1``, ``&``) must stand as its
own word.  The only thing the scanner interprets is a trailing ``&``,
which turns the whole line into a background job.
"""

BACKGROUND_TOKEN = "&"


def tokenize(line: str) -> list[str]:
    """Split a command line into whitespace-separated words."""
    return line.split()


def split_background(tokens: list[str]) -> tuple[list[str], bool]:
    """Strip a trailing ``&`` from *tokens*.

    Args:
        tokens: The words of one command line.

    Returns:
        A ``(tokens, background)`` pair.  ``tokens`` is a new list with the
        trailing ``&`` removed; an ``&`` anywhere else is left alone.

    """
    if tokens and tokens[-1] == BACKGROUND_TOKEN:
        return tokens[:-1], True
    return list(tokens), False
