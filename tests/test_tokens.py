"""Tests for the token scanner (whitespace split and trailing ``&``)."""

from yash.tokens import split_background, tokenize


class TestTokenize:
    """Verify whitespace splitting."""

    def test_splits_on_whitespace(self) -> None:
        """Runs of spaces and tabs separate words."""
        assert tokenize("  ls   -l\t/tmp ") == ["ls", "-l", "/tmp"]

    def test_empty_line(self) -> None:
        """A blank line has no tokens."""
        assert tokenize("   ") == []

    def test_operators_must_stand_alone(self) -> None:
        """There are no quoting rules; ``a|b`` is one word."""
        assert tokenize("a|b | c") == ["a|b", "|", "c"]


class TestSplitBackground:
    """Verify detection of a trailing ``&``."""

    def test_trailing_ampersand(self) -> None:
        """A final ``&`` is stripped and sets the flag."""
        assert split_background(["sleep", "5", "&"]) == (["sleep", "5"], True)

    def test_no_ampersand(self) -> None:
        """Without ``&`` the tokens are unchanged."""
        assert split_background(["sleep", "5"]) == (["sleep", "5"], False)

    def test_ampersand_elsewhere_is_a_word(self) -> None:
        """Only the last token counts."""
        assert split_background(["echo", "&", "x"]) == (["echo", "&", "x"], False)

    def test_does_not_mutate_input(self) -> None:
        """The caller's list is left alone."""
        tokens = ["true", "&"]
        split_background(tokens)
        assert tokens == ["true", "&"]

    def test_bare_ampersand(self) -> None:
        """Just ``&`` yields no tokens."""
        assert split_background(["&"]) == ([], True)
