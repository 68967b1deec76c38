import pytest

from recall_core.domain.exceptions import ConsistencyWarning
from recall_core.sync.sanitizer import (
    CONTEXT_BEGIN,
    CONTEXT_END,
    contains_marker,
    inject_context,
    sanitize,
    warn_if_marker_leaked,
)


@pytest.mark.parametrize(
    "text",
    ["hello", "", "multi\nline\n\ntext", "ends with newline\n", "  spaced  ", "------ dashes ------"],
)
def test_sanitize_inverts_inject(text):
    injected = inject_context(text, "- [memory] score=0.900 source=m://1\nlikes tea")
    assert CONTEXT_BEGIN in injected and injected.endswith(CONTEXT_END)
    assert sanitize(injected) == text


def test_inject_empty_block_is_noop():
    assert inject_context("hi", "") == "hi"


def test_sanitize_unterminated_block():
    text = f"hi\n\n------\n\n{CONTEXT_BEGIN}\npartial context"
    assert sanitize(text) == "hi"


def test_sanitize_multiple_blocks():
    once = inject_context("question", "a")
    twice = inject_context(once, "b")
    assert sanitize(twice) == "question"
    assert not contains_marker(sanitize(twice))


def test_warn_if_marker_leaked():
    with pytest.warns(ConsistencyWarning):
        assert warn_if_marker_leaked("bot", f"echo {CONTEXT_BEGIN}") is True
    assert warn_if_marker_leaked("bot", "clean reply") is False
