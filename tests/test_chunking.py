"""Tests for prompt windowing."""

import pytest

from app.core.chunking import split_prompt


def test_split_prompt_basic():
    """Test basic windowing with known input."""
    text = "A" * 100
    windows = split_prompt(text, max_chars=30, overlap=10)

    # With 100 chars, max_chars=30, overlap=10:
    # 0-30, 20-50, 40-70, 60-90, 80-100
    assert len(windows) == 5
    assert windows[0].index == 0
    assert windows[0].start_char == 0
    assert windows[0].end_char == 30
    assert len(windows[0].content) == 30
    assert windows[-1].end_char == 100


def test_split_prompt_with_overlap():
    """Test that windows have proper overlap."""
    text = "0123456789" * 10  # 100 chars
    windows = split_prompt(text, max_chars=30, overlap=10)

    assert windows[0].end_char - windows[1].start_char == 10
    assert windows[1].end_char - windows[2].start_char == 10


def test_split_prompt_empty():
    """Test windowing empty text."""
    assert split_prompt("") == []


def test_split_prompt_shorter_than_max():
    """Test text shorter than max_chars."""
    text = "Short text"
    windows = split_prompt(text, max_chars=100, overlap=10)

    assert len(windows) == 1
    assert windows[0].content == text
    assert windows[0].start_char == 0
    assert windows[0].end_char == len(text)
    assert windows[0].total == 1


def test_split_prompt_exact_boundary():
    """Test text that exactly matches max_chars."""
    text = "A" * 50
    windows = split_prompt(text, max_chars=50, overlap=10)

    assert len(windows) == 1
    assert windows[0].content == text


def test_split_prompt_invalid_params():
    """Test that invalid parameters raise ValueError."""
    with pytest.raises(ValueError, match="must be greater than overlap"):
        split_prompt("test", max_chars=10, overlap=20)

    with pytest.raises(ValueError, match="must be greater than overlap"):
        split_prompt("test", max_chars=10, overlap=10)


def test_split_prompt_indices_and_total():
    """Test that indices are sequential and every window knows the total."""
    text = "A" * 200
    windows = split_prompt(text, max_chars=50, overlap=10)

    for i, window in enumerate(windows):
        assert window.index == i
        assert window.total == len(windows)


def test_split_prompt_prefers_word_breaks():
    """Cuts land just after a space when one is close to the limit."""
    text = ("word " * 40).strip()
    windows = split_prompt(text, max_chars=52, overlap=10)

    for window in windows[:-1]:
        assert window.content.endswith(" ")


def test_split_prompt_covers_whole_text():
    text = "line of prompt text\n" * 300
    windows = split_prompt(text, max_chars=1000, overlap=100)

    assert windows[0].start_char == 0
    assert windows[-1].end_char == len(text)
    for prev, nxt in zip(windows, windows[1:]):
        assert nxt.start_char < prev.end_char
