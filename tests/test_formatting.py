from __future__ import annotations

import pytest

from podlisten.models.episodes import TranscriptWord
from podlisten.services.timing import compute_timing_stats, describe_timings, format_duration
from podlisten.services.transcript_format import (
    format_clock,
    format_speaker_blocks,
    format_transcript_text,
    format_with_timestamps,
)


def _word(word: str, speaker: int, start: float) -> TranscriptWord:
    return TranscriptWord(word=word, speaker=speaker, start_time=start, end_time=start + 0.4)


CONVERSATION = (
    _word("Hello", 0, 0.0),
    _word("and", 0, 0.5),
    _word("welcome.", 0, 1.0),
    _word("Thanks", 1, 31.0),
    _word("for", 1, 31.5),
    _word("having", 1, 32.0),
    _word("me.", 1, 75.0),
    _word("Sure.", 0, 76.0),
)


def test_format_transcript_text_groups_speaker_runs() -> None:
    assert format_transcript_text(CONVERSATION) == (
        "[Speaker 1]\nHello and welcome.\n\n"
        "[Speaker 2]\nThanks for having me.\n\n"
        "[Speaker 1]\nSure."
    )


def test_format_speaker_blocks_includes_time_ranges() -> None:
    blocks = format_speaker_blocks(CONVERSATION).split("\n\n")

    assert blocks[0] == "[Speaker 1] (0:00 - 0:01)\nHello and welcome."
    assert blocks[1] == "[Speaker 2] (0:31 - 1:15)\nThanks for having me."
    assert len(blocks) == 3


def test_format_with_timestamps_starts_new_line_per_interval() -> None:
    assert format_with_timestamps(CONVERSATION, interval_seconds=30) == (
        "[0:00] Hello and welcome.\n"
        "[0:31] Thanks for having\n"
        "[1:15] me. Sure."
    )


def test_formatters_accept_empty_input() -> None:
    assert format_transcript_text(()) == ""
    assert format_speaker_blocks(()) == ""
    assert format_with_timestamps(()) == ""


def test_format_clock_clamps_negative_values() -> None:
    assert format_clock(-3) == "0:00"
    assert format_clock(605.9) == "10:05"


@pytest.mark.parametrize(
    ("seconds", "expected"),
    [
        (0.85, "850ms"),
        (42.2, "42s"),
        (180, "3m"),
        (185, "3m5s"),
    ],
)
def test_format_duration(seconds: float, expected: str) -> None:
    assert format_duration(seconds) == expected


def test_compute_timing_stats_median_and_mean() -> None:
    odd = compute_timing_stats([9.0, 1.0, 5.0])
    even = compute_timing_stats([4.0, 1.0, 3.0, 2.0])

    assert odd is not None and even is not None
    assert odd.durations == (1.0, 5.0, 9.0)
    assert (odd.min, odd.median, odd.max, odd.mean) == (1.0, 5.0, 9.0, 5.0)
    assert even.median == 2.5
    assert even.count == 4
    assert compute_timing_stats([]) is None


def test_describe_timings() -> None:
    assert describe_timings(None) == "no completed tasks"
    assert describe_timings(compute_timing_stats([0.5, 90.0])) == (
        "2 completed: min 500ms, median 45s, mean 45s, max 1m30s"
    )
