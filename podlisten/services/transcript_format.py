from __future__ import annotations

from collections.abc import Sequence
from itertools import groupby

from podlisten.models.episodes import TranscriptWord


def format_transcript_text(words: Sequence[TranscriptWord]) -> str:
    """Speaker paragraphs separated by blank lines.

        [Speaker 1]
        Hello and welcome to the show.

        [Speaker 2]
        Thanks for having me.
    """
    paragraphs = [
        f"[Speaker {speaker + 1}]\n{' '.join(word.word for word in run)}"
        for speaker, run in groupby(words, key=lambda word: word.speaker)
    ]
    return "\n\n".join(paragraphs)


def format_speaker_blocks(words: Sequence[TranscriptWord]) -> str:
    """Speaker paragraphs headed by the time range each speaker held the floor."""
    blocks: list[str] = []
    for speaker, grouped in groupby(words, key=lambda word: word.speaker):
        run = list(grouped)
        time_range = f"{format_clock(run[0].start_time)} - {format_clock(run[-1].end_time)}"
        text = " ".join(word.word for word in run)
        blocks.append(f"[Speaker {speaker + 1}] ({time_range})\n{text}")
    return "\n\n".join(blocks)


def format_with_timestamps(
    words: Sequence[TranscriptWord],
    interval_seconds: float = 30.0,
) -> str:
    """Inline `[M:SS]` markers roughly every `interval_seconds`, one line per marker."""
    lines: list[list[str]] = []
    next_marker = 0.0
    for word in words:
        if not lines or word.start_time >= next_marker:
            lines.append([f"[{format_clock(word.start_time)}]"])
            next_marker = word.start_time + interval_seconds
        lines[-1].append(word.word)
    return "\n".join(" ".join(line) for line in lines)


def format_clock(seconds: float) -> str:
    whole = max(0, int(seconds))
    minutes, remainder = divmod(whole, 60)
    return f"{minutes}:{remainder:02d}"
