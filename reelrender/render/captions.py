"""SRT caption parsing, formatting and per-scene slicing."""

import re
from dataclasses import dataclass

_TIMING_RE = re.compile(
    r"(\d{2}):(\d{2}):(\d{2}),(\d{3})\s*-->\s*(\d{2}):(\d{2}):(\d{2}),(\d{3})"
)
_BLOCK_SPLIT_RE = re.compile(r"\r?\n\r?\n")
_LINE_SPLIT_RE = re.compile(r"\r?\n")


@dataclass
class CaptionEntry:
    start: float
    end: float
    text: str


def _to_seconds(h: str, m: str, s: str, ms: str) -> float:
    return int(h) * 3600 + int(m) * 60 + int(s) + int(ms) / 1000


def parse_srt(text: str) -> list[CaptionEntry]:
    """Parse SRT text into entries. Malformed blocks are skipped."""
    entries: list[CaptionEntry] = []
    for block in _BLOCK_SPLIT_RE.split(text or ""):
        lines = _LINE_SPLIT_RE.split(block.strip())
        if len(lines) < 2:
            continue
        match = _TIMING_RE.search(lines[1])
        if not match:
            continue
        g = match.groups()
        entries.append(
            CaptionEntry(
                start=_to_seconds(*g[:4]),
                end=_to_seconds(*g[4:]),
                text="\n".join(lines[2:]),
            )
        )
    return entries


def format_timestamp(t: float) -> str:
    """Format seconds as an SRT timestamp (HH:MM:SS,mmm)."""
    total_ms = int(round(max(0.0, t) * 1000))
    h, rem = divmod(total_ms, 3_600_000)
    m, rem = divmod(rem, 60_000)
    s, ms = divmod(rem, 1000)
    return f"{h:02d}:{m:02d}:{s:02d},{ms:03d}"


def format_srt(entries: list[CaptionEntry]) -> str:
    blocks = [
        f"{i}\n{format_timestamp(e.start)} --> {format_timestamp(e.end)}\n{e.text}"
        for i, e in enumerate(entries, start=1)
    ]
    return "\n\n".join(blocks) + "\n"


def slice_for_scene(entries: list[CaptionEntry], offset: float, duration: float) -> list[CaptionEntry]:
    """Captions overlapping [offset, offset + duration), rebased to start at zero.

    Rebased times are clipped to the scene: start >= 0 and
    0.01 <= end <= duration.
    """
    end = offset + duration
    return [
        CaptionEntry(
            start=max(0.0, e.start - offset),
            end=max(0.01, min(duration, e.end - offset)),
            text=e.text,
        )
        for e in entries
        if e.end > offset and e.start < end
    ]
