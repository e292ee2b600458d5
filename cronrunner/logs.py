"""Byte-offset reads of per-run log files."""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Tuple


def log_size(path: Path) -> int:
    try:
        return Path(path).stat().st_size
    except OSError:
        return 0


def read_log(path: Path) -> str:
    try:
        return Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""


def complete_utf8_length(data: bytes) -> int:
    """Length of `data` without a trailing UTF-8 sequence that is still being written."""
    for back in range(1, min(4, len(data)) + 1):
        byte = data[-back]
        if byte & 0xC0 == 0x80:
            continue
        if byte >= 0xF0:
            width = 4
        elif byte >= 0xE0:
            width = 3
        elif byte >= 0xC0:
            width = 2
        else:
            width = 1
        return len(data) - back if width > back else len(data)
    return len(data)


def read_log_from(path: Path, offset: int, final: bool = False) -> Optional[Tuple[str, int]]:
    """
    Return (content appended since `offset`, new offset), or None if nothing new.

    A multi-byte character cut off at the end of the file is left for the next
    read unless `final` is set.
    """
    size = log_size(path)
    if size <= offset:
        return None
    try:
        with Path(path).open("rb") as handle:
            handle.seek(offset)
            data = handle.read(size - offset)
    except OSError:
        return None
    if not final:
        data = data[: complete_utf8_length(data)]
    if not data:
        return None
    return data.decode("utf-8", errors="replace"), offset + len(data)
