from __future__ import annotations

from pathlib import Path

from cronrunner.logs import complete_utf8_length, read_log_from


def test_complete_utf8_length_holds_back_partial_sequences() -> None:
    assert complete_utf8_length(b"") == 0
    assert complete_utf8_length(b"abc") == 3
    assert complete_utf8_length("é".encode("utf-8")) == 2
    assert complete_utf8_length("é".encode("utf-8")[:1]) == 0
    assert complete_utf8_length(b"a" + "✓".encode("utf-8")[:2]) == 1
    assert complete_utf8_length(b"a" + "😀".encode("utf-8")[:3]) == 1
    assert complete_utf8_length(b"a" + "😀".encode("utf-8")) == 5


def test_read_log_from_does_not_advance_past_partial_character(tmp_path: Path) -> None:
    log = tmp_path / "run.log"
    log.write_bytes(b"x" + "✓".encode("utf-8")[:1])

    assert read_log_from(log, 0) == ("x", 1)
    assert read_log_from(log, 1) is None
    assert read_log_from(log, 1, final=True) == ("\ufffd", 2)
    assert read_log_from(tmp_path / "missing.log", 0) is None
