import logging
from pathlib import Path

from siploadtrace.logging_setup import correlation_context, setup_logging


def test_setup_logging_moves_file_to_requested_path(tmp_path: Path) -> None:
    first = tmp_path / "first" / "app.log"
    second = tmp_path / "second" / "app.log"
    setup_logging(log_file=first)
    setup_logging(log_file=second)

    with correlation_context("cid-42"):
        logging.getLogger("siploadtrace.test").warning("moved", extra={"category": "CALLS"})

    line = second.read_text(encoding="utf-8").strip().splitlines()[-1]
    assert "| WARNING | CALLS | cid=cid-42 |" in line
    assert line.endswith("| moved")
    assert "moved" not in (first.read_text(encoding="utf-8") if first.exists() else "")
