import csv
import socket
import time
from pathlib import Path
from typing import List

import pytest

from siploadtrace.config_loader import AppConfig
from siploadtrace.services import call_tracker
from siploadtrace.services.call_tracker import CallContext
from siploadtrace.services.load_runner import LoadRunner, load_placer
from siploadtrace.services.recorder import CallIpRecorder
from siploadtrace.services.sip_parser import SipTraceMessage


def _config(call_count: int = 3, call_timeout: float = 5.0) -> AppConfig:
    return AppConfig.model_validate(
        {
            "sip": {
                "sip_domain": "pbx.example.com",
                "username": "alice",
                "external_domain": "sip.example.com",
                "call_count": call_count,
                "call_delay_ms": 10,
            },
            "runner": {"call_timeout_seconds": call_timeout, "resolve_timeout_seconds": 1.0},
        }
    )


@pytest.fixture(autouse=True)
def fake_dns(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_getaddrinfo(host, port, *args, **kwargs):
        return [(socket.AF_INET, socket.SOCK_DGRAM, 17, "", ("203.0.113.1", 0))]

    monkeypatch.setattr(call_tracker.socket, "getaddrinfo", fake_getaddrinfo)


def test_run_records_every_call_and_survives_failures(tmp_path: Path) -> None:
    out = tmp_path / "calls.csv"
    recorder = CallIpRecorder(out)
    seen: List[CallContext] = []
    sleeps: List[float] = []

    def placer(context: CallContext) -> bool:
        seen.append(context)
        if len(seen) == 2:
            raise RuntimeError("engine exploded")
        response = SipTraceMessage(
            is_request=False,
            call_id=context.call_id,
            status_code=200,
            reason_phrase="OK",
            contacts=["<sip:bob@203.0.113.2>"],
        )
        recorder.on_response_in(None, ("203.0.113.1", 5061), response)
        return len(seen) != 3

    with recorder:
        summary = LoadRunner(recorder, placer, _config(), sleep=sleeps.append).run()

    assert (summary.attempted, summary.succeeded, summary.failed) == (3, 1, 2)
    assert summary.csv_path == out
    assert sleeps == [0.01, 0.01]
    assert all(c.destination_domain == "sip.example.com" for c in seen)
    assert all(c.resolved_destination_ip == "203.0.113.1" for c in seen)

    with out.open(encoding="utf-8", newline="") as handle:
        rows = list(csv.DictReader(handle))
    assert [row["CallId"] for row in rows] == [c.call_id for c in seen]
    assert rows[0]["CallStatus"] == "Success"
    assert rows[1]["CallStatus"] == ""
    assert rows[1]["ResolvedDestinationIp"] == "203.0.113.1"


def test_run_times_out_stuck_placer(tmp_path: Path) -> None:
    recorder = CallIpRecorder(tmp_path / "calls.csv")

    def stuck(context: CallContext) -> bool:
        time.sleep(0.5)
        return True

    summary = LoadRunner(recorder, stuck, _config(call_count=1, call_timeout=0.05), sleep=lambda s: None).run()
    assert summary.failed == 1
    assert recorder.sink.rows_written == 1


def test_call_count_override(tmp_path: Path) -> None:
    recorder = CallIpRecorder(tmp_path / "calls.csv")
    summary = LoadRunner(recorder, lambda ctx: True, _config(call_count=5), sleep=lambda s: None).run(2)
    assert summary.attempted == 2


@pytest.mark.parametrize("call_count", [0, -3])
def test_non_positive_call_count_override_is_rejected(tmp_path: Path, call_count: int) -> None:
    recorder = CallIpRecorder(tmp_path / "calls.csv")
    placed: List[CallContext] = []
    runner = LoadRunner(recorder, placed.append, _config(call_count=5), sleep=lambda s: None)

    with pytest.raises(ValueError):
        runner.run(call_count)
    assert placed == []


def test_load_placer_validates_target_format() -> None:
    assert load_placer("os.path:basename") is not None
    with pytest.raises(ValueError):
        load_placer("no-colon")
    with pytest.raises(ValueError):
        load_placer("os.path:sep")
    with pytest.raises(ImportError):
        load_placer("siploadtrace_missing_module:placer")
