from __future__ import annotations

import datetime as dt
import logging
from pathlib import Path
from typing import Any, List, Optional

from siploadtrace.config_loader import AppConfig
from siploadtrace.services.call_store import CallRecord, CallRecordStore
from siploadtrace.services.call_tracker import CallContext, CallLifecycleTracker
from siploadtrace.services.csv_sink import CsvCallSink
from siploadtrace.services.trace_ingestor import TraceIngestor, TraceMessage

LOGGER = logging.getLogger(__name__)


def csv_path_for(log_directory: Path) -> Path:
    ts = dt.datetime.now(dt.timezone.utc).strftime("%Y%m%d_%H%M%S")
    return Path(log_directory) / f"call_ips_{ts}.csv"


class CallIpRecorder:
    """
    Wires store, sink, tracker and ingestor together.

    Register the ``on_*`` methods as the SIP engine's trace hooks, call
    ``start()`` once, then drive calls with ``resolve_address`` /
    ``start_call`` / ``finish_call``.
    """

    def __init__(
        self,
        csv_path: Path,
        resolve_timeout_seconds: float | None = 5.0,
        drain_timeout_seconds: float | None = 2.0,
        event_queue_size: int = 10000,
    ) -> None:
        self.store = CallRecordStore()
        self.sink = CsvCallSink(csv_path)
        self.tracker = CallLifecycleTracker(
            self.store,
            self.sink,
            resolve_timeout_seconds=resolve_timeout_seconds,
            drain_timeout_seconds=drain_timeout_seconds,
        )
        self.ingestor = TraceIngestor(
            self.store,
            seed_resolver=self.tracker.seed_for,
            max_queue_size=event_queue_size,
        )
        self.tracker.set_drain_hook(self.ingestor.drain)

    @classmethod
    def from_config(cls, config: AppConfig, csv_path: Optional[Path] = None) -> "CallIpRecorder":
        runner = config.runner
        return cls(
            csv_path or csv_path_for(config.logs.log_directory),
            resolve_timeout_seconds=runner.resolve_timeout_seconds,
            drain_timeout_seconds=runner.drain_timeout_seconds,
            event_queue_size=runner.event_queue_size,
        )

    @property
    def csv_path(self) -> Path:
        return self.sink.path

    def start(self) -> None:
        LOGGER.info("Recording call IPs to csv=%s", self.csv_path, extra={"category": "CSV"})
        self.ingestor.start()

    def stop(self) -> None:
        self.ingestor.stop()

    def __enter__(self) -> "CallIpRecorder":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    def resolve_address(self, destination: str) -> str:
        return self.tracker.resolve_address(destination)

    def start_call(self, call_id: str, destination_domain: str, resolved_address: str) -> CallContext:
        return self.tracker.start_call(call_id, destination_domain, resolved_address)

    def finish_call(self, call_id: str, sweep: bool = True) -> List[CallRecord]:
        return self.tracker.finish_call(call_id, sweep=sweep)

    def flush_remaining(self) -> List[CallRecord]:
        return self.tracker.flush_remaining()

    # SIP engine hooks.

    def on_request_in(self, local_endpoint: Any, remote_endpoint: Any, message: TraceMessage) -> bool:
        return self.ingestor.on_request_in(local_endpoint, remote_endpoint, message)

    def on_response_in(self, local_endpoint: Any, remote_endpoint: Any, message: TraceMessage) -> bool:
        return self.ingestor.on_response_in(local_endpoint, remote_endpoint, message)

    def on_request_out(self, local_endpoint: Any, remote_endpoint: Any, message: TraceMessage) -> bool:
        return self.ingestor.on_request_out(local_endpoint, remote_endpoint, message)

    def on_response_out(self, local_endpoint: Any, remote_endpoint: Any, message: TraceMessage) -> bool:
        return self.ingestor.on_response_out(local_endpoint, remote_endpoint, message)

    def on_media_packet(self, call_id: str, remote_endpoint: Any, media_type: str = "audio", packet: Any = None) -> bool:
        return self.ingestor.on_media_packet(call_id, remote_endpoint, media_type, packet)
