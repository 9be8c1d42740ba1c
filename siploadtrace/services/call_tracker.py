from __future__ import annotations

import concurrent.futures
import datetime as dt
import logging
import socket
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from siploadtrace.logging_setup import correlation_context
from siploadtrace.services.address_extractor import is_valid_ip
from siploadtrace.services.call_store import CallRecord, CallRecordStore, CallSeed, utc_now
from siploadtrace.services.csv_sink import CsvCallSink

LOGGER = logging.getLogger(__name__)

NOT_AVAILABLE = "N/A"
UNKNOWN_DESTINATION = "Unknown"

DrainHook = Callable[[Optional[float]], bool]


@dataclass(frozen=True)
class CallContext:
    """Per-call values threaded from start_call to finish_call."""
    call_id: str
    destination_domain: str
    resolved_destination_ip: str
    started_at: dt.datetime = field(default_factory=utc_now)

    def seed(self) -> CallSeed:
        return CallSeed(
            destination_domain=self.destination_domain,
            resolved_destination_ip=self.resolved_destination_ip,
        )


def destination_host(destination: str) -> str:
    """
    Reduce a SIP destination to the bare host used for resolution.

    "sips:bob@pbx.example.com:5061" -> "pbx.example.com"
    "[2001:db8::1]:5060"             -> "2001:db8::1"
    """
    host = (destination or "").strip()
    lower = host.lower()
    for scheme in ("sips:", "sip:"):
        if lower.startswith(scheme):
            host = host[len(scheme) :]
            break
    host = host.split(";", 1)[0]
    if "@" in host:
        host = host.rsplit("@", 1)[1]
    if host.startswith("["):
        return host[1:].split("]", 1)[0]
    if is_valid_ip(host):
        return host
    return host.split(":", 1)[0]


def _lookup(host: str) -> str:
    infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_UDP)
    for info in infos:
        address = str(info[4][0])
        if address:
            return address
    return NOT_AVAILABLE


def resolve_address(destination: str, timeout_seconds: float | None = 5.0) -> str:
    """Resolve a SIP destination to one address literal; "N/A" on any failure."""
    host = destination_host(destination)
    if not host:
        LOGGER.warning("Empty destination, nothing to resolve destination=%r", destination, extra={"category": "DNS"})
        return NOT_AVAILABLE
    if is_valid_ip(host):
        return host

    executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="resolve")
    try:
        address = executor.submit(_lookup, host).result(timeout=timeout_seconds)
    except concurrent.futures.TimeoutError:
        LOGGER.warning(
            "Failed to resolve IP for destination=%s: timed out after %ss",
            destination,
            timeout_seconds,
            extra={"category": "DNS"},
        )
        return NOT_AVAILABLE
    except Exception as exc:
        LOGGER.warning("Failed to resolve IP for destination=%s: %s", destination, exc, extra={"category": "DNS"})
        return NOT_AVAILABLE
    finally:
        # A stuck lookup keeps its worker thread; the caller does not wait for it.
        executor.shutdown(wait=False)

    LOGGER.info("Resolved destination=%s host=%s ip=%s", destination, host, address, extra={"category": "DNS"})
    return address


class CallLifecycleTracker:
    def __init__(
        self,
        store: CallRecordStore,
        sink: CsvCallSink,
        resolve_timeout_seconds: float | None = 5.0,
        drain_timeout_seconds: float | None = 2.0,
    ) -> None:
        self._store = store
        self._sink = sink
        self._resolve_timeout_seconds = resolve_timeout_seconds
        self._drain_timeout_seconds = drain_timeout_seconds
        self._drain_hook: Optional[DrainHook] = None
        self._contexts_lock = threading.Lock()
        self._contexts: Dict[str, CallContext] = {}

    def set_drain_hook(self, drain_hook: Optional[DrainHook]) -> None:
        self._drain_hook = drain_hook

    def resolve_address(self, destination: str) -> str:
        return resolve_address(destination, self._resolve_timeout_seconds)

    def start_call(self, call_id: str, destination_domain: str, resolved_address: str) -> CallContext:
        context = CallContext(
            call_id=call_id,
            destination_domain=destination_domain,
            resolved_destination_ip=resolved_address,
        )
        with self._contexts_lock:
            self._contexts[call_id] = context
        self._store.get_or_create(call_id, context.seed())
        with correlation_context(call_id):
            LOGGER.info(
                "Call started destination=%s resolved_ip=%s active_calls=%s",
                destination_domain,
                resolved_address,
                len(self._contexts),
                extra={"category": "CALLS"},
            )
        return context

    def seed_for(self, call_id: str) -> CallSeed:
        with self._contexts_lock:
            context = self._contexts.get(call_id)
            if context is None and len(self._contexts) == 1:
                context = next(iter(self._contexts.values()))
        if context is None:
            return CallSeed()
        return context.seed()

    def finish_call(self, call_id: str, sweep: bool = True) -> List[CallRecord]:
        flushed: List[CallRecord] = []
        with correlation_context(call_id):
            try:
                self._drain_pending()
                with self._contexts_lock:
                    self._contexts.pop(call_id, None)

                record = self._store.remove(call_id)
                if record is None:
                    LOGGER.info("No trace data for call; writing placeholder row", extra={"category": "CALLS"})
                    record = CallRecord(
                        call_id=call_id,
                        destination_domain=UNKNOWN_DESTINATION,
                        resolved_destination_ip=NOT_AVAILABLE,
                    )
                self._sink.append(record)
                flushed.append(record)

                if sweep:
                    flushed.extend(self._sweep_orphans(call_id))
            except Exception as exc:
                LOGGER.error("Error finishing call error=%s", exc, exc_info=True, extra={"category": "ERRORS"})
            LOGGER.info("Call finished rows=%s", len(flushed), extra={"category": "CALLS"})
        return flushed

    def _sweep_orphans(self, finished_call_id: str) -> List[CallRecord]:
        # Known limitation: evidence from an unrelated concurrent call is flushed under this call's label.
        flushed: List[CallRecord] = []
        for key, snapshot in self._store.snapshot():
            if not snapshot.all_detected_ips:
                continue
            record = self._store.remove(key)
            if record is None:
                continue
            record.call_id = f"{finished_call_id}_sip_{key}"
            LOGGER.info("Orphan record swept key=%s label=%s", key, record.call_id, extra={"category": "CALLS"})
            self._sink.append(record)
            flushed.append(record)
        return flushed

    def flush_remaining(self) -> List[CallRecord]:
        flushed: List[CallRecord] = []
        self._drain_pending()
        for key, _snapshot in self._store.snapshot():
            record = self._store.remove(key)
            if record is None:
                continue
            self._sink.append(record)
            flushed.append(record)
        with self._contexts_lock:
            self._contexts.clear()
        if flushed:
            LOGGER.info("Flushed remaining records count=%s", len(flushed), extra={"category": "CALLS"})
        return flushed

    def _drain_pending(self) -> None:
        if self._drain_hook is None:
            return
        if not self._drain_hook(self._drain_timeout_seconds):
            LOGGER.warning("Pending trace events not fully drained before finish", extra={"category": "CALLS"})
