"""
Trace ingestion for the SIP engine's message and media hooks.

The engine fires its hooks from its own threads. The hooks only enqueue; one
worker thread drains the queue into ``process()`` so that a failure while
handling one event never reaches the engine and never stops the next event.
"""
from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Protocol, Union

from siploadtrace.logging_setup import category_context
from siploadtrace.services.address_extractor import extract_from_sdp, extract_from_text, is_valid_ip
from siploadtrace.services.call_store import UNKNOWN_CALL_ID, CallDelta, CallRecordStore, CallSeed

LOGGER = logging.getLogger(__name__)

REQUEST_IN = "request_in"
RESPONSE_IN = "response_in"
REQUEST_OUT = "request_out"
RESPONSE_OUT = "response_out"
DIRECTIONS = (REQUEST_IN, RESPONSE_IN, REQUEST_OUT, RESPONSE_OUT)

SeedResolver = Callable[[str], CallSeed]


class TraceMessage(Protocol):
    call_id: Optional[str]
    contacts: Any
    routes: Any
    vias: Any
    server: Optional[str]
    user_agent: Optional[str]
    body: Optional[str]
    status_code: Optional[int]
    reason_phrase: str


@dataclass(frozen=True)
class TraceEvent:
    direction: str
    local_endpoint: Any
    remote_endpoint: Any
    message: TraceMessage


@dataclass(frozen=True)
class MediaPacketEvent:
    call_id: str
    remote_endpoint: Any
    media_type: str = "audio"
    packet: Any = None


IngestEvent = Union[TraceEvent, MediaPacketEvent]


def status_class(status_code: int) -> str:
    if status_code < 300:
        return "Success"
    if status_code < 400:
        return "Redirection"
    if status_code < 500:
        return "Client Error"
    return "Server Error"


def endpoint_host(endpoint: Any) -> Optional[str]:
    """Best-effort host part of an endpoint: (host, port) tuples, "host:port" strings or objects with .host/.address."""
    if endpoint is None:
        return None
    if isinstance(endpoint, (tuple, list)):
        return str(endpoint[0]) if endpoint else None
    if not isinstance(endpoint, str):
        for attr in ("host", "address"):
            value = getattr(endpoint, attr, None)
            if value is not None:
                return str(value)
        endpoint = str(endpoint)
    text = endpoint.strip()
    if text.startswith("["):
        return text[1:].split("]", 1)[0]
    if text.count(":") == 1:
        return text.split(":", 1)[0]
    return text


def render_header(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="ignore")
    if isinstance(value, Iterable):
        return "\n".join(str(item) for item in value)
    return str(value)


def build_delta(message: TraceMessage, remote_endpoint: Any = None) -> CallDelta:
    delta = CallDelta()
    remote_ip = endpoint_host(remote_endpoint)
    if remote_ip and is_valid_ip(remote_ip):
        delta.remote_ip = remote_ip

    delta.contact_ips = extract_from_text(render_header(getattr(message, "contacts", None)))
    delta.record_route_ips = extract_from_text(render_header(getattr(message, "routes", None)))
    delta.via_header_ips = extract_from_text(render_header(getattr(message, "vias", None)))
    delta.sdp_media_ips = extract_from_sdp(getattr(message, "body", None))
    delta.server_header = getattr(message, "server", None) or None
    delta.user_agent = getattr(message, "user_agent", None) or None

    status_code = getattr(message, "status_code", None)
    if status_code is not None:
        code = int(status_code)
        reason = getattr(message, "reason_phrase", "") or ""
        delta.response_code = f"{code} {reason}".strip()
        delta.call_status = status_class(code)
    return delta


class TraceIngestor:
    def __init__(
        self,
        store: CallRecordStore,
        seed_resolver: Optional[SeedResolver] = None,
        max_queue_size: int = 10000,
        put_timeout_seconds: float = 0.05,
        poll_timeout_seconds: float = 0.5,
    ) -> None:
        self._store = store
        self._seed_resolver = seed_resolver
        self._queue: queue.Queue[IngestEvent] = queue.Queue(maxsize=max(1, int(max_queue_size)))
        self._put_timeout_seconds = put_timeout_seconds
        self._poll_timeout_seconds = poll_timeout_seconds
        self._pending = 0
        self._pending_cond = threading.Condition()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.processed = 0
        self.failed = 0
        self.dropped = 0

    def set_seed_resolver(self, seed_resolver: Optional[SeedResolver]) -> None:
        self._seed_resolver = seed_resolver

    # Engine hooks.

    def on_request_in(self, local_endpoint: Any, remote_endpoint: Any, message: TraceMessage) -> bool:
        return self.submit(TraceEvent(REQUEST_IN, local_endpoint, remote_endpoint, message))

    def on_response_in(self, local_endpoint: Any, remote_endpoint: Any, message: TraceMessage) -> bool:
        return self.submit(TraceEvent(RESPONSE_IN, local_endpoint, remote_endpoint, message))

    def on_request_out(self, local_endpoint: Any, remote_endpoint: Any, message: TraceMessage) -> bool:
        return self.submit(TraceEvent(REQUEST_OUT, local_endpoint, remote_endpoint, message))

    def on_response_out(self, local_endpoint: Any, remote_endpoint: Any, message: TraceMessage) -> bool:
        return self.submit(TraceEvent(RESPONSE_OUT, local_endpoint, remote_endpoint, message))

    def on_media_packet(self, call_id: str, remote_endpoint: Any, media_type: str = "audio", packet: Any = None) -> bool:
        return self.submit(MediaPacketEvent(call_id, remote_endpoint, media_type, packet))

    # Channel.

    def submit(self, event: IngestEvent) -> bool:
        with self._pending_cond:
            self._pending += 1
        try:
            self._queue.put(event, timeout=self._put_timeout_seconds)
        except queue.Full:
            self._done()
            self.dropped += 1
            LOGGER.warning(
                "Trace queue full; event dropped type=%s dropped_total=%s",
                type(event).__name__,
                self.dropped,
                extra={"category": "ERRORS"},
            )
            return False
        return True

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="trace-ingestor", daemon=True)
        self._thread.start()
        LOGGER.info("Started trace ingestor worker", extra={"category": "CONFIG"})

    def stop(self, timeout_seconds: float = 5.0) -> None:
        self.drain(timeout_seconds)
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout_seconds)
        self._thread = None
        LOGGER.info(
            "Stopped trace ingestor processed=%s failed=%s dropped=%s",
            self.processed,
            self.failed,
            self.dropped,
            extra={"category": "CONFIG"},
        )

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def drain(self, timeout_seconds: float | None = None) -> bool:
        """Wait until every event submitted so far has been processed. Returns False on timeout."""
        if not self.running:
            self._drain_inline()
        deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
        with self._pending_cond:
            while self._pending > 0:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    LOGGER.warning("Trace drain timed out pending=%s", self._pending, extra={"category": "SIP"})
                    return False
                self._pending_cond.wait(remaining)
        return True

    def _drain_inline(self) -> None:
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return
            try:
                self.process(event)
            finally:
                self._done()

    def _run(self) -> None:
        with category_context("SIP"):
            while not self._stop_event.is_set():
                try:
                    event = self._queue.get(timeout=self._poll_timeout_seconds)
                except queue.Empty:
                    continue
                try:
                    self.process(event)
                finally:
                    self._done()

    def _done(self) -> None:
        with self._pending_cond:
            self._pending -= 1
            if self._pending <= 0:
                self._pending_cond.notify_all()

    # Ingestion.

    def process(self, event: IngestEvent) -> None:
        try:
            if isinstance(event, MediaPacketEvent):
                self._process_media(event)
            else:
                self._process_trace(event)
            self.processed += 1
        except Exception as exc:
            self.failed += 1
            LOGGER.error(
                "Error processing trace event type=%s error=%s",
                type(event).__name__,
                exc,
                exc_info=True,
                extra={"category": "ERRORS"},
            )

    def _process_trace(self, event: TraceEvent) -> None:
        message = event.message
        call_id = _message_call_id(message)
        seed = self._seed_resolver(call_id) if self._seed_resolver else None
        self._store.get_or_create(call_id, seed)

        delta = build_delta(message, event.remote_endpoint)
        if not self._store.merge(call_id, delta):
            LOGGER.debug("Call record finalized before merge call_id=%s", call_id, extra={"category": "SIP"})
            return
        LOGGER.debug(
            "%s call_id=%s new_ips=%s status=%s",
            event.direction,
            call_id,
            delta.detected_ips(),
            delta.response_code or "-",
            extra={"category": "SIP"},
        )

    def _process_media(self, event: MediaPacketEvent) -> None:
        remote_ip = endpoint_host(event.remote_endpoint)
        if not remote_ip or not is_valid_ip(remote_ip):
            return
        if self._store.add_rtp_ip(event.call_id, remote_ip):
            LOGGER.debug(
                "RTP address recorded call_id=%s media=%s ip=%s",
                event.call_id,
                event.media_type,
                remote_ip,
                extra={"category": "RTP"},
            )


def _message_call_id(message: Any) -> str:
    try:
        call_id = getattr(message, "call_id", None)
    except Exception:
        return UNKNOWN_CALL_ID
    if call_id is None:
        return UNKNOWN_CALL_ID
    text = str(call_id).strip()
    return text or UNKNOWN_CALL_ID
