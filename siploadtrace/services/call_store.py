from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from siploadtrace.services.address_extractor import unique

LOGGER = logging.getLogger(__name__)

UNKNOWN_CALL_ID = "unknown"


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass(frozen=True)
class CallSeed:
    """Defaults applied to a record when it is first created."""
    destination_domain: str = ""
    resolved_destination_ip: str = ""


@dataclass
class CallRecord:
    call_id: str
    call_time: dt.datetime = field(default_factory=utc_now)
    destination_domain: str = ""
    resolved_destination_ip: str = ""
    contact_ips: List[str] = field(default_factory=list)
    record_route_ips: List[str] = field(default_factory=list)
    via_header_ips: List[str] = field(default_factory=list)
    sdp_media_ips: List[str] = field(default_factory=list)
    rtp_ips: List[str] = field(default_factory=list)
    all_detected_ips: List[str] = field(default_factory=list)
    server_header: str = ""
    user_agent: str = ""
    call_status: str = ""
    response_code: str = ""

    def copy(self) -> "CallRecord":
        return CallRecord(
            call_id=self.call_id,
            call_time=self.call_time,
            destination_domain=self.destination_domain,
            resolved_destination_ip=self.resolved_destination_ip,
            contact_ips=list(self.contact_ips),
            record_route_ips=list(self.record_route_ips),
            via_header_ips=list(self.via_header_ips),
            sdp_media_ips=list(self.sdp_media_ips),
            rtp_ips=list(self.rtp_ips),
            all_detected_ips=list(self.all_detected_ips),
            server_header=self.server_header,
            user_agent=self.user_agent,
            call_status=self.call_status,
            response_code=self.response_code,
        )


@dataclass
class CallDelta:
    """Evidence contributed by a single trace event."""
    remote_ip: Optional[str] = None
    contact_ips: List[str] = field(default_factory=list)
    record_route_ips: List[str] = field(default_factory=list)
    via_header_ips: List[str] = field(default_factory=list)
    sdp_media_ips: List[str] = field(default_factory=list)
    rtp_ips: List[str] = field(default_factory=list)
    server_header: Optional[str] = None
    user_agent: Optional[str] = None
    call_status: Optional[str] = None
    response_code: Optional[str] = None

    def detected_ips(self) -> List[str]:
        ips: List[str] = [self.remote_ip] if self.remote_ip else []
        ips.extend(self.contact_ips)
        ips.extend(self.record_route_ips)
        ips.extend(self.via_header_ips)
        ips.extend(self.sdp_media_ips)
        ips.extend(self.rtp_ips)
        return unique(ips)


class CallRecordStore:
    """Thread-safe call_id -> CallRecord map; records never leave the lock un-copied."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, CallRecord] = {}

    def get_or_create(self, call_id: str, seed: Optional[CallSeed] = None) -> CallRecord:
        with self._lock:
            record = self._records.get(call_id)
            if record is None:
                seed = seed or CallSeed()
                record = CallRecord(
                    call_id=call_id,
                    destination_domain=seed.destination_domain,
                    resolved_destination_ip=seed.resolved_destination_ip,
                )
                self._records[call_id] = record
                LOGGER.debug(
                    "Call record created call_id=%s destination=%s resolved_ip=%s",
                    call_id,
                    seed.destination_domain or "-",
                    seed.resolved_destination_ip or "-",
                    extra={"category": "CALLS"},
                )
            return record.copy()

    def merge(self, call_id: str, delta: CallDelta) -> bool:
        with self._lock:
            record = self._records.get(call_id)
            if record is None:
                return False
            record.contact_ips.extend(delta.contact_ips)
            record.record_route_ips.extend(delta.record_route_ips)
            record.via_header_ips.extend(delta.via_header_ips)
            record.sdp_media_ips.extend(delta.sdp_media_ips)
            record.rtp_ips.extend(delta.rtp_ips)
            _union_into(record.all_detected_ips, delta.detected_ips())
            if delta.server_header:
                record.server_header = delta.server_header
            if delta.user_agent:
                record.user_agent = delta.user_agent
            if delta.call_status:
                record.call_status = delta.call_status
            if delta.response_code:
                record.response_code = delta.response_code
            return True

    def add_rtp_ip(self, call_id: str, address: str) -> bool:
        with self._lock:
            record = self._records.get(call_id)
            if record is None:
                return False
            if address not in record.rtp_ips:
                record.rtp_ips.append(address)
            _union_into(record.all_detected_ips, [address])
            return True

    def remove(self, call_id: str) -> Optional[CallRecord]:
        with self._lock:
            return self._records.pop(call_id, None)

    def snapshot(self) -> List[Tuple[str, CallRecord]]:
        with self._lock:
            return [(call_id, record.copy()) for call_id, record in self._records.items()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, call_id: object) -> bool:
        with self._lock:
            return call_id in self._records


def _union_into(target: List[str], values: List[str]) -> None:
    for value in values:
        if value not in target:
            target.append(value)
