from __future__ import annotations

import csv
import io
import logging
import threading
from pathlib import Path
from typing import Iterable, List

from siploadtrace.services.address_extractor import unique
from siploadtrace.services.call_store import CallRecord

LOGGER = logging.getLogger(__name__)

CSV_COLUMNS = [
    "CallTime",
    "CallId",
    "DestinationDomain",
    "ResolvedDestinationIp",
    "CallStatus",
    "ResponseCode",
    "ContactHeaderIps",
    "RecordRouteIps",
    "ViaHeaderIps",
    "SdpMediaIps",
    "ServerHeader",
    "UserAgent",
    "AllDetectedIps",
]
CALL_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
MULTI_VALUE_SEPARATOR = "; "
HEADER_LINE = ",".join(CSV_COLUMNS)


def join_values(values: Iterable[str]) -> str:
    return MULTI_VALUE_SEPARATOR.join(unique(values))


def record_to_row(record: CallRecord) -> List[str]:
    return [
        record.call_time.strftime(CALL_TIME_FORMAT),
        record.call_id,
        record.destination_domain,
        record.resolved_destination_ip,
        record.call_status,
        record.response_code,
        join_values(record.contact_ips),
        join_values(record.record_route_ips),
        join_values(record.via_header_ips),
        join_values(record.sdp_media_ips),
        record.server_header,
        record.user_agent,
        join_values(record.all_detected_ips),
    ]


def _format_line(row: List[str]) -> str:
    buf = io.StringIO()
    csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n").writerow(row)
    return buf.getvalue()


class CsvCallSink:
    """Append-only CSV of finished calls; one writer at a time, header written once."""

    def __init__(self, csv_path: Path) -> None:
        self._csv_path = Path(csv_path)
        self._lock = threading.Lock()
        self._header_written = False
        self.rows_written = 0

    @property
    def path(self) -> Path:
        return self._csv_path

    def append(self, record: CallRecord) -> bool:
        try:
            line = _format_line(record_to_row(record))
            with self._lock:
                self._csv_path.parent.mkdir(parents=True, exist_ok=True)
                with self._csv_path.open("a", encoding="utf-8", newline="") as handle:
                    if not self._header_written:
                        # An existing non-empty file already carries its header.
                        if handle.tell() == 0:
                            handle.write(HEADER_LINE + "\n")
                        self._header_written = True
                    handle.write(line)
                self.rows_written += 1
        except Exception as exc:
            LOGGER.error(
                "Error logging call data call_id=%s path=%s error=%s",
                record.call_id,
                self._csv_path,
                exc,
                extra={"category": "ERRORS"},
            )
            return False

        LOGGER.info(
            "Logged IP data for call call_id=%s total_ips=%s",
            record.call_id,
            len(record.all_detected_ips),
            extra={"category": "CSV"},
        )
        if record.all_detected_ips:
            LOGGER.info("Detected IPs: %s", ", ".join(record.all_detected_ips), extra={"category": "CSV"})
        return True
