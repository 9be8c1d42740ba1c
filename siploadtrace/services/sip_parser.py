from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

LOGGER = logging.getLogger(__name__)

_STATUS_LINE_RE = re.compile(r"^SIP/2\.0\s+(\d{3})(?:\s+(.*))?$")
_URI_HOST_RE = re.compile(r"^sips?:(?:[^@;>]*@)?(\[[^\]]+\]|[^:;>?\s]+)", re.IGNORECASE)

# RFC 3261 compact header forms.
_COMPACT_HEADERS = {
    "i": "call-id",
    "m": "contact",
    "v": "via",
    "f": "from",
    "t": "to",
    "c": "content-type",
    "l": "content-length",
}


@dataclass
class SipTraceMessage:
    """A SIP request or response reduced to the fields the trace ingestor reads."""
    is_request: bool
    call_id: Optional[str] = None
    method: Optional[str] = None
    request_uri: Optional[str] = None
    status_code: Optional[int] = None
    reason_phrase: str = ""
    contacts: List[str] = field(default_factory=list)
    routes: List[str] = field(default_factory=list)
    vias: List[str] = field(default_factory=list)
    server: Optional[str] = None
    user_agent: Optional[str] = None
    body: Optional[str] = None

    @property
    def request_host(self) -> Optional[str]:
        if not self.request_uri:
            return None
        match = _URI_HOST_RE.match(self.request_uri.strip())
        if not match:
            return None
        return match.group(1).strip("[]")


def looks_like_sip(text: str) -> bool:
    first_line = text.split("\n", 1)[0]
    return "SIP/2.0" in first_line


def parse_sip_text(text: str) -> Optional[SipTraceMessage]:
    """Parse one SIP message; returns None when the start line is neither a request nor a status line."""
    if not text or not looks_like_sip(text):
        return None

    start_line, headers, body = _split_message(text)
    is_request, method, request_uri, status_code, reason = _parse_start_line(start_line)
    if (not is_request and status_code is None) or (is_request and not method):
        LOGGER.debug("Unparseable SIP start line=%r", start_line[:120], extra={"category": "SIP"})
        return None

    call_ids = headers.get("call-id") or []
    servers = headers.get("server") or []
    agents = headers.get("user-agent") or []
    return SipTraceMessage(
        is_request=is_request,
        call_id=call_ids[0] if call_ids else None,
        method=method,
        request_uri=request_uri,
        status_code=status_code,
        reason_phrase=reason,
        contacts=_split_header_values(headers.get("contact") or []),
        routes=_split_header_values((headers.get("record-route") or []) + (headers.get("route") or [])),
        vias=_split_header_values(headers.get("via") or []),
        server=servers[-1] if servers else None,
        user_agent=agents[-1] if agents else None,
        body=body or None,
    )


def _parse_start_line(start_line: str) -> Tuple[bool, Optional[str], Optional[str], Optional[int], str]:
    # Request: "INVITE sip:... SIP/2.0"
    # Response: "SIP/2.0 200 OK"
    if start_line.startswith("SIP/2.0"):
        match = _STATUS_LINE_RE.match(start_line)
        if not match:
            return False, None, None, None, ""
        return False, None, None, int(match.group(1)), (match.group(2) or "").strip()

    parts = start_line.split()
    if len(parts) < 3 or parts[-1] != "SIP/2.0":
        return True, None, None, None, ""
    return True, parts[0].upper(), parts[1], None, ""


def _split_message(text: str) -> Tuple[str, Dict[str, List[str]], str]:
    normalized = text.replace("\r\n", "\n")
    parts = normalized.split("\n\n", 1)
    header_lines = _unfold(parts[0].splitlines())
    start_line = header_lines[0].strip() if header_lines else ""
    body = parts[1] if len(parts) > 1 else ""

    # Keep every occurrence: Via and Record-Route repeat.
    headers: Dict[str, List[str]] = {}
    for line in header_lines[1:]:
        if ":" not in line:
            continue
        name, value = line.split(":", 1)
        key = name.strip().lower()
        key = _COMPACT_HEADERS.get(key, key)
        headers.setdefault(key, []).append(value.strip())
    return start_line, headers, body


def _unfold(lines: List[str]) -> List[str]:
    out: List[str] = []
    for line in lines:
        if line[:1] in (" ", "\t") and out:
            out[-1] = out[-1] + " " + line.strip()
        else:
            out.append(line)
    return out


def _split_header_values(values: List[str]) -> List[str]:
    """Split comma-joined header values, leaving commas inside <...> and quotes alone."""
    out: List[str] = []
    for value in values:
        current: List[str] = []
        depth = 0
        quoted = False
        for ch in value:
            if ch == '"':
                quoted = not quoted
            elif ch == "<" and not quoted:
                depth += 1
            elif ch == ">" and not quoted and depth:
                depth -= 1
            elif ch == "," and not quoted and depth == 0:
                item = "".join(current).strip()
                if item:
                    out.append(item)
                current = []
                continue
            current.append(ch)
        item = "".join(current).strip()
        if item:
            out.append(item)
    return out
