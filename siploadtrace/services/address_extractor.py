from __future__ import annotations

import ipaddress
import re
from typing import Iterable, List, Optional

# SIP URIs carry IPv6 hosts in brackets: sip:alice@[2001:db8::1]:5060
_ADDRESS_CANDIDATE_RE = re.compile(
    r"\[(?P<v6>[0-9A-Fa-f.]*:[0-9A-Fa-f:.]*)\]"
    r"|(?P<v4>\b(?:[0-9]{1,3}\.){3}[0-9]{1,3}\b)"
)
_SDP_CONNECTION_PREFIXES = ("c=IN IP4 ", "c=IN IP6 ")


def is_valid_ip(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        ipaddress.ip_address(value.strip())
    except ValueError:
        return False
    return True


def extract_from_text(text: Optional[str]) -> List[str]:
    """Return every valid IPv4 (and bracketed IPv6) literal found in ``text``, in order of appearance."""
    if not text:
        return []
    ips: List[str] = []
    for match in _ADDRESS_CANDIDATE_RE.finditer(text):
        candidate = match.group("v6") or match.group("v4")
        if is_valid_ip(candidate):
            ips.append(candidate)
    return ips


def extract_from_sdp(body: Optional[str]) -> List[str]:
    """
    Collect media addresses from an SDP body.

    c= lines contribute their connection address directly; every line is also
    scanned as free text so o= and a=candidate style addresses are kept too.
    """
    if not body:
        return []
    ips: List[str] = []
    for raw_line in body.split("\n"):
        line = raw_line.strip()
        if line.startswith(_SDP_CONNECTION_PREFIXES):
            parts = line.split()
            if len(parts) >= 3:
                # c=IN IP4 224.2.1.1/127 (multicast TTL suffix)
                address = parts[2].split("/", 1)[0]
                if is_valid_ip(address):
                    ips.append(address)
        ips.extend(extract_from_text(line))
    return unique(ips)


def unique(values: Iterable[str]) -> List[str]:
    seen = set()
    out: List[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out
