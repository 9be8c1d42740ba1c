"""
Offline event source: replays a SIP + RTP capture through the recorder.

Every SIP payload becomes a trace event, and every RTP packet that hits an
SDP-announced media endpoint becomes a media event for the call that
announced it. Events are processed inline, in capture order.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from scapy.layers.inet import IP, TCP, UDP
from scapy.layers.inet6 import IPv6
from scapy.packet import Raw
from scapy.utils import PcapReader

from siploadtrace.services.recorder import CallIpRecorder
from siploadtrace.services.sip_parser import SipTraceMessage, looks_like_sip, parse_sip_text
from siploadtrace.services.trace_ingestor import (
    REQUEST_IN,
    REQUEST_OUT,
    RESPONSE_IN,
    RESPONSE_OUT,
    MediaPacketEvent,
    TraceEvent,
)

LOGGER = logging.getLogger(__name__)

Endpoint = Tuple[str, int]


@dataclass
class ReplayResult:
    packets: int = 0
    sip_messages: int = 0
    media_packets: int = 0
    calls: List[str] = field(default_factory=list)
    rows: int = 0
    local_ips: Set[str] = field(default_factory=set)


def replay_pcap(pcap_path: Path, recorder: CallIpRecorder, local_ips: Optional[Iterable[str]] = None) -> ReplayResult:
    if not pcap_path.exists():
        raise ValueError(f"Capture not found: {pcap_path}")

    result = ReplayResult(local_ips=set(local_ips or []))
    media_endpoints: Dict[Endpoint, Tuple[str, str]] = {}
    started: Set[str] = set()

    with PcapReader(str(pcap_path)) as reader:
        for packet in reader:
            result.packets += 1
            addresses = _addresses(packet)
            if addresses is None:
                continue
            src_ip, dst_ip = addresses
            ports = _ports(packet)
            payload = _extract_transport_payload(packet)
            if not payload or ports is None:
                continue
            sport, dport = ports

            text = payload.decode("utf-8", errors="ignore")
            message = parse_sip_text(text) if looks_like_sip(text) else None
            if message is not None:
                if not result.local_ips and message.is_request:
                    result.local_ips.add(src_ip)
                outbound = src_ip in result.local_ips
                local_ep: Endpoint = (src_ip, sport) if outbound else (dst_ip, dport)
                remote_ep: Endpoint = (dst_ip, dport) if outbound else (src_ip, sport)

                if message.call_id and message.is_request and message.call_id not in started:
                    started.add(message.call_id)
                    result.calls.append(message.call_id)
                    recorder.start_call(message.call_id, message.request_host or remote_ep[0], remote_ep[0])

                recorder.ingestor.process(TraceEvent(_direction(message, outbound), local_ep, remote_ep, message))
                result.sip_messages += 1
                if message.call_id and message.body:
                    for endpoint, media_type in sdp_media_endpoints(message.body):
                        media_endpoints[endpoint] = (message.call_id, media_type)
                continue

            if UDP not in packet or not _is_rtp(payload):
                continue
            owner = media_endpoints.get((dst_ip, dport)) or media_endpoints.get((src_ip, sport))
            if owner is None:
                continue
            call_id, media_type = owner
            remote_ep = (dst_ip, dport) if src_ip in result.local_ips else (src_ip, sport)
            recorder.ingestor.process(MediaPacketEvent(call_id, remote_ep, media_type, payload))
            result.media_packets += 1

    for call_id in result.calls:
        result.rows += len(recorder.finish_call(call_id, sweep=False))
    result.rows += len(recorder.flush_remaining())

    LOGGER.info(
        "Replayed capture=%s packets=%s sip=%s media=%s calls=%s rows=%s",
        pcap_path,
        result.packets,
        result.sip_messages,
        result.media_packets,
        len(result.calls),
        result.rows,
        extra={"category": "REPLAY"},
    )
    return result


def sdp_media_endpoints(body: str) -> List[Tuple[Endpoint, str]]:
    """(connection address, port) per m= section; media-level c= overrides the session-level one."""
    sections: List[Tuple[str, int, Optional[str]]] = []
    session_ip: Optional[str] = None
    for raw_line in body.replace("\r", "").split("\n"):
        line = raw_line.strip()
        if line.startswith("c=IN IP4") or line.startswith("c=IN IP6"):
            parts = line.split()
            if len(parts) >= 3:
                address = parts[2].split("/", 1)[0]
                if sections:
                    media_type, port, _ip = sections[-1]
                    sections[-1] = (media_type, port, address)
                else:
                    session_ip = address
        elif line.startswith("m="):
            parts = line[2:].split()
            if len(parts) < 3:
                continue
            try:
                port = int(parts[1].split("/", 1)[0])
            except ValueError:
                continue
            sections.append((parts[0], port, session_ip))

    out: List[Tuple[Endpoint, str]] = []
    for media_type, port, ip in sections:
        if ip and port:
            out.append(((ip, port), media_type))
    return out


def _direction(message: SipTraceMessage, outbound: bool) -> str:
    if message.is_request:
        return REQUEST_OUT if outbound else REQUEST_IN
    return RESPONSE_OUT if outbound else RESPONSE_IN


def _addresses(packet) -> Optional[Tuple[str, str]]:
    if IP in packet:
        return packet[IP].src, packet[IP].dst
    if IPv6 in packet:
        return packet[IPv6].src, packet[IPv6].dst
    return None


def _ports(packet) -> Optional[Tuple[int, int]]:
    if UDP in packet:
        return int(packet[UDP].sport), int(packet[UDP].dport)
    if TCP in packet:
        return int(packet[TCP].sport), int(packet[TCP].dport)
    return None


def _extract_transport_payload(packet) -> Optional[bytes]:
    if UDP in packet and Raw in packet[UDP]:
        return bytes(packet[UDP][Raw].load)
    if TCP in packet and Raw in packet[TCP]:
        return bytes(packet[TCP][Raw].load)
    return None


def _is_rtp(payload: bytes) -> bool:
    return len(payload) >= 12 and (payload[0] >> 6) == 2
