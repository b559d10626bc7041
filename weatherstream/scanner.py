import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from .markers import DEFAULT_MARKERS, MarkerSet

logger = logging.getLogger("uvicorn.error")


class ProtocolViolation(Exception):
    """The model broke the call-marker protocol."""


class PendingSpanOverflow(ProtocolViolation):
    def __init__(self, pending: int, limit: int):
        super().__init__(f"call marker left open for {pending} characters (limit {limit})")
        self.pending = pending
        self.limit = limit


@dataclass
class ScanResult:
    emitted: str
    retained: str
    payload: Optional[Any] = None
    # True when a call span was consumed, even if its payload failed to decode.
    matched: bool = False


class SentinelScanner:
    """Splits a growing buffer into text that is safe to show and text to hold back.

    A marker can only be recognized once it has fully arrived, so the trailing
    ``max_marker_length`` characters are always withheld while no call is open.
    Once a call-open marker is seen, nothing is emitted until its close marker
    arrives; the whole span is then removed and its body JSON-decoded.
    """

    def __init__(self, markers: MarkerSet = DEFAULT_MARKERS, max_pending_chars: Optional[int] = None):
        self.markers = markers
        self.max_pending_chars = max_pending_chars

    def scan(self, buffer: str) -> ScanResult:
        markers = self.markers
        start = buffer.find(markers.call_open)
        if start == -1:
            tail = markers.max_marker_length
            if len(buffer) > tail:
                cut = len(buffer) - tail
                return ScanResult(emitted=buffer[:cut], retained=buffer[cut:])
            return ScanResult(emitted="", retained=buffer)

        body_start = start + len(markers.call_open)
        end = buffer.find(markers.call_close, body_start)
        if end == -1:
            pending = len(buffer) - start
            if self.max_pending_chars is not None and pending > self.max_pending_chars:
                raise PendingSpanOverflow(pending, self.max_pending_chars)
            return ScanResult(emitted="", retained=buffer)

        body = buffer[body_start:end]
        payload = self.decode_payload(body)
        retained = buffer[:start] + buffer[end + len(markers.call_close):]
        return ScanResult(emitted="", retained=retained, payload=payload, matched=True)

    def decode_payload(self, body: str) -> Optional[Any]:
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            logger.warning("Failed to parse call payload %r: %s", body[:200], exc)
            return None

    def split_pending(self, buffer: str) -> tuple[str, str]:
        """Return (text before an unclosed call marker, the unclosed span)."""
        start = buffer.find(self.markers.call_open)
        if start == -1:
            return buffer, ""
        return buffer[:start], buffer[start:]
