"""Verify-stream reconstruction — turns decoded SSE frames into one VerifyResult.

Provides:
- Opportunistic JSON decoding of frame payloads (raw string fallback)
- Terminal-event detection (complete / result / done)
- Incremental accumulation of claim_group events with snapshot override
- Tagged outcome: FINAL, ACCUMULATED or UNRESOLVED (raw events for diagnostics)

Precedence:
  1. Last terminal event whose data is a JSON object wins outright.
  2. Otherwise the last object carrying `claim_groups` (a full snapshot) wins.
  3. Otherwise claim_group events are synthesized into a result.
  4. Otherwise the stream is UNRESOLVED and the raw events are handed back.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Dict, List, Optional, Sequence

from sse_decoder import SSEFrame

logger = logging.getLogger("webcite.stream_aggregator")

TERMINAL_EVENTS = ("complete", "result", "done")
CLAIM_GROUP_EVENT = "claim_group"
CREDIT_USAGE_EVENT = "credit_usage"

# Outcome kinds
FINAL = "final"
ACCUMULATED = "accumulated"
UNRESOLVED = "unresolved"


@dataclass
class ParsedEvent:
    """An SSE frame with its payload JSON-decoded where possible."""

    event_kind: str
    data: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.event_kind, "data": self.data}


@dataclass
class StreamOutcome:
    """Result of reconstructing a verify stream."""

    kind: str
    result: Optional[Dict[str, Any]] = None
    events: List[ParsedEvent] = field(default_factory=list, repr=False)

    @property
    def resolved(self) -> bool:
        return self.result is not None

    def fallback_events(self) -> List[Dict[str, Any]]:
        """Ordered raw events, for display when no result could be built."""
        return [event.to_dict() for event in self.events]

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"status": self.kind, "result": self.result}
        if not self.resolved:
            payload["events"] = self.fallback_events()
        return payload


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Non-standard JSON constant: {name}")


def _finite_float(text: str) -> float:
    value = float(text)
    if not math.isfinite(value):
        raise ValueError(f"Number out of range: {text}")
    return value


def parse_frame(frame: SSEFrame) -> ParsedEvent:
    """Decode a frame payload as JSON, keeping the raw string if that fails.

    NaN, +/-Infinity and overflowing numbers are not JSON; such payloads
    stay raw text.
    """
    try:
        data = json.loads(
            frame.raw_payload,
            parse_constant=_reject_constant,
            parse_float=_finite_float,
        )
    except ValueError:
        logger.debug(
            "Non-JSON payload on '%s' event (%d chars), keeping raw text",
            frame.event_kind,
            len(frame.raw_payload),
        )
        data = frame.raw_payload
    return ParsedEvent(event_kind=frame.event_kind, data=data)


def synthesize_result(
    claim_groups: List[Dict[str, Any]],
    thread_id: str = "",
    credit_usage: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Build a VerifyResult from accumulated claim groups.

    totalResults is the sum of citation_count; a group without a numeric
    one contributes the length of its inline citations.
    """
    total = 0
    for group in claim_groups:
        count = group.get("citation_count")
        if not isinstance(count, (int, float)) or isinstance(count, bool):
            citations = group.get("citations")
            fallback = len(citations) if isinstance(citations, list) else 0
            if count is not None:
                logger.warning(
                    "claim_group %r has non-numeric citation_count %r, using %d",
                    group.get("claim_id"),
                    count,
                    fallback,
                )
            count = fallback
        total += count

    return {
        "claim_groups": claim_groups,
        "totalResults": total,
        "thread_id": thread_id,
        "credit_usage": credit_usage,
    }


def _find_terminal(events: Sequence[ParsedEvent]) -> Optional[Dict[str, Any]]:
    final = None
    for event in events:
        if event.event_kind in TERMINAL_EVENTS and isinstance(event.data, dict):
            final = event.data
    return final


def reconstruct_result(events: Sequence[ParsedEvent]) -> StreamOutcome:
    """Reconstruct the final VerifyResult from the full ordered event list."""
    events = list(events)

    final = _find_terminal(events)
    if final is not None:
        logger.info("Verify stream resolved from terminal event (%d events)", len(events))
        return StreamOutcome(kind=FINAL, result=final, events=events)

    claim_groups: List[Dict[str, Any]] = []
    credit_usage: Optional[Dict[str, Any]] = None
    thread_id = ""
    snapshot: Optional[Dict[str, Any]] = None

    for event in events:
        data = event.data
        if not isinstance(data, dict):
            continue

        if event.event_kind == CLAIM_GROUP_EVENT:
            claim_groups.append(data)
        if event.event_kind == CREDIT_USAGE_EVENT:
            credit_usage = data
        if data.get("thread_id"):
            thread_id = data["thread_id"]
        # Some backends send the full result on an ordinary event
        if data.get("claim_groups") is not None:
            snapshot = data

    if snapshot is not None:
        logger.info("Verify stream resolved from snapshot (%d events)", len(events))
        return StreamOutcome(kind=FINAL, result=snapshot, events=events)

    if claim_groups:
        logger.info(
            "Verify stream synthesized from %d claim group(s) (%d events)",
            len(claim_groups),
            len(events),
        )
        return StreamOutcome(
            kind=ACCUMULATED,
            result=synthesize_result(claim_groups, thread_id, credit_usage),
            events=events,
        )

    logger.info("Verify stream unresolved: no result in %d events", len(events))
    return StreamOutcome(kind=UNRESOLVED, events=events)


async def collect_stream(events: AsyncIterable[ParsedEvent]) -> StreamOutcome:
    """Drain an event stream and reconstruct its result.

    The stream is closed on every exit path, so a generator holding an
    HTTP response releases it even if draining fails midway.
    """
    collected: List[ParsedEvent] = []
    try:
        async for event in events:
            collected.append(event)
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()
    return reconstruct_result(collected)
