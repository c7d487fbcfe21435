"""
Trace Service

Reconstructs a business transaction from its processing steps (and, for
end-to-end ids, the matching API logs) into one ordered, numbered trace with
bottleneck annotations.
"""

import logging
from typing import Dict, List, Optional

from monitoring_api.cache import ResponseCache, cached
from monitoring_api.cells import parse_float, parse_instant, parse_int
from monitoring_api.models import Bottleneck, Trace, TraceStep
from monitoring_api.store_gateway import StoreGateway


logger = logging.getLogger(__name__)


BOTTLENECK_THRESHOLD_PERCENTAGE = 30.0
MAJOR_BOTTLENECK_PERCENTAGE = 50.0
SLOW_STEP_MS = 1000
FAILURE_STATUS = 400


def _first(data: Dict[str, str], *keys: str) -> Optional[str]:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def to_trace_step(data: Dict[str, str]) -> Optional[TraceStep]:
    """
    Map a raw step to a TraceStep with ``sequence`` 0; None without a
    parseable timestamp.
    """
    timestamp = parse_instant(data.get("timestamp"))
    if timestamp is None:
        return None

    duration = parse_float(_first(data, "duration_ms", "response_time_ms"))
    return TraceStep(
        sequence=0,
        timestamp=timestamp,
        type=data.get("type"),
        service=_first(data, "service", "connector"),
        method=data.get("method"),
        path=data.get("path"),
        status=parse_int(data.get("status")),
        duration_ms=int(duration) if duration is not None else None,
        client_ip=data.get("client_ip"),
        message=_first(data, "message", "message_content"),
    )


def suggest(step: TraceStep, percentage: float) -> str:
    if step.service and "notification" in step.service:
        return "Consider async notifications to improve response time"
    if step.duration_ms is not None and step.duration_ms > SLOW_STEP_MS:
        return "Consider caching or optimization for this step"
    if percentage > MAJOR_BOTTLENECK_PERCENTAGE:
        return "This step is a major bottleneck - requires immediate attention"
    return "Consider optimization for this step"


def detect_bottlenecks(steps: List[TraceStep], total_duration_ms: int) -> List[Bottleneck]:
    """Steps taking at least 30% of the trace, largest share first."""
    if total_duration_ms <= 0:
        return []

    bottlenecks = []
    for step in steps:
        if step.duration_ms is None:
            continue
        percentage = step.duration_ms / total_duration_ms * 100
        if percentage >= BOTTLENECK_THRESHOLD_PERCENTAGE:
            bottlenecks.append(Bottleneck(
                step=step.sequence,
                service=step.service,
                duration_ms=step.duration_ms,
                percentage=percentage,
                suggestion=suggest(step, percentage),
            ))

    bottlenecks.sort(key=lambda b: b.percentage, reverse=True)
    return bottlenecks


def build_trace(
    raw_steps: List[Dict[str, str]],
    message_id: Optional[str] = None,
    end_to_end_id: Optional[str] = None
) -> Optional[Trace]:
    """
    Assemble a Trace; None when no step has a usable timestamp.

    When `message_id` is not given, it is taken from the first step that
    carries one.
    """
    steps = []
    for data in raw_steps:
        step = to_trace_step(data)
        if step is None:
            logger.warning(f"Dropping trace step without a valid timestamp: {data.get('timestamp')!r}")
            continue
        steps.append((step, data))

    if not steps:
        return None

    steps.sort(key=lambda pair: pair[0].timestamp)
    for sequence, (step, _) in enumerate(steps, start=1):
        step.sequence = sequence

    if message_id is None:
        message_id = next((data["messageId"] for _, data in steps if data.get("messageId")), None)

    ordered = [step for step, _ in steps]
    start_time = ordered[0].timestamp
    end_time = ordered[-1].timestamp
    total_duration_ms = int(round((end_time - start_time).total_seconds() * 1000))

    failed = any(step.status is not None and step.status >= FAILURE_STATUS for step in ordered)

    return Trace(
        transaction_id=end_to_end_id if end_to_end_id is not None else message_id,
        message_id=message_id,
        end_to_end_id=end_to_end_id,
        start_time=start_time,
        end_time=end_time,
        total_duration_ms=total_duration_ms,
        status="failure" if failed else "success",
        steps=ordered,
        bottlenecks=detect_bottlenecks(ordered, total_duration_ms),
    )


class TraceService:
    def __init__(self, gateway: StoreGateway, cache: Optional[ResponseCache] = None):
        self.gateway = gateway
        self.cache = cache

    @cached("traces", "msg_{message_id}")
    def trace_by_message_id(self, message_id: str) -> Optional[Trace]:
        logger.info(f"Tracing transaction by messageId: {message_id}")
        return build_trace(self.gateway.trace_by_message_id(message_id), message_id=message_id)

    @cached("traces", "e2e_{end_to_end_id}")
    def trace_by_end_to_end_id(self, end_to_end_id: str) -> Optional[Trace]:
        logger.info(f"Tracing transaction by endToEndId: {end_to_end_id}")
        return build_trace(self.gateway.trace_by_end_to_end_id(end_to_end_id), end_to_end_id=end_to_end_id)
