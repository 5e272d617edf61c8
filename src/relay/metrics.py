"""
Process-wide counters and structured event records.

The relay reports lifecycle events (`generation.started`, ...) here for
observability only; recording must never affect call handling.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class RelayMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    active_sessions: int = 0
    generations_started: int = 0
    generations_completed: int = 0
    generations_cancelled: int = 0
    generations_failed: int = 0
    empty_prompts: int = 0
    telephony_errors: int = 0
    unknown_events: int = 0
    malformed_messages: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "active_sessions": self.active_sessions,
            "generations_started": self.generations_started,
            "generations_completed": self.generations_completed,
            "generations_cancelled": self.generations_cancelled,
            "generations_failed": self.generations_failed,
            "empty_prompts": self.empty_prompts,
            "telephony_errors": self.telephony_errors,
            "unknown_events": self.unknown_events,
            "malformed_messages": self.malformed_messages,
            "errors": self.errors,
        }


# Global metrics
metrics = RelayMetrics()

_COUNTERS = {
    "generation.started": "generations_started",
    "generation.completed": "generations_completed",
    "generation.cancelled": "generations_cancelled",
    "generation.failed": "generations_failed",
    "prompt.empty": "empty_prompts",
    "telephony.error": "telephony_errors",
    "event.unknown": "unknown_events",
    "message.malformed": "malformed_messages",
}


def record_event(name: str, **fields: Any) -> None:
    """Count and log a structured event record. Never raises."""
    try:
        counter = _COUNTERS.get(name)
        if counter:
            setattr(metrics, counter, getattr(metrics, counter) + 1)
        if name == "generation.failed" or name == "telephony.error":
            logger.warning(name, **fields)
        else:
            logger.info(name, **fields)
    except Exception:
        # Observability must not break the call.
        logger.debug("Event record dropped", event_name=name)
