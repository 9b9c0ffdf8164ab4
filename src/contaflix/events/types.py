"""Event type definitions for WebSocket publishing.

These events are published to connected monitoring dashboards so that
queue progress, period closes and payments can be followed live.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4


class EventType(str, Enum):
    """Types of events published by the worker."""

    # Processing queue
    QUEUE_TASK_COMPLETED = "queue.task_completed"
    QUEUE_TASK_FAILED = "queue.task_failed"
    QUEUE_BATCH_COMPLETED = "queue.batch_completed"

    # Continuous close
    CLOSE_STARTED = "close.started"
    CLOSE_COMPLETED = "close.completed"
    CLOSE_BLOCKED = "close.blocked"

    ANOMALY_DETECTED = "anomaly.detected"
    PAYMENT_PROCESSED = "payment.processed"
    REPORT_GENERATED = "report.generated"

    # Errors
    ERROR = "error"


@dataclass
class ContaflixEvent:
    """Base event structure for all worker events."""

    event_type: EventType
    client_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_id: UUID = field(default_factory=uuid4)

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to dictionary for JSON transmission."""
        return {
            "id": str(self.event_id),
            "type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "client_id": self.client_id,
            "data": self.data,
        }


# === Factory functions ===


def queue_task_completed(task_id: str, process_type: str, result: Any = None) -> ContaflixEvent:
    return ContaflixEvent(
        event_type=EventType.QUEUE_TASK_COMPLETED,
        data={"task_id": task_id, "process_type": process_type, "result": result},
    )


def queue_task_failed(
    task_id: str, process_type: str, error: str, will_retry: bool
) -> ContaflixEvent:
    return ContaflixEvent(
        event_type=EventType.QUEUE_TASK_FAILED,
        data={
            "task_id": task_id,
            "process_type": process_type,
            "error": error,
            "will_retry": will_retry,
        },
    )


def queue_batch_completed(summary: dict[str, Any]) -> ContaflixEvent:
    return ContaflixEvent(event_type=EventType.QUEUE_BATCH_COMPLETED, data=summary)


def close_started(client_id: str, period: str) -> ContaflixEvent:
    return ContaflixEvent(
        event_type=EventType.CLOSE_STARTED,
        client_id=client_id,
        data={"period": period},
    )


def close_finished(
    client_id: str, period: str, success: bool, details: dict[str, Any] | None = None
) -> ContaflixEvent:
    """Create a close completed (or blocked) event."""
    return ContaflixEvent(
        event_type=EventType.CLOSE_COMPLETED if success else EventType.CLOSE_BLOCKED,
        client_id=client_id,
        data={"period": period, **(details or {})},
    )


def anomaly_detected(client_id: str, anomalies: list[dict[str, Any]]) -> ContaflixEvent:
    return ContaflixEvent(
        event_type=EventType.ANOMALY_DETECTED,
        client_id=client_id,
        data={"count": len(anomalies), "anomalies": anomalies},
    )


def payment_processed(
    client_id: str | None, payment_kind: str, details: dict[str, Any]
) -> ContaflixEvent:
    return ContaflixEvent(
        event_type=EventType.PAYMENT_PROCESSED,
        client_id=client_id,
        data={"kind": payment_kind, **details},
    )


def report_generated(
    client_id: str, report_id: str, report_type: str, fmt: str
) -> ContaflixEvent:
    return ContaflixEvent(
        event_type=EventType.REPORT_GENERATED,
        client_id=client_id,
        data={"report_id": report_id, "report_type": report_type, "format": fmt},
    )


def error_event(message: str, details: dict[str, Any] | None = None) -> ContaflixEvent:
    """Create an error event."""
    return ContaflixEvent(
        event_type=EventType.ERROR,
        data={"message": message, "details": details or {}},
    )
