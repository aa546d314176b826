"""
Event System Module

Publish/subscribe dispatcher for loan domain events. The ledger emits
events after its atomic writes commit; delivery beyond this process is
the subscriber's concern and never affects ledger consistency.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class LoanEvent(Enum):
    """Domain events emitted by the loan ledger"""
    LOAN_CREATED = "loan.created"
    LOAN_UPDATED = "loan.updated"
    LOAN_STATUS_CHANGED = "loan.status_changed"
    LOAN_COMPLETED = "loan.completed"
    LOAN_DELETED = "loan.deleted"
    TRANSACTION_RECORDED = "transaction.recorded"
    TRANSACTION_UPDATED = "transaction.updated"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: LoanEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        """Create from dictionary"""
        timestamp = data['timestamp']
        return cls(
            event_type=LoanEvent(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            data=data['data'],
            timestamp=datetime.fromisoformat(timestamp) if isinstance(timestamp, str) else timestamp,
            event_id=data['event_id']
        )


class EventDispatcher:
    """Central event dispatcher, publish/subscribe"""

    def __init__(self):
        self._handlers: Dict[LoanEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self.logger = logging.getLogger("loan_ledger.events")

    @staticmethod
    def _name(handler: Callable) -> str:
        return getattr(handler, '__name__', repr(handler))

    def subscribe(self, event_type: LoanEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {self._name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {self._name(handler)}")

    def unsubscribe(self, event_type: LoanEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {self._name(handler)} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # Log but don't break the main operation
                self.logger.error(f"Error in event handler {self._name(handler)} for {event.event_type.value}: {e}")

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[LoanEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


def loan_created_event(loan) -> EventPayload:
    """LoanCreated{loan_id, customer_id}"""
    return EventPayload(
        event_type=LoanEvent.LOAN_CREATED,
        entity_type="loan",
        entity_id=loan.id,
        data={
            "loan_id": loan.id,
            "customer_id": loan.customer_id,
            "principal_amount": str(loan.principal_amount.amount),
            "tenure_months": loan.tenure_months
        }
    )


def transaction_recorded_event(transaction) -> EventPayload:
    """TransactionRecorded{transaction_id, loan_id, type, amount}"""
    return EventPayload(
        event_type=LoanEvent.TRANSACTION_RECORDED,
        entity_type="transaction",
        entity_id=transaction.id,
        data={
            "transaction_id": transaction.id,
            "loan_id": transaction.loan_id,
            "type": transaction.transaction_type.value,
            "amount": str(transaction.amount.amount)
        }
    )


def loan_completed_event(loan) -> EventPayload:
    """LoanCompleted{loan_id}"""
    return EventPayload(
        event_type=LoanEvent.LOAN_COMPLETED,
        entity_type="loan",
        entity_id=loan.id,
        data={"loan_id": loan.id}
    )


def loan_event(event_type: LoanEvent, loan, **extra) -> EventPayload:
    """Generic loan event carrying the loan's status"""
    data = {"loan_id": loan.id, "customer_id": loan.customer_id, "status": loan.status.value}
    data.update(extra)
    return EventPayload(event_type=event_type, entity_type="loan", entity_id=loan.id, data=data)
