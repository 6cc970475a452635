"""
Saga Service — checkout saga state

One SagaState per checkout attempt, owned by the orchestrator running it.

    Started → ReservingInventory → ChargingPayment → CommittingInventory
            → CreatingOrder → ClearingCart → Completed

    ReservingInventory / ChargingPayment ──failure──▶ Compensating → Failed
    CommittingInventory (nothing committed yet) ──▶ Compensating → Failed
    CommittingInventory / CreatingOrder ──failure──▶ RequiresManualIntervention
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from ..event_store import isoformat, utcnow
from ..models import ApiModel


class SagaStatus(str, Enum):
    STARTED = "Started"
    RESERVING_INVENTORY = "ReservingInventory"
    CHARGING_PAYMENT = "ChargingPayment"
    COMMITTING_INVENTORY = "CommittingInventory"
    CREATING_ORDER = "CreatingOrder"
    CLEARING_CART = "ClearingCart"
    COMPLETED = "Completed"
    COMPENSATING = "Compensating"
    FAILED = "Failed"
    REQUIRES_MANUAL_INTERVENTION = "RequiresManualIntervention"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL

    @property
    def is_cancellable(self) -> bool:
        return self in (SagaStatus.RESERVING_INVENTORY, SagaStatus.CHARGING_PAYMENT)

    @property
    def public_status(self) -> str:
        """What the customer sees. Manual intervention is reported as still processing."""
        if self is SagaStatus.COMPLETED:
            return "Paid"
        if self is SagaStatus.FAILED:
            return "Failed"
        return "Processing"


TERMINAL = frozenset({
    SagaStatus.COMPLETED,
    SagaStatus.FAILED,
    SagaStatus.REQUIRES_MANUAL_INTERVENTION,
})

TRANSITIONS: dict[SagaStatus, frozenset[SagaStatus]] = {
    SagaStatus.STARTED: frozenset({SagaStatus.RESERVING_INVENTORY, SagaStatus.FAILED}),
    SagaStatus.RESERVING_INVENTORY: frozenset({SagaStatus.CHARGING_PAYMENT, SagaStatus.COMPENSATING}),
    SagaStatus.CHARGING_PAYMENT: frozenset({SagaStatus.COMMITTING_INVENTORY, SagaStatus.COMPENSATING}),
    SagaStatus.COMMITTING_INVENTORY: frozenset({
        SagaStatus.CREATING_ORDER,
        SagaStatus.COMPENSATING,
        SagaStatus.REQUIRES_MANUAL_INTERVENTION,
    }),
    SagaStatus.CREATING_ORDER: frozenset({
        SagaStatus.CLEARING_CART,
        SagaStatus.REQUIRES_MANUAL_INTERVENTION,
    }),
    SagaStatus.CLEARING_CART: frozenset({SagaStatus.COMPLETED}),
    SagaStatus.COMPENSATING: frozenset({SagaStatus.FAILED}),
}


class SagaState(ApiModel):
    saga_id: str
    customer_id: str
    status: SagaStatus = SagaStatus.STARTED
    reservation_ids: list[str] = []
    payment_transaction_id: str | None = None
    order_id: str | None = None
    total: Decimal | None = None
    currency: str = "GBP"
    history: list[dict] = []
    error_kind: str | None = None
    error_message: str | None = None
    intervention: dict | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def transition(self, status: SagaStatus) -> None:
        if status not in TRANSITIONS.get(self.status, frozenset()):
            raise ValueError(f"Illegal saga transition {self.status.value} -> {status.value}")
        self.status = status
        self.updated_at = utcnow()

    def record(self, action: str, status: str, **extra) -> dict:
        """Append a step log entry (EXECUTING / COMPLETED / FAILED / SKIPPED)."""
        entry = {
            "step": len(self.history) + 1,
            "action": action,
            "status": status,
            "sagaStatus": self.status.value,
            "timestamp": isoformat(utcnow()),
            **extra,
        }
        self.history.append(entry)
        return entry

    def add_reservation(self, reservation_id: str) -> None:
        if reservation_id not in self.reservation_ids:
            self.reservation_ids.append(reservation_id)
