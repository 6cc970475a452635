"""
Saga Orchestrator — checkout saga

Orchestration-style saga: one coordinator drives the cart, inventory,
payment and order services and, when a step fails, runs compensating
actions instead of relying on a shared transaction.

  Flow:
  ┌─────────────────────────────────────────────────────────────────┐
  │  1. Read the customer's cart (empty → rejected, nothing done)   │
  │  2. Reserve stock per SKU, concurrently                         │
  │  3. Charge the payment (one idempotency key for every retry)    │
  │     └─ declined / unavailable → release reservations (+ refund) │
  │  4. Commit the reservations          ← point of no return       │
  │  5. Create the order (idempotent by order id)                   │
  │     └─ failure after commit → RequiresManualIntervention        │
  │  6. Clear the cart (best effort)                                │
  └─────────────────────────────────────────────────────────────────┘

Each status has a handler returning the next status; the loop in ``_run``
drives them until the saga is terminal, persisting the state after every
transition.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from uuid import NAMESPACE_URL, uuid4, uuid5

import redis.asyncio as aioredis

from ..config import CURRENCY
from ..errors import (
    AlreadyTerminalError,
    CancellationRejectedError,
    CheckoutError,
    DownstreamUnavailableError,
    IdempotencyConflictError,
    InconsistentStateError,
    InsufficientStockError,
    NotFoundError,
    OrderNotFoundError,
    PaymentDeclinedError,
    ReservationNotFoundError,
    SagaCancelledError,
    ValidationError,
    error_from_body,
)
from ..event_store import isoformat, publish_event, utcnow
from ..logs import correlation_id
from ..models import Cart, OrderLine, ReservationStatus
from .compensation import CompensationStack
from .policy import StepPolicy, with_retry, with_timeout
from .state import SagaState, SagaStatus
from .store import SagaStore

logger = logging.getLogger(__name__)

CHANNEL = "saga_events"

SAGA_NAMESPACE = uuid5(NAMESPACE_URL, "urn:retail-checkout:saga")


def saga_id_for_order(order_id: str) -> str:
    return str(uuid5(SAGA_NAMESPACE, f"order:{order_id}"))


def order_id_for_saga(saga_id: str) -> str:
    return str(uuid5(SAGA_NAMESPACE, f"{saga_id}:order"))


def reservation_id_for(saga_id: str, sku: str) -> str:
    return str(uuid5(SAGA_NAMESPACE, f"{saga_id}:reserve:{sku}"))


def charge_key_for(saga_id: str) -> str:
    return f"{saga_id}:charge"


def refund_key_for(saga_id: str) -> str:
    return f"{saga_id}:refund"


@dataclass(frozen=True)
class CheckoutRequest:
    customer_id: str
    payment_token: str
    saga_id: str | None = None
    order_id: str | None = None


@dataclass(frozen=True)
class CheckoutResult:
    saga_id: str
    status: str
    order_id: str | None = None
    state: SagaState | None = None

    def to_json(self) -> dict:
        body = {"sagaId": self.saga_id, "status": self.status}
        if self.order_id is not None:
            body["orderId"] = self.order_id
        return body


@dataclass
class _Run:
    """Working memory of one saga execution. Never shared between sagas."""

    state: SagaState
    payment_token: str
    order_id: str
    stack: CompensationStack = field(default_factory=CompensationStack)
    cart: Cart | None = None
    reservations: dict[str, str] = field(default_factory=dict)
    committed: set[str] = field(default_factory=set)
    error: CheckoutError | None = None


class CheckoutSagaOrchestrator:
    """
    Runs checkout sagas.

    All collaborators are injected: ``inventory``, ``orders`` and ``carts``
    are the service clients from ``clients.py`` (or anything with the same
    methods), ``payments`` is a payment gateway, ``store`` persists saga
    records. Each call to ``checkout`` runs one saga to a terminal state.
    """

    def __init__(
        self,
        inventory,
        payments,
        orders,
        carts,
        store: SagaStore,
        redis: aioredis.Redis,
        *,
        policy: StepPolicy | None = None,
        currency: str = CURRENCY,
    ):
        self.inventory = inventory
        self.payments = payments
        self.orders = orders
        self.carts = carts
        self.store = store
        self.redis = redis
        self.policy = policy or StepPolicy()
        self.currency = currency

        self._running: dict[str, SagaState] = {}
        self._cancel_requested: set[str] = set()
        self._handlers: dict[SagaStatus, Callable[[_Run], Awaitable[SagaStatus]]] = {
            SagaStatus.STARTED: self._load_cart,
            SagaStatus.RESERVING_INVENTORY: self._reserve_inventory,
            SagaStatus.CHARGING_PAYMENT: self._charge_payment,
            SagaStatus.COMMITTING_INVENTORY: self._commit_inventory,
            SagaStatus.CREATING_ORDER: self._create_order,
            SagaStatus.CLEARING_CART: self._clear_cart,
            SagaStatus.COMPENSATING: self._compensate,
        }

    # ── Public API ───────────────────────────────

    async def checkout(self, request: CheckoutRequest) -> CheckoutResult:
        """
        Run a checkout saga.

        Returns a ``Paid`` result, or ``Processing`` while the saga is still
        running elsewhere or needs manual reconciliation. A failed checkout
        raises the error that failed it, with the saga id in its details.
        Re-sending a request with the same saga id (or order id) replays the
        recorded outcome without touching any service.
        """
        saga_id = request.saga_id or (
            saga_id_for_order(request.order_id) if request.order_id else str(uuid4())
        )
        state = SagaState(saga_id=saga_id, customer_id=request.customer_id, currency=self.currency)

        stored, created = await self.store.claim(state)
        if not created:
            if stored.customer_id != request.customer_id:
                raise IdempotencyConflictError(
                    f"Saga {saga_id} belongs to another customer", saga_id=saga_id
                )
            logger.info("[saga=%s] duplicate checkout; replaying %s", saga_id, stored.status.value)
            return self._outcome(self._running.get(saga_id, stored))

        run = _Run(
            state=stored,
            payment_token=request.payment_token,
            order_id=request.order_id or order_id_for_saga(saga_id),
        )
        token = correlation_id.set(saga_id)
        self._running[saga_id] = stored
        try:
            await self._run(run)
        finally:
            self._running.pop(saga_id, None)
            self._cancel_requested.discard(saga_id)
            correlation_id.reset(token)

        await self._publish(run.state)
        if run.state.status is SagaStatus.FAILED:
            run.error.details.setdefault("saga_id", saga_id)
            raise run.error
        return self._outcome(run.state)

    async def get(self, saga_id: str) -> SagaState | None:
        running = self._running.get(saga_id)
        if running is not None:
            return running
        return await self.store.get(saga_id)

    async def cancel(self, saga_id: str) -> SagaState:
        """
        Ask a running saga to stop. Accepted only before inventory commit
        starts; the saga compensates at its next step boundary.
        """
        state = self._running.get(saga_id)
        if state is None:
            state = await self.store.get(saga_id)
            if state is None:
                raise NotFoundError(f"Saga {saga_id} not found", saga_id=saga_id)
        if saga_id not in self._running or not state.status.is_cancellable:
            raise CancellationRejectedError(
                f"Saga {saga_id} is {state.status.value} and can no longer be cancelled",
                saga_id=saga_id,
                status=state.status.value,
            )
        self._cancel_requested.add(saga_id)
        state.record("CancelRequested", "COMPLETED")
        logger.info("[saga=%s] cancellation requested during %s", saga_id, state.status.value)
        return state

    async def list_interventions(self) -> list[dict]:
        return [state.intervention for state in await self.store.list_interventions()]

    # ── Dispatch loop ────────────────────────────

    async def _run(self, run: _Run) -> None:
        state = run.state
        logger.info("[saga=%s] START checkout for %s", state.saga_id, state.customer_id)
        while not state.status.is_terminal:
            if self._should_cancel(run):
                next_status = await self._on_step_failure(
                    run, SagaCancelledError(f"Checkout {state.saga_id} was cancelled", saga_id=state.saga_id)
                )
            else:
                handler = self._handlers[state.status]
                try:
                    next_status = await handler(run)
                except CheckoutError as e:
                    next_status = await self._on_step_failure(run, e)
                except Exception as e:
                    logger.exception("[saga=%s] unexpected error in %s", state.saga_id, state.status.value)
                    next_status = await self._on_step_failure(run, CheckoutError(repr(e)))
            state.transition(next_status)
            await self._persist(state)
        logger.info("[saga=%s] END %s", state.saga_id, state.status.value)

    def _should_cancel(self, run: _Run) -> bool:
        return (
            run.state.saga_id in self._cancel_requested
            and run.error is None
            and not run.committed
            and run.state.status in (
                SagaStatus.RESERVING_INVENTORY,
                SagaStatus.CHARGING_PAYMENT,
                SagaStatus.COMMITTING_INVENTORY,
            )
        )

    async def _on_step_failure(self, run: _Run, error: CheckoutError) -> SagaStatus:
        state = run.state
        if state.status is SagaStatus.CLEARING_CART:
            # The order exists and is paid; nothing may be undone from here.
            logger.warning("[saga=%s] cart not cleared: %s", state.saga_id, error.message)
            return SagaStatus.COMPLETED

        run.error = error
        state.error_kind = error.error_kind
        state.error_message = error.message
        logger.warning(
            "[saga=%s] %s failed: %s: %s", state.saga_id, state.status.value, error.error_kind, error.message
        )

        if state.status is SagaStatus.STARTED:
            return SagaStatus.FAILED
        if state.status in (SagaStatus.RESERVING_INVENTORY, SagaStatus.CHARGING_PAYMENT):
            return SagaStatus.COMPENSATING
        if (
            state.status is SagaStatus.COMMITTING_INVENTORY
            and not run.committed
            and not isinstance(error, DownstreamUnavailableError)
        ):
            # Definitive refusal and nothing committed: still reversible.
            return SagaStatus.COMPENSATING
        return await self._escalate(run, error)

    # ── Steps ────────────────────────────────────

    async def _load_cart(self, run: _Run) -> SagaStatus:
        state = run.state
        cart = await self._call(
            run, "GetCart",
            lambda: self.carts.get(state.customer_id, correlation_id=state.saga_id),
            retry=True,
        )
        if cart is None or not cart.lines:
            raise ValidationError(
                f"Cart for {state.customer_id} is empty", customer_id=state.customer_id
            )
        run.cart = cart
        state.total = cart.total
        return SagaStatus.RESERVING_INVENTORY

    async def _reserve_inventory(self, run: _Run) -> SagaStatus:
        state = run.state
        quantities: dict[str, int] = {}
        for line in run.cart.lines:
            quantities[line.sku] = quantities.get(line.sku, 0) + line.quantity

        async def reserve(sku: str, quantity: int) -> None:
            reservation_id = reservation_id_for(state.saga_id, sku)
            run.reservations[sku] = reservation_id
            state.add_reservation(reservation_id)
            # Pushed before the call: a reserve that times out may still have landed.
            run.stack.push(
                "ReleaseInventory",
                reservation_id,
                lambda: self.inventory.release(sku, reservation_id, correlation_id=state.saga_id),
            )
            await self._call(
                run, "ReserveInventory",
                lambda: self.inventory.reserve(sku, quantity, reservation_id, correlation_id=state.saga_id),
                retry=True,
                target=sku,
            )

        results = await asyncio.gather(
            *(reserve(sku, quantity) for sku, quantity in quantities.items()),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            for error in errors:
                if not isinstance(error, CheckoutError):
                    raise error
            # Report a stock shortage ahead of an outage on another SKU.
            errors.sort(key=lambda e: not isinstance(e, InsufficientStockError))
            raise errors[0]
        return SagaStatus.CHARGING_PAYMENT

    async def _charge_payment(self, run: _Run) -> SagaStatus:
        state = run.state
        charge_key = charge_key_for(state.saga_id)
        refund_key = refund_key_for(state.saga_id)

        async def charge():
            result = await self.payments.charge(
                state.total, state.currency, charge_key, run.payment_token, correlation_id=state.saga_id
            )
            if not result.succeeded:
                raise PaymentDeclinedError(
                    f"Payment declined: {result.error}", reason=result.error, saga_id=state.saga_id
                )
            return result

        try:
            result = await self._call(run, "ChargePayment", charge, retry=True)
        except DownstreamUnavailableError:
            # The processor may have charged; refund whatever is held under our key.
            run.stack.push(
                "RefundPayment",
                charge_key,
                lambda: self.payments.refund(refund_key, charge_key=charge_key, correlation_id=state.saga_id),
            )
            raise

        state.payment_transaction_id = result.transaction_id
        run.stack.push(
            "RefundPayment",
            result.transaction_id,
            lambda: self.payments.refund(
                refund_key, transaction_id=result.transaction_id, correlation_id=state.saga_id
            ),
        )
        return SagaStatus.COMMITTING_INVENTORY

    async def _commit_inventory(self, run: _Run) -> SagaStatus:
        for sku, reservation_id in run.reservations.items():
            if reservation_id in run.committed:
                continue
            await self._commit_one(run, sku, reservation_id)
            run.committed.add(reservation_id)
        return SagaStatus.CREATING_ORDER

    async def _commit_one(self, run: _Run, sku: str, reservation_id: str) -> None:
        saga_id = run.state.saga_id
        ambiguous: DownstreamUnavailableError | None = None
        for _ in range(self.policy.attempts):
            try:
                await self._call(
                    run, "CommitInventory",
                    lambda: self.inventory.commit(sku, reservation_id, correlation_id=saga_id),
                    target=sku,
                )
                return
            except DownstreamUnavailableError as e:
                ambiguous = e

            # The commit may have landed; ask before trying again.
            reservation = await self._call(
                run, "QueryReservation",
                lambda: self.inventory.get_reservation(reservation_id, correlation_id=saga_id),
                retry=True,
                target=sku,
            )
            if reservation is None:
                raise ReservationNotFoundError(
                    f"Reservation {reservation_id} vanished during commit", reservation_id=reservation_id
                )
            if reservation.status is ReservationStatus.COMMITTED:
                return
            if reservation.status is ReservationStatus.RELEASED:
                raise AlreadyTerminalError(
                    f"Reservation {reservation_id} was released before commit", reservation_id=reservation_id
                )
        raise ambiguous

    async def _create_order(self, run: _Run) -> SagaStatus:
        state = run.state
        lines = [
            OrderLine(sku=line.sku, name=line.name, unit_price=line.unit_price, quantity=line.quantity)
            for line in run.cart.lines
        ]

        def create():
            return self.orders.create(
                run.order_id,
                state.customer_id,
                lines,
                state.total,
                currency=state.currency,
                payment_transaction_id=state.payment_transaction_id,
                correlation_id=state.saga_id,
            )

        try:
            order = await self._call(run, "CreateOrder", create)
        except DownstreamUnavailableError:
            order = await self._call(
                run, "QueryOrder",
                lambda: self.orders.get(run.order_id, correlation_id=state.saga_id),
                retry=True,
            )
            if order is None:
                order = await self._call(run, "CreateOrder", create)

        state.order_id = order.id
        return SagaStatus.CLEARING_CART

    async def _clear_cart(self, run: _Run) -> SagaStatus:
        state = run.state
        try:
            await self._call(
                run, "ClearCart",
                lambda: self.carts.clear(state.customer_id, correlation_id=state.saga_id),
            )
        except CheckoutError as e:
            logger.warning("[saga=%s] cart not cleared: %s", state.saga_id, e.message)
        except Exception:
            logger.exception("[saga=%s] cart not cleared", state.saga_id)
        return SagaStatus.COMPLETED

    async def _compensate(self, run: _Run) -> SagaStatus:
        await self._unwind(run)
        return SagaStatus.FAILED

    async def _escalate(self, run: _Run, error: CheckoutError) -> SagaStatus:
        """Failure after commit: undo what can be undone and hand over to an operator."""
        state = run.state
        failed_step = state.status.value
        # A created order is a completed sale: never refund underneath it.
        outcomes = await self._unwind(run) if state.order_id is None else []

        refund = next((o for o in outcomes if o["action"] == "RefundPayment"), None)
        refund_status = refund["status"] if refund else "NotCharged"

        order_marked_failed = False
        if refund_status == "COMPLETED" and state.status is SagaStatus.CREATING_ORDER:
            try:
                await self._call(
                    run, "MarkOrderFailed",
                    lambda: self.orders.mark_failed(
                        run.order_id, f"{failed_step} failed: {error.message}", correlation_id=state.saga_id
                    ),
                    retry=True,
                )
                order_marked_failed = True
            except OrderNotFoundError:
                pass
            except CheckoutError as e:
                logger.error("[saga=%s] could not mark order %s Failed: %s", state.saga_id, run.order_id, e.message)

        inconsistency = InconsistentStateError(
            f"Checkout {state.saga_id} failed at {failed_step} after inventory commit: {error.message}",
            saga_id=state.saga_id,
            step=failed_step,
            cause=error.error_kind,
        )
        run.error = inconsistency
        state.error_kind = inconsistency.error_kind
        state.error_message = inconsistency.message
        state.intervention = {
            "sagaId": state.saga_id,
            "customerId": state.customer_id,
            "failedStep": failed_step,
            "errorKind": error.error_kind,
            "error": error.message,
            "refund": refund_status,
            "orderId": run.order_id if order_marked_failed else state.order_id,
            "orderMarkedFailed": order_marked_failed,
            "committedReservations": sorted(run.committed),
            "history": list(state.history),
            "recordedAt": isoformat(utcnow()),
        }
        logger.error(
            "[saga=%s] REQUIRES MANUAL INTERVENTION at %s (%s: %s), refund=%s",
            state.saga_id, failed_step, error.error_kind, error.message, refund_status,
        )
        return SagaStatus.REQUIRES_MANUAL_INTERVENTION

    # ── Helpers ──────────────────────────────────

    async def _call(self, run: _Run, action: str, call, *, retry: bool = False, target: str | None = None):
        """Run one downstream call under the step policy and log it in the saga history."""
        state = run.state
        extra = {"target": target} if target else {}
        entry = state.record(action, "EXECUTING", **extra)
        logger.info("[saga=%s] %s %s", state.saga_id, action, target or "")
        try:
            if retry:
                result = await with_retry(call, self.policy, step=action, saga_id=state.saga_id)
            else:
                result = await with_timeout(call, self.policy.timeout, step=action, saga_id=state.saga_id)
        except CheckoutError as e:
            entry["status"] = "FAILED"
            entry["errorKind"] = e.error_kind
            entry["error"] = e.message
            raise
        except Exception as e:
            entry["status"] = "FAILED"
            entry["error"] = repr(e)
            raise
        entry["status"] = "COMPLETED"
        return result

    async def _unwind(self, run: _Run) -> list[dict]:
        outcomes = await run.stack.unwind(run.state.saga_id, self.policy.timeout)
        for outcome in outcomes:
            run.state.record(**outcome, compensating=True)
        return outcomes

    async def _persist(self, state: SagaState) -> None:
        try:
            await self.store.save(state)
        except DownstreamUnavailableError:
            logger.exception("[saga=%s] could not persist state %s", state.saga_id, state.status.value)

    async def _publish(self, state: SagaState) -> None:
        event_type = {
            SagaStatus.COMPLETED: "SagaCompleted",
            SagaStatus.FAILED: "SagaFailed",
            SagaStatus.REQUIRES_MANUAL_INTERVENTION: "SagaRequiresManualIntervention",
        }[state.status]
        await publish_event(self.redis, CHANNEL, event_type, state.to_json())

    def _outcome(self, state: SagaState) -> CheckoutResult:
        if state.status is SagaStatus.FAILED:
            raise error_from_body({
                "errorKind": state.error_kind or "",
                "message": state.error_message or f"Checkout {state.saga_id} failed",
                "details": {"saga_id": state.saga_id},
            })
        order_id = state.order_id if state.status is SagaStatus.COMPLETED else None
        return CheckoutResult(
            saga_id=state.saga_id,
            status=state.status.public_status,
            order_id=order_id,
            state=state,
        )
