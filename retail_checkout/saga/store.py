"""
Saga Service — saga record persistence

A saga record is claimed before any side effect. The insert-if-absent claim
is what makes a re-sent checkout return the recorded outcome instead of
running a second saga.
"""

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .. import db
from ..errors import DownstreamUnavailableError
from ..event_store import isoformat, utcnow
from .schema import SCHEMA
from .state import SagaState, SagaStatus


class SagaStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def create_schema(self) -> None:
        await db.create_schema(self.session_factory, SCHEMA)

    async def claim(self, state: SagaState) -> tuple[SagaState, bool]:
        """Insert ``state`` unless the saga id is taken. Returns ``(stored, created)``."""
        now = utcnow()
        state.created_at = state.created_at or now
        state.updated_at = now
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    text("""
                        INSERT INTO sagas
                            (saga_id, customer_id, status, order_id, state, created_at, updated_at)
                        VALUES
                            (:saga_id, :customer_id, :status, :order_id, :state, :created_at, :updated_at)
                        ON CONFLICT (saga_id) DO NOTHING
                    """),
                    self._params(state),
                )
                await session.commit()
                if result.rowcount == 1:
                    return state, True
        except SQLAlchemyError as e:
            raise DownstreamUnavailableError(f"Saga store unavailable: {e}", saga_id=state.saga_id) from e

        return await self.get(state.saga_id), False

    async def save(self, state: SagaState) -> None:
        try:
            async with self.session_factory() as session:
                await session.execute(
                    text("""
                        UPDATE sagas
                        SET status = :status, order_id = :order_id, state = :state, updated_at = :updated_at
                        WHERE saga_id = :saga_id
                    """),
                    self._params(state),
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise DownstreamUnavailableError(f"Saga store unavailable: {e}", saga_id=state.saga_id) from e

    async def get(self, saga_id: str) -> SagaState | None:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    text("SELECT state FROM sagas WHERE saga_id = :saga_id"), {"saga_id": saga_id}
                )
                row = result.fetchone()
        except SQLAlchemyError as e:
            raise DownstreamUnavailableError(f"Saga store unavailable: {e}", saga_id=saga_id) from e
        return SagaState.model_validate_json(row.state) if row else None

    async def list_interventions(self) -> list[SagaState]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    text("SELECT state FROM sagas WHERE status = :status ORDER BY updated_at ASC"),
                    {"status": SagaStatus.REQUIRES_MANUAL_INTERVENTION.value},
                )
                rows = result.fetchall()
        except SQLAlchemyError as e:
            raise DownstreamUnavailableError(f"Saga store unavailable: {e}") from e
        return [SagaState.model_validate_json(row.state) for row in rows]

    @staticmethod
    def _params(state: SagaState) -> dict:
        return {
            "saga_id": state.saga_id,
            "customer_id": state.customer_id,
            "status": state.status.value,
            "order_id": state.order_id,
            "state": state.model_dump_json(by_alias=True),
            "created_at": isoformat(state.created_at),
            "updated_at": isoformat(state.updated_at or utcnow()),
        }
