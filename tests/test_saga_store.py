"""
Tests for saga record persistence.
"""

import pytest

from retail_checkout.errors import DownstreamUnavailableError
from retail_checkout.saga.state import SagaState, SagaStatus
from retail_checkout.saga.store import SagaStore


class TestSagaStore:
    @pytest.mark.asyncio
    async def test_second_claim_returns_the_stored_record(self, saga_store):
        _, created = await saga_store.claim(SagaState(saga_id="s-1", customer_id="alice"))
        assert created

        stored, created = await saga_store.claim(SagaState(saga_id="s-1", customer_id="bob"))

        assert not created
        assert stored.customer_id == "alice"

    @pytest.mark.asyncio
    async def test_only_escalated_sagas_are_listed(self, saga_store):
        for saga_id, status in (
            ("s-done", SagaStatus.COMPLETED),
            ("s-stuck", SagaStatus.REQUIRES_MANUAL_INTERVENTION),
        ):
            state, _ = await saga_store.claim(SagaState(saga_id=saga_id, customer_id="alice"))
            state.status = status
            state.intervention = {"sagaId": saga_id}
            await saga_store.save(state)

        (listed,) = await saga_store.list_interventions()

        assert listed.saga_id == "s-stuck"
        assert listed.intervention == {"sagaId": "s-stuck"}

    @pytest.mark.asyncio
    async def test_database_errors_surface_as_unavailable(self, sqlite):
        store = SagaStore(sqlite("no-schema"))

        with pytest.raises(DownstreamUnavailableError):
            await store.list_interventions()
        with pytest.raises(DownstreamUnavailableError):
            await store.get("s-1")
        with pytest.raises(DownstreamUnavailableError):
            await store.claim(SagaState(saga_id="s-1", customer_id="alice"))
