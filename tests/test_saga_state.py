"""
Tests for the saga state machine.
"""

import pytest

from retail_checkout.saga.state import SagaState, SagaStatus


class TestSagaStatus:
    def test_public_status(self):
        assert SagaStatus.COMPLETED.public_status == "Paid"
        assert SagaStatus.FAILED.public_status == "Failed"
        assert SagaStatus.REQUIRES_MANUAL_INTERVENTION.public_status == "Processing"
        assert SagaStatus.CHARGING_PAYMENT.public_status == "Processing"

    def test_only_pre_commit_steps_are_cancellable(self):
        cancellable = {s for s in SagaStatus if s.is_cancellable}
        assert cancellable == {SagaStatus.RESERVING_INVENTORY, SagaStatus.CHARGING_PAYMENT}


class TestSagaState:
    def test_happy_path_transitions(self):
        state = SagaState(saga_id="s-1", customer_id="alice")
        for status in (
            SagaStatus.RESERVING_INVENTORY,
            SagaStatus.CHARGING_PAYMENT,
            SagaStatus.COMMITTING_INVENTORY,
            SagaStatus.CREATING_ORDER,
            SagaStatus.CLEARING_CART,
            SagaStatus.COMPLETED,
        ):
            state.transition(status)
        assert state.status.is_terminal

    def test_no_compensation_after_order_creation_starts(self):
        state = SagaState(saga_id="s-1", customer_id="alice", status=SagaStatus.CREATING_ORDER)
        with pytest.raises(ValueError):
            state.transition(SagaStatus.COMPENSATING)

    def test_terminal_states_do_not_move(self):
        state = SagaState(saga_id="s-1", customer_id="alice", status=SagaStatus.FAILED)
        with pytest.raises(ValueError):
            state.transition(SagaStatus.RESERVING_INVENTORY)

    def test_history_is_numbered(self):
        state = SagaState(saga_id="s-1", customer_id="alice")
        state.record("GetCart", "EXECUTING")
        state.record("GetCart", "COMPLETED")

        assert [entry["step"] for entry in state.history] == [1, 2]
        assert state.history[0]["sagaStatus"] == "Started"

    def test_json_round_trip_through_aliases(self):
        state = SagaState(saga_id="s-1", customer_id="alice", reservation_ids=["r-1"])
        restored = SagaState.model_validate_json(state.model_dump_json(by_alias=True))
        assert restored == state
