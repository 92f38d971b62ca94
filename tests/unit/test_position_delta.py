"""
Unit tests for per-symbol classification and exit-plan triggers.
"""
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from agent_mirror.domain.models import ExitPlan, LedgerEntry, Side
from agent_mirror.reconciliation.position_delta import (
    AGENT_CLOSED_REASON,
    DeltaAction,
    classify,
    exit_reason,
    should_exit_position,
)


def _entry(entry_id="12345", side=Side.BUY, quantity="0.1"):
    return LedgerEntry(
        entry_id=entry_id,
        symbol="BTC",
        agent="agent-a",
        timestamp=datetime.now(timezone.utc),
        side=side,
        quantity=Decimal(quantity),
        price=Decimal("50000"),
    )


class TestClassify:

    def test_new_position_enters(self, position_factory):
        delta = classify("BTC", position_factory(entry_id="1"), None)
        assert delta.action == DeltaAction.ENTER
        assert delta.reason == "New position (OID: 1)"

    def test_flat_without_history_holds(self, position_factory):
        assert classify("BTC", position_factory(quantity="0"), None).action == DeltaAction.HOLD

    def test_flat_with_history_exits(self, position_factory):
        delta = classify("BTC", position_factory(quantity="0"), _entry())
        assert delta.action == DeltaAction.EXIT
        assert delta.reason == AGENT_CLOSED_REASON

    def test_missing_from_snapshot_exits(self):
        assert classify("BTC", None, _entry()).action == DeltaAction.EXIT

    def test_new_entry_id_replaces(self, position_factory):
        delta = classify("BTC", position_factory(entry_id="99999"), _entry("12345"))
        assert delta.action == DeltaAction.REPLACE
        assert delta.reason == "Entry order changed (OID: 12345 -> 99999)"

    def test_same_entry_id_holds(self, position_factory):
        delta = classify("BTC", position_factory(entry_id="12345"), _entry("12345"))
        assert delta.action == DeltaAction.HOLD

    def test_to_dict(self, position_factory):
        data = classify("BTC", position_factory(entry_id="2"), _entry("1")).to_dict()
        assert data["action"] == "replace"
        assert data["last_known_side"] == "BUY"
        assert data["current_entry_id"] == "2"


class TestShouldExit:

    def test_long_take_profit_at_target(self, position_factory):
        """Price exactly at the profit target triggers."""
        position = position_factory(
            entry_price="44000",
            current_price="45000",
            exit_plan=ExitPlan(profit_target=Decimal("45000"), stop_loss=Decimal("43000")),
        )
        assert should_exit_position(position) is True
        assert exit_reason(position) == "Take profit at 45000"

    def test_long_stop_loss(self, position_factory):
        position = position_factory(
            current_price="42900",
            exit_plan=ExitPlan(profit_target=Decimal("45000"), stop_loss=Decimal("43000")),
        )
        assert should_exit_position(position) is True
        assert exit_reason(position) == "Stop loss at 43000"

    def test_long_between_levels(self, position_factory):
        position = position_factory(
            current_price="44000",
            exit_plan=ExitPlan(profit_target=Decimal("45000"), stop_loss=Decimal("43000")),
        )
        assert should_exit_position(position) is False

    def test_short_levels_are_mirrored(self, position_factory):
        plan = ExitPlan(profit_target=Decimal("2800"), stop_loss=Decimal("3200"))
        take = position_factory(symbol="ETH", quantity="-2", current_price="2750", exit_plan=plan)
        stop = position_factory(symbol="ETH", quantity="-2", current_price="3200.5", exit_plan=plan)
        hold = position_factory(symbol="ETH", quantity="-2", current_price="3000", exit_plan=plan)

        assert exit_reason(take) == "Take profit at 2800"
        assert exit_reason(stop) == "Stop loss at 3200"
        assert should_exit_position(hold) is False

    def test_decimal_levels_in_reason(self, position_factory):
        position = position_factory(
            symbol="DOGE",
            entry_price="0.18",
            current_price="0.2",
            exit_plan=ExitPlan(profit_target=Decimal("0.1950")),
        )
        assert exit_reason(position) == "Take profit at 0.195"

    @pytest.mark.parametrize("quantity,plan", [
        ("0", ExitPlan(profit_target=Decimal("1"))),
        ("0.1", None),
        ("0.1", ExitPlan()),
    ])
    def test_nothing_to_trigger(self, position_factory, quantity, plan):
        assert should_exit_position(position_factory(quantity=quantity, exit_plan=plan)) is False

    def test_none_position(self):
        assert should_exit_position(None) is False
