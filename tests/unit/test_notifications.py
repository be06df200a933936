"""
Tests for notification triggers and message rendering.
"""
from datetime import datetime, timezone

import pytest

from dlmm_monitor.domain.models import FetchedStatus, LastStatus
from dlmm_monitor.reconciliation.notifications import (
    DETAILS_BUTTON_TEXT,
    IN_RANGE_SECTION,
    NEW_POSITION_SECTION,
    OUT_OF_RANGE_SECTION,
    RANGE_DRIFT_SECTION,
    TriggerResult,
    details_button,
    evaluate_triggers,
    render_message,
)
from tests.fakes import make_record

NOW = datetime(2025, 3, 22, 12, 0, 0, tzinfo=timezone.utc)


def _status(bin_in_range=True, active_bin=150, **overrides):
    values = dict(
        active_bin=active_bin,
        bin_in_range=bin_in_range,
        current_price=1.23456,
        timestamp=NOW,
        current_lower_price=1.2,
        current_upper_price=1.3,
    )
    values.update(overrides)
    return FetchedStatus(**values)


def _previous(bin_in_range=True, on_chain=None):
    return LastStatus(active_bin=150, current_price=1.2, bin_in_range=bin_in_range, timestamp=NOW, on_chain=on_chain)


class TestEvaluateTriggers:

    def test_first_check_always_fires(self, make_position):
        triggers = evaluate_triggers(make_position(), _status(bin_in_range=False))

        assert triggers.first_check is True
        assert triggers.range_flip is None
        assert triggers.should_notify is True
        assert triggers.sections() == [NEW_POSITION_SECTION]

    def test_unchanged_state_does_not_fire(self, make_position):
        position = make_position(last_status=_previous(bin_in_range=True))

        triggers = evaluate_triggers(position, _status(bin_in_range=True))

        assert triggers == TriggerResult()
        assert triggers.should_notify is False
        assert triggers.sections() == []

    @pytest.mark.parametrize("before,after,section", [
        (True, False, OUT_OF_RANGE_SECTION),
        (False, True, IN_RANGE_SECTION),
    ])
    def test_range_flip(self, make_position, before, after, section):
        position = make_position(last_status=_previous(bin_in_range=before))

        triggers = evaluate_triggers(position, _status(bin_in_range=after))

        assert triggers.range_flip is after
        assert triggers.sections() == [section]

    def test_range_drift(self, make_position):
        position = make_position(last_status=_previous())

        triggers = evaluate_triggers(position, _status(price_range_changed=True))

        assert triggers.range_drift is True
        assert triggers.sections() == [RANGE_DRIFT_SECTION]

    def test_on_chain_changes_listed(self, make_position):
        before = make_record().to_snapshot()
        after = make_record(total_x_amount=5, total_claimed_fee_y=9, reward_one=1).to_snapshot()
        position = make_position(last_status=_previous(on_chain=before))

        triggers = evaluate_triggers(position, _status(on_chain=after))

        assert triggers.on_chain_changes == ("liquidity", "claimed fees", "rewards")
        assert triggers.sections() == ["ℹ️ *On-chain updates detected*: liquidity, claimed fees, rewards"]

    def test_on_chain_needs_both_snapshots(self, make_position):
        position = make_position(last_status=_previous(on_chain=make_record().to_snapshot()))

        triggers = evaluate_triggers(position, _status(on_chain=None))

        assert triggers.on_chain_changes == ()

    def test_triggers_combine_in_order(self, make_position):
        position = make_position(last_status=_previous(bin_in_range=True, on_chain=make_record().to_snapshot()))

        triggers = evaluate_triggers(
            position,
            _status(bin_in_range=False, price_range_changed=True, on_chain=make_record(fee_x=99).to_snapshot()),
        )

        assert triggers.sections() == [
            RANGE_DRIFT_SECTION,
            OUT_OF_RANGE_SECTION,
            "ℹ️ *On-chain updates detected*: pending fees",
        ]


class TestRenderMessage:

    def test_summary_lines(self, make_position):
        position = make_position(id="abc", lower_price_limit=1.1, upper_price_limit=1.4)

        text = render_message(position, _status(), TriggerResult(first_check=True))

        assert text.startswith("📊 *Position Update* #abc\n")
        assert "*Pair*: SOL/USDC" in text
        assert "*Current Price*: 1.2346 USDC/SOL" in text
        assert "*Your Price Range*: 1.1000 - 1.4000" in text
        assert "*Current Market Range*: 1.2000 - 1.3000" in text
        assert "*In Range*: ✅" in text
        assert text.rstrip().endswith(NEW_POSITION_SECTION)

    def test_market_range_omitted_when_unknown(self, make_position):
        text = render_message(
            make_position(),
            _status(bin_in_range=False, current_lower_price=None, current_upper_price=None),
            TriggerResult(range_flip=False),
        )

        assert "Current Market Range" not in text
        assert "*In Range*: ❌" in text
        assert OUT_OF_RANGE_SECTION in text

    def test_on_chain_details(self, make_position):
        snapshot = make_record(
            total_x_amount=2**80, total_y_amount=0, fee_x=3, reward_one=4, last_updated_at=0
        ).to_snapshot()

        text = render_message(make_position(), _status(on_chain=snapshot), TriggerResult(first_check=True))

        assert "*Current Liquidity*:" in text
        assert f"SOL: {2**80}" in text
        assert "Pending SOL: 3" in text
        assert "Total Claimed USDC: 0" in text
        assert "Reward One: 4" in text
        # Zero timestamp means unknown
        assert "Last Updated" not in text

    def test_last_updated_is_utc(self, make_position):
        snapshot = make_record(last_updated_at=1742644800).to_snapshot()

        text = render_message(make_position(), _status(on_chain=snapshot), TriggerResult(first_check=True))

        assert "*Last Updated*: 2025-03-22 12:00:00 UTC" in text

    def test_rewards_hidden_when_zero(self, make_position):
        snapshot = make_record().to_snapshot()

        text = render_message(make_position(), _status(on_chain=snapshot), TriggerResult(first_check=True))

        assert "*Rewards*" not in text
        assert "*Fees*:" in text


def test_details_button():
    options = details_button("p-1")

    [[button]] = options["reply_markup"]["inline_keyboard"]
    assert button == {"text": DETAILS_BUTTON_TEXT, "callback_data": "position_p-1"}
