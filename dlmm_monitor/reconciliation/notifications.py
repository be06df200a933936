"""
Notification triggers and message rendering for position updates.

Pure functions: given the position as it was before a check (its previous
``last_status``) and the freshly fetched status, decide which triggers fire
and render the Markdown message. No I/O happens here.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dlmm_monitor.domain.models import FetchedStatus, Position

NEW_POSITION_SECTION = "✅ *New position is now being monitored*"
RANGE_DRIFT_SECTION = "⚠️ *Price range has changed significantly*"
IN_RANGE_SECTION = "✅ *Position is now in range*"
OUT_OF_RANGE_SECTION = "⚠️ *Position is now out of range*"
ON_CHAIN_SECTION = "ℹ️ *On-chain updates detected*: {changes}"

DETAILS_BUTTON_TEXT = "View details"


@dataclass(frozen=True)
class TriggerResult:
    """Which triggers fired for one reconciliation."""
    first_check: bool = False
    range_drift: bool = False
    range_flip: Optional[bool] = None  # new bin_in_range value when it flipped
    on_chain_changes: tuple = ()

    @property
    def should_notify(self) -> bool:
        return self.first_check or self.range_drift or self.range_flip is not None or bool(self.on_chain_changes)

    def sections(self) -> List[str]:
        sections = []
        if self.first_check:
            sections.append(NEW_POSITION_SECTION)
        if self.range_drift:
            sections.append(RANGE_DRIFT_SECTION)
        if self.range_flip is not None:
            sections.append(IN_RANGE_SECTION if self.range_flip else OUT_OF_RANGE_SECTION)
        if self.on_chain_changes:
            sections.append(ON_CHAIN_SECTION.format(changes=", ".join(self.on_chain_changes)))
        return sections


def evaluate_triggers(position: Position, status: FetchedStatus) -> TriggerResult:
    """
    Evaluate every trigger independently.

    ``position.last_status`` must be the snapshot from before this check.
    """
    previous = position.last_status

    if previous is None:
        first_check = True
        range_flip = None
    else:
        first_check = False
        range_flip = status.bin_in_range if previous.bin_in_range != status.bin_in_range else None

    on_chain_changes: tuple = ()
    if previous is not None and previous.on_chain is not None and status.on_chain is not None:
        on_chain_changes = tuple(status.on_chain.changed_categories(previous.on_chain))

    return TriggerResult(
        first_check=first_check,
        range_drift=status.price_range_changed,
        range_flip=range_flip,
        on_chain_changes=on_chain_changes,
    )


def _format_price(value: float) -> str:
    return f"{value:.4f}"


def _format_unix(seconds: int) -> str:
    return datetime.fromtimestamp(seconds, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def render_message(position: Position, status: FetchedStatus, triggers: TriggerResult) -> str:
    """Render the Markdown update message: position summary, then one section per trigger."""
    pair = position.token_pair
    lines = [
        f"📊 *Position Update* #{position.id}",
        "",
        f"*Pair*: {pair.label}",
        f"*Current Price*: {_format_price(status.current_price)} {pair.token_b_symbol}/{pair.token_a_symbol}",
        f"*Your Price Range*: {_format_price(position.lower_price_limit)} - {_format_price(position.upper_price_limit)}",
    ]
    if status.current_lower_price and status.current_upper_price:
        lines.append(
            f"*Current Market Range*: {_format_price(status.current_lower_price)} - "
            f"{_format_price(status.current_upper_price)}"
        )
    lines.append(f"*In Range*: {'✅' if status.bin_in_range else '❌'}")
    lines.append("")

    on_chain = status.on_chain
    if on_chain is not None:
        if on_chain.liquidity_x or on_chain.liquidity_y:
            lines.append("*Current Liquidity*:")
            lines.append(f"{pair.token_a_symbol}: {on_chain.liquidity_x}")
            lines.append(f"{pair.token_b_symbol}: {on_chain.liquidity_y}")
            lines.append("")

        fees = on_chain.fees
        lines.append("*Fees*:")
        lines.append(f"Pending {pair.token_a_symbol}: {fees.pending_fees_x}")
        lines.append(f"Pending {pair.token_b_symbol}: {fees.pending_fees_y}")
        lines.append(f"Total Claimed {pair.token_a_symbol}: {fees.total_claimed_fees_x}")
        lines.append(f"Total Claimed {pair.token_b_symbol}: {fees.total_claimed_fees_y}")
        lines.append("")

        rewards = on_chain.rewards
        if rewards.reward_one or rewards.reward_two:
            lines.append("*Rewards*:")
            lines.append(f"Reward One: {rewards.reward_one}")
            lines.append(f"Reward Two: {rewards.reward_two}")
            lines.append("")

        if on_chain.last_updated_at:
            lines.append(f"*Last Updated*: {_format_unix(on_chain.last_updated_at)}")
            lines.append("")

    for section in triggers.sections():
        lines.append(section)
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"


def details_button(position_id: str) -> Dict[str, Any]:
    """Send options carrying an inline "View details" button."""
    return {
        "reply_markup": {
            "inline_keyboard": [
                [{"text": DETAILS_BUTTON_TEXT, "callback_data": f"position_{position_id}"}]
            ]
        }
    }
