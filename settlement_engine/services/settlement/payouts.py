"""
Payout arithmetic and trade classification.

Markets are binary and even-money: a winning stake returns 2x, and the
platform keeps 2.5% of that gross. Refunds return the stake with no fee.

    stake 100 -> gross 200 -> fee 5 -> net 195
"""
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Any, Dict, Iterable, List, Optional

PAYOUT_MULTIPLIER = Decimal("2")
PLATFORM_FEE_RATE = Decimal("0.025")

# Scale of the NUMERIC(18, 6) money columns
MONEY_QUANTUM = Decimal("0.000001")

CANCELLATION_OUTCOMES = frozenset({"CANCELED", "POSTPONED"})
OUTCOMES = frozenset({"HOME", "AWAY", "DRAW"}) | CANCELLATION_OUTCOMES
DEFAULT_OUTCOME = "CANCELED"


@dataclass(frozen=True)
class PayoutBreakdown:
    stake: Decimal
    gross: Decimal
    fee: Decimal
    net: Decimal


@dataclass
class Position:
    """
    One user's combined trade locks on a market.

    Receipts are unique per (market, user, type), so every stake a user holds
    on a market settles through a single payout or refund.
    """
    user_id: str
    currency: str
    stake: Decimal = Decimal("0")
    winning_stake: Decimal = Decimal("0")
    trade_ids: List[str] = field(default_factory=list)
    winning_trade_ids: List[str] = field(default_factory=list)

    @property
    def is_winner(self) -> bool:
        return bool(self.winning_trade_ids)


def to_money(value: Any) -> Decimal:
    """Coerce a stored amount (Decimal, int, float or str) to Decimal."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    # str() first so floats keep their printed value, not their binary one
    return Decimal(str(value))


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_EVEN)


def calculate_payout(stake: Any) -> PayoutBreakdown:
    """Gross, fee and net for a winning stake. Only net is rounded, to column scale."""
    stake = to_money(stake)
    gross = stake * PAYOUT_MULTIPLIER
    fee = gross * PLATFORM_FEE_RATE
    net = quantize_money(gross - fee)
    return PayoutBreakdown(stake=stake, gross=gross, fee=fee, net=net)


def normalize_outcome(outcome: Optional[str]) -> str:
    """Upper-cased outcome; missing or blank means the game was canceled."""
    if outcome is None or not str(outcome).strip():
        return DEFAULT_OUTCOME
    return str(outcome).strip().upper()


def is_valid_outcome(outcome: Optional[str]) -> bool:
    """Whether an explicitly supplied outcome names a known result."""
    if outcome is None or not str(outcome).strip():
        return False
    return normalize_outcome(outcome) in OUTCOMES


def is_cancellation(outcome: str) -> bool:
    return normalize_outcome(outcome) in CANCELLATION_OUTCOMES


def trade_side(entry) -> Optional[str]:
    """Side recorded on a trade_lock entry (``meta.side``, else ``meta.position``)."""
    meta = entry.meta or {}
    side = meta.get("side") or meta.get("position")
    if side is None:
        return None
    return str(side).strip().upper()


def is_winning_trade(entry, outcome: str) -> bool:
    side = trade_side(entry)
    return side is not None and side == normalize_outcome(outcome)


def group_positions(entries: Iterable, outcome: str, default_currency: str = "USDC") -> List[Position]:
    """Combine trade_lock entries per user, keeping first-seen order."""
    positions: Dict[str, Position] = {}
    for entry in entries:
        position = positions.get(entry.user_id)
        if position is None:
            position = Position(user_id=entry.user_id, currency=entry.currency or default_currency)
            positions[entry.user_id] = position

        amount = to_money(entry.amount)
        position.stake += amount
        position.trade_ids.append(entry.id)
        if is_winning_trade(entry, outcome):
            position.winning_stake += amount
            position.winning_trade_ids.append(entry.id)
    return list(positions.values())
