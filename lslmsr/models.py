"""
Data models for the LS-LMSR market maker.

Two separate domains:
- Market side: MarketState (the per-market ledger of LS-LMSR quantities)
  and the Trade records the lifecycle produces.
- Ledger side: collateral balances and outcome positions live in the
  ledgers module. Markets refer to them by identifier only.

All LS-LMSR quantities (q, b, alpha, cost, prices) are raw 64.64
fixed-point ints. Collateral and position amounts are plain integers in
the collateral token's smallest unit.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, Optional


# ---------------------------------------------------------------------------
# Sequential IDs
# ---------------------------------------------------------------------------

_counters: dict[str, int] = defaultdict(int)


def next_id(kind: str) -> int:
    """Sequential ID. Kinds: market, trade, transfer."""
    _counters[kind] += 1
    return _counters[kind]


def reset_counters() -> None:
    """Reset all counters. For testing."""
    _counters.clear()


def set_counter(kind: str, value: int) -> None:
    """Set a counter. For loading persisted state."""
    _counters[kind] = value


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Outcome selection
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OutcomeMask:
    """
    A set of outcome slots encoded as a bitmask. Bit i selects outcome i.

    This is the position ledger's index-set format, so it is kept as a
    bitmask rather than a list of indices. Wrapped so it can't be used as
    an array index by accident.
    """
    bits: int

    def __post_init__(self):
        if self.bits < 0:
            raise ValueError(f"outcome mask must be non-negative: {self.bits}")

    @staticmethod
    def of(*outcomes: int) -> "OutcomeMask":
        bits = 0
        for i in outcomes:
            bits |= 1 << i
        return OutcomeMask(bits)

    @staticmethod
    def full(num_outcomes: int) -> "OutcomeMask":
        return OutcomeMask((1 << num_outcomes) - 1)

    def __int__(self) -> int:
        return self.bits

    def __bool__(self) -> bool:
        return self.bits != 0

    def __contains__(self, outcome: int) -> bool:
        return bool(self.bits >> outcome & 1)

    def __iter__(self) -> Iterator[int]:
        """Selected outcome indices, ascending."""
        bits, i = self.bits, 0
        while bits:
            if bits & 1:
                yield i
            bits >>= 1
            i += 1

    def __len__(self) -> int:
        return bin(self.bits).count("1")

    def fits(self, num_outcomes: int) -> bool:
        return self.bits < (1 << num_outcomes)

    def partition(self, num_outcomes: int) -> list["OutcomeMask"]:
        """
        This mask plus every unselected outcome as a singleton.

        The position ledger only splits the full outcome set into a
        complete partition, so buying a mask also mints its complement
        as single-outcome "dust" positions.
        """
        parts = [self]
        for i in range(num_outcomes):
            if i not in self:
                parts.append(OutcomeMask(1 << i))
        return parts


# ---------------------------------------------------------------------------
# Market side
# ---------------------------------------------------------------------------

@dataclass
class MarketState:
    """
    The per-market LS-LMSR ledger. Owned by exactly one market instance.

    q: outstanding shares per outcome (64.64). Starts equal, only grows.
    alpha: sensitivity constant, fixed at setup.
    b: liquidity parameter, alpha * total_shares, recomputed on each trade.
    total_shares: sum of q.
    current_cost: cost(q, b) as of the last committed operation.

    Invariant while initialized: b > 0 and current_cost == cost(q, b).
    """
    num_outcomes: int = 0
    q: list[int] = field(default_factory=list)
    alpha: int = 0
    b: int = 0
    total_shares: int = 0
    current_cost: int = 0
    initialized: bool = False
    resolved: bool = False
    oracle: Optional[str] = None

    def copy(self) -> "MarketState":
        return MarketState(
            num_outcomes=self.num_outcomes,
            q=list(self.q),
            alpha=self.alpha,
            b=self.b,
            total_shares=self.total_shares,
            current_cost=self.current_cost,
            initialized=self.initialized,
            resolved=self.resolved,
            oracle=self.oracle,
        )


@dataclass
class Trade:
    """
    A single purchase from the market maker.

    amount: shares bought per selected outcome (collateral units)
    price: cost(after) - cost(before), 64.64
    collateral: what the buyer was charged (collateral units, rounded up)
    """
    id: int
    market_id: int
    buyer: str
    outcome_mask: int
    amount: int
    price: int
    collateral: int
    created_at: str = field(default_factory=_now)

    @staticmethod
    def new(market_id: int, buyer: str, outcome_mask: OutcomeMask,
            amount: int, price: int, collateral: int) -> "Trade":
        return Trade(
            id=next_id("trade"),
            market_id=market_id,
            buyer=buyer,
            outcome_mask=int(outcome_mask),
            amount=amount,
            price=price,
            collateral=collateral,
        )
