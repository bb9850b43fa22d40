"""
LS-LMSR (Liquidity-Sensitive Logarithmic Market Scoring Rule). Pure math, no state.

All functions take raw 64.64 fixed-point ints and return raw 64.64 ints.
The caller (market engine) handles locking, ledgers and persistence.

Notation:
    q: list of outstanding shares per outcome
    alpha: sensitivity constant, overround / (n * ln n)
    b: liquidity parameter, alpha * sum(q). Grows with volume, so prices
       move less as the market deepens.

Cost function:
    C(q) = b * ln(Σ e^(q_i / b))

Trading costs are always C(after) - C(before).
"""

from typing import Iterable, NamedTuple, Sequence

from lslmsr import fixed_point as fp
from lslmsr.fixed_point import ExpLog, ONE, PRECISE
from lslmsr.models import MarketState, OutcomeMask


BIPS = 10_000

# e^x for x below this is smaller than one unit of least precision
_NEGLIGIBLE = fp.from_int(-45)


class TradeResult(NamedTuple):
    q: list[int]
    b: int
    total_shares: int
    cost: int


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _normalized_exps(q: Sequence[int], b: int,
                     series: ExpLog) -> tuple[int, list[int]]:
    """
    (max(q), [e^((q_i - max) / b)]). Subtracting the max preserves the
    cost function and keeps every exponent <= 0, so exp never overflows.
    """
    m = max(q)
    exps = []
    for v in q:
        x = fp.div(fp.sub(v, m), b)
        exps.append(0 if x < _NEGLIGIBLE else series.exp(x))
    return m, exps


def _sum(values: Iterable[int]) -> int:
    total = 0
    for v in values:
        total = fp.add(total, v)
    return total


# ---------------------------------------------------------------------------
# Core functions
# ---------------------------------------------------------------------------

def cost(q: Sequence[int], b: int, series: ExpLog = PRECISE) -> int:
    """
    C(q) = b * ln(Σ e^(q_i / b))
         = max(q) + b * ln(Σ e^((q_i - max(q)) / b))
    """
    if not q:
        return 0
    m, exps = _normalized_exps(q, b, series)
    return fp.add(m, fp.mul(b, series.ln(_sum(exps))))


def apply_trade(q: Sequence[int], alpha: int, outcome_mask: OutcomeMask,
                amount: int, series: ExpLog = PRECISE) -> TradeResult:
    """
    Hypothetical state after buying `amount` of every outcome in the mask.
    Does not mutate q. Used for quoting and, by the lifecycle, to commit.
    """
    new_q = list(q)
    for i in outcome_mask:
        new_q[i] = fp.add(new_q[i], amount)
    total = _sum(new_q)
    b = fp.mul(alpha, total)
    return TradeResult(new_q, b, total, cost(new_q, b, series))


def cost_after_trade(q: Sequence[int], alpha: int, outcome_mask: OutcomeMask,
                     amount: int, series: ExpLog = PRECISE) -> int:
    """Cost function evaluated after a hypothetical purchase."""
    return apply_trade(q, alpha, outcome_mask, amount, series).cost


def quote_price(state: MarketState, outcome_mask: OutcomeMask, amount: int,
                series: ExpLog = PRECISE) -> int:
    """
    Collateral (64.64) required to buy `amount` of each outcome in the mask.

    price = C(q_after) - C(q_before). No side effects.
    """
    after = cost_after_trade(state.q, state.alpha, outcome_mask, amount,
                             series)
    return fp.sub(after, state.current_cost)


def prices(state: MarketState, series: ExpLog = PRECISE) -> list[int]:
    """
    Marginal price of each outcome: dC/dq_i.

    With w_i = e^(q_i/b) / Σ e^(q_j/b) and L = ln Σ e^(q_j/b):

        p_i = w_i + alpha * (L - Σ q_j w_j / b)

    Unlike plain LMSR these sum to more than 1. The excess is the
    overround, and it shrinks relative to volume as b grows.
    """
    if not state.initialized:
        return []
    b = state.b
    m, exps = _normalized_exps(state.q, b, series)
    total = _sum(exps)
    weights = [fp.div(e, total) for e in exps]
    weighted_q = _sum(fp.mul(qj, wj) for qj, wj in zip(state.q, weights))
    # L - Σ q_j w_j / b, with L = m / b + ln(total)
    spread = fp.add(fp.div(fp.sub(m, weighted_q), b), series.ln(total))
    base = fp.mul(state.alpha, spread)
    return [fp.add(w, base) for w in weights]


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------

def alpha_for(num_outcomes: int, overround_bips: int,
              series: ExpLog = PRECISE) -> int:
    """alpha = (overround_bips / 10000) / (n * ln n)"""
    n = fp.from_uint(num_outcomes)
    return fp.div(fp.divu(overround_bips, BIPS),
                  fp.mul(n, series.ln(n)))


def initial_shares(subsidy: int, overround_bips: int) -> int:
    """
    Opening shares per outcome so that C(q) == subsidy.

    With every q_i = s and b = s * n * alpha, C(q) = s + b * ln n
    = s * (1 + overround), hence s = subsidy / (1 + overround).
    """
    return fp.div(subsidy, fp.add(ONE, fp.divu(overround_bips, BIPS)))


def opening_state(num_outcomes: int, subsidy: int, overround_bips: int,
                  oracle: str, series: ExpLog = PRECISE) -> MarketState:
    """Initialized MarketState funded by `subsidy` (64.64)."""
    alpha = alpha_for(num_outcomes, overround_bips, series)
    s = initial_shares(subsidy, overround_bips)
    q = [s] * num_outcomes
    total = fp.mul(s, fp.from_uint(num_outcomes))
    b = fp.mul(total, alpha)
    return MarketState(
        num_outcomes=num_outcomes,
        q=q,
        alpha=alpha,
        b=b,
        total_shares=total,
        current_cost=cost(q, b, series),
        initialized=True,
        resolved=False,
        oracle=oracle,
    )
