"""
Market engine. LS-LMSR market instances and the registry that creates them.

Each LsLMSRMarket owns exactly one MarketState and is the only component
that talks to the ledgers on its behalf:

    Uninitialized --setup--> Initialized --resolve_market--> Resolved

    buy:      Initialized only, rejected once payouts are reported
    withdraw: once the position ledger has payouts for the condition

All-or-nothing: an operation first computes its new MarketState (pure
LS-LMSR math, no side effects), then makes its ledger calls, then commits
the state. If anything raises, both ledgers are rolled back to their
checkpoint and the state is left as it was. Ledger calls never run while
the state is half-updated. Rollback only reverses the failing
operation's own ledger calls.

Concurrency: one lock per market serializes every mutation of that
market. Markets of one engine share its ledger lock, held from
checkpoint through commit or rollback, so their ledger calls never
interleave. Quotes copy the state under the market lock and price the
copy.

Precision model:
  - Shares, costs and prices are 64.64 fixed point (fixed_point module).
  - Collateral and position amounts are integers in the collateral
    token's smallest unit, converted with the token's `decimals`.
  - The collateral charged for a trade is rounded UP (favours the AMM).
"""

import logging
import secrets
import threading
from contextlib import contextmanager
from typing import Optional, Sequence

from lslmsr import fixed_point as fp
from lslmsr import lmsr
from lslmsr.fixed_point import ExpLog, PRECISE
from lslmsr.ledgers import (
    CollateralLedger, PositionLedger, CollateralToken, ConditionalTokens,
    PARENT_COLLECTION, MAX_ALLOWANCE,
)
from lslmsr.models import MarketState, OutcomeMask, Trade, _now, next_id


logger = logging.getLogger(__name__)

MAX_OUTCOMES = 256
ENGINE_ADDRESS = "market-engine"


class MarketError(Exception):
    pass


class MarketNotFound(MarketError):
    pass


class AlreadyInitialized(MarketError):
    pass


class NotInitialized(MarketError):
    pass


class InvalidOverround(MarketError):
    pass


class InsufficientFunding(MarketError):
    pass


class InvalidOutcome(MarketError):
    pass


class InvalidAmount(MarketError):
    pass


class MarketResolved(MarketError):
    pass


class AlreadyResolved(MarketError):
    pass


class InvalidPayoutLength(MarketError):
    pass


class NotResolved(MarketError):
    pass


class PaymentFailed(MarketError):
    pass


class Unauthorized(MarketError):
    pass


class LsLMSRMarket:

    def __init__(self, market_id: int, owner: str,
                 collateral: CollateralLedger, positions: PositionLedger,
                 series: ExpLog = PRECISE,
                 ledger_lock: Optional[threading.RLock] = None):
        self.id = market_id
        self.address = f"market:{market_id}"
        self.owner = owner
        self.collateral = collateral
        self.positions = positions
        self.series = series

        self.state = MarketState()
        self.question_id: Optional[str] = None
        self.condition_id: Optional[str] = None
        self.question = ""
        self.outcomes: list[str] = []
        self.trades: list[Trade] = []
        self.created_at = _now()
        self.resolved_at: Optional[str] = None

        self._lock = threading.RLock()
        self._ledger_lock = ledger_lock or threading.RLock()

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    @property
    def num_outcomes(self) -> int:
        return self.state.num_outcomes

    @property
    def initialized(self) -> bool:
        return self.state.initialized

    init = initialized

    @property
    def resolved(self) -> bool:
        return self.state.resolved

    @property
    def oracle(self) -> Optional[str]:
        return self.state.oracle

    @property
    def condition(self) -> Optional[str]:
        return self.condition_id

    def cost(self) -> int:
        """Cost function at the current q. Zero before setup."""
        with self._lock:
            if not self.state.initialized:
                return 0
            return self.state.current_cost

    def snapshot(self) -> MarketState:
        """A consistent copy of the market state."""
        with self._lock:
            return self.state.copy()

    def price(self, outcome_mask: OutcomeMask, amount: int) -> int:
        """Quote (64.64) for buying `amount` collateral units of each
        outcome in the mask. No side effects."""
        state = self.snapshot()
        if not state.initialized:
            raise NotInitialized(f"market {self.id} is not initialized")
        self._check_mask(outcome_mask, state.num_outcomes)
        if amount <= 0:
            raise InvalidAmount(f"amount must be positive: {amount}")
        return lmsr.quote_price(state, outcome_mask,
                                self.to_fixed_units(amount), self.series)

    def prices(self) -> list[int]:
        return lmsr.prices(self.snapshot(), self.series)

    def position_id(self, outcome_mask: OutcomeMask) -> str:
        if self.condition_id is None:
            raise NotInitialized(f"market {self.id} is not initialized")
        collection_id = self.positions.get_collection_id(
            PARENT_COLLECTION, self.condition_id, outcome_mask)
        return self.positions.get_position_id(
            self.collateral.address, collection_id)

    # ------------------------------------------------------------------
    # Unit conversion
    # ------------------------------------------------------------------

    def to_fixed_units(self, amount: int) -> int:
        """Collateral integer units to 64.64."""
        return fp.divu(amount, 10 ** self.collateral.decimals)

    def to_token_units(self, x: int, round_up: bool = False) -> int:
        """64.64 to collateral integer units (floor, or ceiling)."""
        scale = 10 ** self.collateral.decimals
        units = fp.mulu(x, scale)
        if round_up and (x * scale) & (fp.ONE - 1):
            units += 1
        return units

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def setup(self, oracle: str, question_id: str, num_outcomes: int,
              subsidy: int, overround_bips: int) -> None:
        """
        One-time initialization funded by a subsidy the market already
        holds. Opens every outcome at the same quantity, chosen so the
        cost function equals the subsidy.
        """
        with self._lock:
            if self.state.initialized:
                raise AlreadyInitialized(
                    f"market {self.id} is already initialized")
            if overround_bips <= 0:
                raise InvalidOverround(
                    f"overround must be positive: {overround_bips} bips")
            if num_outcomes < 2 or num_outcomes > MAX_OUTCOMES:
                raise InvalidOutcome(
                    f"outcome count must be 2..{MAX_OUTCOMES}: "
                    f"{num_outcomes}")
            if subsidy <= 0:
                raise InvalidAmount(f"subsidy must be positive: {subsidy}")
            held = self.collateral.balance_of(self.address)
            if held < subsidy:
                raise InsufficientFunding(
                    f"market {self.id}: subsidy {subsidy}, holds {held}")

            state = lmsr.opening_state(
                num_outcomes, self.to_fixed_units(subsidy),
                overround_bips, oracle, self.series)

            with self._atomic("setup"):
                condition_id = self.positions.prepare_condition(
                    oracle, question_id, num_outcomes)
                self.collateral.approve(
                    self.address, self.positions.address, MAX_ALLOWANCE)

            self.state = state
            self.question_id = question_id
            self.condition_id = condition_id
            logger.info(
                "market %d set up: %d outcomes, subsidy %d, overround %d bips,"
                " b=%s", self.id, num_outcomes, subsidy, overround_bips,
                fp.to_decimal(state.b))

    def buy(self, buyer: str, outcome_mask: OutcomeMask,
            amount: int) -> Trade:
        """
        Buy `amount` collateral units of every outcome in the mask.

        The buyer pays C(after) - C(before), rounded up, and receives the
        position for the mask. When the market doesn't already hold
        enough of that position it splits fresh collateral into the mask
        plus the singleton complement, keeping the complement.
        """
        with self._lock:
            state = self.state
            if not state.initialized:
                raise NotInitialized(f"market {self.id} is not initialized")
            if state.resolved or self.positions.payout_denominator(
                    self.condition_id) != 0:
                raise MarketResolved(f"market {self.id} is resolved")
            self._check_mask(outcome_mask, state.num_outcomes)
            if amount <= 0:
                raise InvalidAmount(f"amount must be positive: {amount}")

            result = lmsr.apply_trade(
                state.q, state.alpha, outcome_mask,
                self.to_fixed_units(amount), self.series)
            price = fp.sub(result.cost, state.current_cost)
            charge = self.to_token_units(price, round_up=True)
            position_id = self.position_id(outcome_mask)

            with self._atomic("buy"):
                if not self.collateral.transfer_from(
                        self.address, buyer, self.address, charge):
                    raise PaymentFailed(
                        f"{buyer}: could not collect {charge}")
                if self.positions.balance_of(
                        self.address, position_id) < amount:
                    self.positions.split_position(
                        self.address, self.collateral.address,
                        PARENT_COLLECTION, self.condition_id,
                        outcome_mask.partition(state.num_outcomes), amount)
                self.positions.safe_transfer_from(
                    self.address, buyer, position_id, amount)

            committed = state.copy()
            committed.q = result.q
            committed.b = result.b
            committed.total_shares = result.total_shares
            committed.current_cost = result.cost
            self.state = committed

            trade = Trade.new(self.id, buyer, outcome_mask, amount,
                              price, charge)
            self.trades.append(trade)
            logger.info("market %d: %s bought %d of mask %#x for %d",
                        self.id, buyer, amount, int(outcome_mask), charge)
            return trade

    def resolve_market(self, caller: str, payouts: Sequence[int]) -> None:
        """
        Relay the oracle's payout vector to the position ledger. The
        owner relays on the oracle's behalf; the ledger still checks
        the report against the oracle the condition was prepared with.
        """
        with self._lock:
            if caller != self.owner:
                raise Unauthorized(
                    f"{caller} is not the owner of market {self.id}")
            if not self.state.initialized:
                raise NotInitialized(f"market {self.id} is not initialized")
            if self.state.resolved or self.positions.payout_denominator(
                    self.condition_id) != 0:
                raise AlreadyResolved(f"market {self.id} is resolved")
            if len(payouts) != self.state.num_outcomes:
                raise InvalidPayoutLength(
                    f"expected {self.state.num_outcomes} payouts, "
                    f"got {len(payouts)}")

            with self._atomic("resolve"):
                self.positions.report_payouts(
                    self.state.oracle, self.condition_id, payouts)

            committed = self.state.copy()
            committed.resolved = True
            self.state = committed
            self.resolved_at = _now()
            logger.info("market %d resolved: %s", self.id, list(payouts))

    def withdraw(self, caller: str) -> int:
        """
        Redeem every single-outcome position the market holds and send
        all of its collateral to the caller. Returns the amount sent.
        """
        with self._lock:
            if caller != self.owner:
                raise Unauthorized(
                    f"{caller} is not the owner of market {self.id}")
            if (self.condition_id is None
                    or self.positions.payout_denominator(
                        self.condition_id) == 0):
                raise NotResolved(f"market {self.id} is not resolved")

            singletons = [OutcomeMask(1 << i)
                          for i in range(self.state.num_outcomes)]
            with self._atomic("withdraw"):
                self.positions.redeem_positions(
                    self.address, self.collateral.address,
                    PARENT_COLLECTION, self.condition_id, singletons)
                amount = self.collateral.balance_of(self.address)
                if amount > 0:
                    self.collateral.transfer(self.address, caller, amount,
                                             reason="withdraw")

            logger.info("market %d: %s withdrew %d", self.id, caller, amount)
            return amount

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _atomic(self, operation: str):
        """
        Hold the ledger lock and roll this operation's ledger calls back
        if the block raises.
        """
        with self._ledger_lock:
            collateral_cp = self.collateral.checkpoint()
            positions_cp = self.positions.checkpoint()
            try:
                yield
            except Exception as e:
                self.positions.rollback(positions_cp)
                self.collateral.rollback(collateral_cp)
                logger.warning("market %d: %s rolled back: %s",
                               self.id, operation, e)
                raise
            self.positions.commit(positions_cp)
            self.collateral.commit(collateral_cp)

    @staticmethod
    def _check_mask(outcome_mask: OutcomeMask, num_outcomes: int) -> None:
        if not outcome_mask:
            raise InvalidOutcome("outcome mask is empty")
        if not outcome_mask.fits(num_outcomes):
            raise InvalidOutcome(
                f"outcome mask {int(outcome_mask):#x} exceeds "
                f"{num_outcomes} outcomes")
        if outcome_mask == OutcomeMask.full(num_outcomes):
            raise InvalidOutcome("outcome mask selects every outcome")


class MarketEngine:
    """Registry of markets sharing one collateral token and position ledger."""

    def __init__(self, collateral: CollateralToken | None = None,
                 positions: ConditionalTokens | None = None,
                 series: ExpLog = PRECISE):
        self.collateral = collateral or CollateralToken()
        self.positions = positions or ConditionalTokens(self.collateral)
        self.series = series
        self.address = ENGINE_ADDRESS
        self.markets: dict[int, LsLMSRMarket] = {}
        self.ledger_lock = threading.RLock()

    def new_market(self, owner: str) -> LsLMSRMarket:
        """Register an uninitialized market."""
        market = LsLMSRMarket(next_id("market"), owner, self.collateral,
                              self.positions, self.series, self.ledger_lock)
        self.markets[market.id] = market
        return market

    def create_market(self, creator: str, oracle: str, question: str,
                      outcomes: list[str], subsidy: int,
                      overround_bips: int,
                      question_id: str | None = None) -> LsLMSRMarket:
        """
        Create and set up a market in one step.

        Pulls the subsidy from the creator (who must have approved this
        engine) into the new market, then runs setup. The creator owns
        the market. On failure nothing is registered and no collateral
        moves.
        """
        if len(outcomes) < 2:
            raise InvalidOutcome(
                f"a market needs at least two outcomes: {outcomes}")
        if subsidy <= 0:
            raise InvalidAmount(f"subsidy must be positive: {subsidy}")
        question_id = question_id or secrets.token_hex(32)
        market = LsLMSRMarket(next_id("market"), creator, self.collateral,
                              self.positions, self.series, self.ledger_lock)
        market.question = question
        market.outcomes = list(outcomes)

        with self.ledger_lock:
            cp = self.collateral.checkpoint()
            try:
                if not self.collateral.transfer_from(
                        self.address, creator, market.address, subsidy):
                    raise InsufficientFunding(
                        f"{creator}: could not collect subsidy {subsidy}")
                market.setup(oracle, question_id, len(outcomes), subsidy,
                             overround_bips)
            except Exception:
                self.collateral.rollback(cp)
                raise
            self.collateral.commit(cp)

        self.markets[market.id] = market
        logger.info("market %d created by %s: %r", market.id, creator,
                    question)
        return market

    def get_market(self, market_id: int) -> LsLMSRMarket:
        market = self.markets.get(market_id)
        if market is None:
            raise MarketNotFound(f"market {market_id} not found")
        return market
