"""
Ledgers. In-memory collateral token and conditional-token position ledger.

The market maker treats both as external collaborators and only calls
the narrow operations below. These implementations follow the contracts
of an ERC20-style collateral token and a conditional-tokens framework
closely enough to run, persist and test the lifecycle end to end.

Every balance mutation on the collateral token produces a Transfer in an
append-only journal. The position ledger holds the collateral backing
every outstanding position in its own collateral account.

Both ledgers support checkpoint()/commit()/rollback() so a caller can
make a sequence of ledger calls all-or-nothing. A checkpoint opens an
undo journal for the calling thread only: rollback reverses exactly the
mutations that thread made since the checkpoint, as balance deltas, and
leaves every other caller's changes alone.

Identities (holders, oracles, tokens) are plain strings.
"""

import dataclasses
import hashlib
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, Sequence

from lslmsr.models import OutcomeMask, _now, next_id


logger = logging.getLogger(__name__)

PARENT_COLLECTION = "0" * 64
MAX_ALLOWANCE = (1 << 256) - 1


class InsufficientBalance(Exception):
    pass


class LedgerError(Exception):
    pass


def _hash(*parts) -> str:
    return hashlib.sha256(
        "|".join(str(p) for p in parts).encode()).hexdigest()


class UndoJournal:
    """
    Per-thread undo log. begin() opens a scope and returns a mark;
    mutations record an undo callback while a scope is open. Nested
    scopes commit into their parent, so only the outermost commit
    forgets anything.
    """

    def __init__(self):
        self._local = threading.local()

    def _entries(self) -> list[Callable[[], None]]:
        if not hasattr(self._local, "entries"):
            self._local.entries = []
            self._local.depth = 0
        return self._local.entries

    def begin(self) -> int:
        entries = self._entries()
        self._local.depth += 1
        return len(entries)

    def record(self, undo: Callable[[], None]) -> None:
        entries = self._entries()
        if self._local.depth:
            entries.append(undo)

    def commit(self, mark: int) -> None:
        entries = self._entries()
        self._local.depth -= 1
        if self._local.depth == 0:
            entries.clear()

    def rollback(self, mark: int) -> None:
        entries = self._entries()
        while len(entries) > mark:
            entries.pop()()
        self._local.depth -= 1


# ---------------------------------------------------------------------------
# Collaborator contracts
# ---------------------------------------------------------------------------

class CollateralLedger(Protocol):
    address: str
    decimals: int

    def balance_of(self, holder: str) -> int: ...

    def transfer(self, sender: str, to: str, amount: int) -> None: ...

    def transfer_from(self, spender: str, owner: str, to: str,
                      amount: int) -> bool: ...

    def approve(self, owner: str, spender: str, amount: int) -> None: ...

    def allowance(self, owner: str, spender: str) -> int: ...

    def checkpoint(self) -> object: ...

    def commit(self, token: object) -> None: ...

    def rollback(self, token: object) -> None: ...


class PositionLedger(Protocol):
    address: str

    def prepare_condition(self, oracle: str, question_id: str,
                          outcome_slot_count: int) -> str: ...

    def get_condition_id(self, oracle: str, question_id: str,
                         outcome_slot_count: int) -> str: ...

    def get_collection_id(self, parent_collection_id: str,
                          condition_id: str,
                          index_set: OutcomeMask) -> str: ...

    def get_position_id(self, token: str, collection_id: str) -> str: ...

    def split_position(self, holder: str, token: str,
                       parent_collection_id: str, condition_id: str,
                       partition: Sequence[OutcomeMask],
                       amount: int) -> None: ...

    def report_payouts(self, reporter: str, condition_id: str,
                       payouts: Sequence[int]) -> None: ...

    def payout_denominator(self, condition_id: str) -> int: ...

    def redeem_positions(self, holder: str, token: str,
                         parent_collection_id: str, condition_id: str,
                         index_sets: Sequence[OutcomeMask]) -> int: ...

    def balance_of(self, holder: str, position_id: str) -> int: ...

    def safe_transfer_from(self, sender: str, to: str, position_id: str,
                           amount: int) -> None: ...

    def checkpoint(self) -> object: ...

    def commit(self, token: object) -> None: ...

    def rollback(self, token: object) -> None: ...


# ---------------------------------------------------------------------------
# Collateral token
# ---------------------------------------------------------------------------

@dataclass
class Transfer:
    """
    Append-only journal entry. Every collateral balance change gets one.

    sender is None for mints.
    """
    id: int
    sender: Optional[str]
    to: str
    amount: int
    reason: str
    created_at: str = field(default_factory=_now)

    @staticmethod
    def new(sender: Optional[str], to: str, amount: int,
            reason: str) -> "Transfer":
        return Transfer(id=next_id("transfer"), sender=sender, to=to,
                        amount=amount, reason=reason)


class CollateralToken:
    """Fungible collateral. Amounts are integers in the smallest unit."""

    def __init__(self, address: str = "collateral", decimals: int = 18):
        self.address = address
        self.decimals = decimals
        self.balances: dict[str, int] = {}
        self.allowances: dict[str, dict[str, int]] = {}
        self.transfers: list[Transfer] = []
        self._journal = UndoJournal()

    # ------------------------------------------------------------------
    # Minting
    # ------------------------------------------------------------------

    def mint(self, to: str, amount: int) -> Transfer:
        """Create collateral from nothing. The only way money enters."""
        if amount <= 0:
            raise ValueError(f"mint amount must be positive: {amount}")
        self._credit(to, amount)
        return self._log(Transfer.new(None, to, amount, "mint"))

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def balance_of(self, holder: str) -> int:
        return self.balances.get(holder, 0)

    def total_supply(self) -> int:
        return sum(self.balances.values())

    def transfer(self, sender: str, to: str, amount: int,
                 reason: str = "transfer") -> Transfer:
        """Move collateral. Raises InsufficientBalance."""
        if amount < 0:
            raise ValueError(f"transfer amount must be non-negative: {amount}")
        have = self.balance_of(sender)
        if have < amount:
            raise InsufficientBalance(
                f"{sender}: need {amount}, have {have}")
        self._credit(sender, -amount)
        self._credit(to, amount)
        return self._log(Transfer.new(sender, to, amount, reason))

    def transfer_from(self, spender: str, owner: str, to: str,
                      amount: int) -> bool:
        """
        Move collateral on the owner's behalf. Returns False, with no
        effect, if the allowance or the balance is short.
        """
        allowed = self.allowance(owner, spender)
        if allowed < amount or self.balance_of(owner) < amount:
            logger.warning("transfer_from rejected: %s -> %s, %d by %s",
                           owner, to, amount, spender)
            return False
        if allowed != MAX_ALLOWANCE:
            self._set_allowance(owner, spender, allowed - amount)
        self.transfer(owner, to, amount, reason=f"transfer_from:{spender}")
        return True

    def approve(self, owner: str, spender: str, amount: int) -> None:
        if amount < 0:
            raise ValueError(f"allowance must be non-negative: {amount}")
        self._set_allowance(owner, spender, amount)

    def allowance(self, owner: str, spender: str) -> int:
        return self.allowances.get(owner, {}).get(spender, 0)

    # ------------------------------------------------------------------
    # All-or-nothing support
    # ------------------------------------------------------------------

    def checkpoint(self) -> object:
        return self._journal.begin()

    def commit(self, token: object) -> None:
        self._journal.commit(token)

    def rollback(self, token: object) -> None:
        self._journal.rollback(token)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _adjust(self, holder: str, delta: int) -> None:
        self.balances[holder] = self.balances.get(holder, 0) + delta

    def _credit(self, holder: str, delta: int) -> None:
        self._adjust(holder, delta)
        self._journal.record(lambda: self._adjust(holder, -delta))

    def _log(self, tx: Transfer) -> Transfer:
        self.transfers.append(tx)
        self._journal.record(lambda: self.transfers.remove(tx))
        return tx

    def _set_allowance(self, owner: str, spender: str, amount: int) -> None:
        spenders = self.allowances.setdefault(owner, {})
        missing = spender not in spenders
        previous = spenders.get(spender, 0)
        spenders[spender] = amount

        def undo():
            if missing:
                self.allowances[owner].pop(spender, None)
            else:
                self.allowances[owner][spender] = previous
        self._journal.record(undo)


# ---------------------------------------------------------------------------
# Position ledger
# ---------------------------------------------------------------------------

@dataclass
class Condition:
    """
    A question awaiting resolution by an oracle.

    payout_denominator is 0 until payouts are reported.
    """
    condition_id: str
    oracle: str
    question_id: str
    outcome_slot_count: int
    payout_numerators: list[int] = field(default_factory=list)
    payout_denominator: int = 0


class ConditionalTokens:
    """
    Outcome positions for conditions, backed 1:1 by collateral.

    Positions are only created by splitting a complete partition of a
    condition's outcome slots: one unit of collateral (or of the parent
    position) becomes one unit of every position in the partition.
    Only the empty parent collection is backed by collateral here.
    """

    def __init__(self, collateral: CollateralToken,
                 address: str = "conditional-tokens"):
        self.collateral = collateral
        self.address = address
        self.conditions: dict[str, Condition] = {}
        # position_id -> holder -> amount
        self.balances: dict[str, dict[str, int]] = {}
        self._journal = UndoJournal()

    # ------------------------------------------------------------------
    # Identifiers
    # ------------------------------------------------------------------

    def get_condition_id(self, oracle: str, question_id: str,
                         outcome_slot_count: int) -> str:
        return _hash("condition", oracle, question_id, outcome_slot_count)

    def get_collection_id(self, parent_collection_id: str,
                          condition_id: str,
                          index_set: OutcomeMask) -> str:
        if parent_collection_id != PARENT_COLLECTION:
            raise LedgerError("nested collections are not supported")
        return _hash("collection", condition_id, int(index_set))

    def get_position_id(self, token: str, collection_id: str) -> str:
        return _hash("position", token, collection_id)

    def get_outcome_slot_count(self, condition_id: str) -> int:
        cond = self.conditions.get(condition_id)
        return cond.outcome_slot_count if cond else 0

    def payout_denominator(self, condition_id: str) -> int:
        cond = self.conditions.get(condition_id)
        return cond.payout_denominator if cond else 0

    # ------------------------------------------------------------------
    # Conditions
    # ------------------------------------------------------------------

    def prepare_condition(self, oracle: str, question_id: str,
                          outcome_slot_count: int) -> str:
        if outcome_slot_count < 2 or outcome_slot_count > 256:
            raise LedgerError(
                f"outcome slot count must be 2..256: {outcome_slot_count}")
        condition_id = self.get_condition_id(
            oracle, question_id, outcome_slot_count)
        if condition_id in self.conditions:
            raise LedgerError(f"condition {condition_id} already prepared")
        self.conditions[condition_id] = Condition(
            condition_id=condition_id,
            oracle=oracle,
            question_id=question_id,
            outcome_slot_count=outcome_slot_count,
        )
        self._journal.record(lambda: self.conditions.pop(condition_id))
        logger.info("prepared condition %s (%d outcomes, oracle %s)",
                    condition_id[:12], outcome_slot_count, oracle)
        return condition_id

    def report_payouts(self, reporter: str, condition_id: str,
                       payouts: Sequence[int]) -> None:
        """Only the oracle the condition was prepared with may report."""
        cond = self._get_condition(condition_id)
        if reporter != cond.oracle:
            raise LedgerError(
                f"{reporter} is not the oracle for condition {condition_id}")
        if cond.payout_denominator != 0:
            raise LedgerError(f"condition {condition_id} already resolved")
        if len(payouts) != cond.outcome_slot_count:
            raise LedgerError(
                f"expected {cond.outcome_slot_count} payouts, "
                f"got {len(payouts)}")
        if any(p < 0 for p in payouts):
            raise LedgerError("payouts must be non-negative")
        denominator = sum(payouts)
        if denominator == 0:
            raise LedgerError("payouts must not all be zero")
        self.conditions[condition_id] = dataclasses.replace(
            cond, payout_numerators=list(payouts),
            payout_denominator=denominator)
        self._journal.record(
            lambda: self.conditions.__setitem__(condition_id, cond))
        logger.info("condition %s resolved: %s",
                    condition_id[:12], list(payouts))

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def balance_of(self, holder: str, position_id: str) -> int:
        return self.balances.get(position_id, {}).get(holder, 0)

    def safe_transfer_from(self, sender: str, to: str, position_id: str,
                           amount: int) -> None:
        if amount == 0:
            return
        have = self.balance_of(sender, position_id)
        if have < amount:
            raise LedgerError(
                f"{sender}: need {amount} of position {position_id[:12]}, "
                f"have {have}")
        self._burn(sender, position_id, amount)
        self._mint(to, position_id, amount)

    def split_position(self, holder: str, token: str,
                       parent_collection_id: str, condition_id: str,
                       partition: Sequence[OutcomeMask],
                       amount: int) -> None:
        """
        Turn `amount` collateral into `amount` of each position in the
        partition. The partition must be disjoint, non-trivial and cover
        every outcome slot.
        """
        cond = self._get_condition(condition_id)
        if token != self.collateral.address:
            raise LedgerError(f"unknown collateral token {token}")
        if len(partition) < 2:
            raise LedgerError("partition must have at least two parts")
        if amount <= 0:
            raise LedgerError(f"split amount must be positive: {amount}")

        full = OutcomeMask.full(cond.outcome_slot_count)
        union = 0
        for part in partition:
            bits = int(part)
            if bits == 0 or not part.fits(cond.outcome_slot_count):
                raise LedgerError(f"invalid index set {bits}")
            if union & bits:
                raise LedgerError("partition not disjoint")
            union |= bits
        if union != int(full):
            raise LedgerError("partition must cover every outcome slot")

        if not self.collateral.transfer_from(
                self.address, holder, self.address, amount):
            raise LedgerError(
                f"{holder}: collateral transfer of {amount} failed")

        for part in partition:
            position_id = self.get_position_id(
                token, self.get_collection_id(
                    parent_collection_id, condition_id, part))
            self._mint(holder, position_id, amount)

    def redeem_positions(self, holder: str, token: str,
                         parent_collection_id: str, condition_id: str,
                         index_sets: Sequence[OutcomeMask]) -> int:
        """
        Burn the holder's positions in each index set and pay out their
        share of collateral. Returns the collateral paid.
        """
        cond = self._get_condition(condition_id)
        if cond.payout_denominator == 0:
            raise LedgerError(f"condition {condition_id} not resolved")

        payout = 0
        for index_set in index_sets:
            numerator = sum(cond.payout_numerators[i] for i in index_set
                            if i < cond.outcome_slot_count)
            position_id = self.get_position_id(
                token, self.get_collection_id(
                    parent_collection_id, condition_id, index_set))
            held = self.balance_of(holder, position_id)
            if held > 0:
                payout += held * numerator // cond.payout_denominator
                self._burn(holder, position_id, held)

        if payout > 0:
            self.collateral.transfer(self.address, holder, payout,
                                     reason="redeem")
        return payout

    # ------------------------------------------------------------------
    # All-or-nothing support
    # ------------------------------------------------------------------

    def checkpoint(self) -> object:
        return self._journal.begin()

    def commit(self, token: object) -> None:
        self._journal.commit(token)

    def rollback(self, token: object) -> None:
        self._journal.rollback(token)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _get_condition(self, condition_id: str) -> Condition:
        cond = self.conditions.get(condition_id)
        if cond is None:
            raise LedgerError(f"condition {condition_id} not prepared")
        return cond

    def _adjust(self, holder: str, position_id: str, delta: int) -> None:
        holders = self.balances.setdefault(position_id, {})
        holders[holder] = holders.get(holder, 0) + delta
        if holders[holder] == 0:
            del holders[holder]

    def _mint(self, holder: str, position_id: str, amount: int) -> None:
        self._adjust(holder, position_id, amount)
        self._journal.record(
            lambda: self._adjust(holder, position_id, -amount))

    def _burn(self, holder: str, position_id: str, amount: int) -> None:
        self._mint(holder, position_id, -amount)
