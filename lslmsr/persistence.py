"""
Persistence layer. JSON snapshot + atomic writes.

The snapshot contains the complete state of the engine:
  - collateral token: balances, allowances, transfer journal
  - position ledger: conditions, position balances
  - markets: MarketState, metadata, trades
  - the exp/ln series the engine prices with (its term count)
  - auth: account API key hashes
  - ID counters (so IDs resume correctly after restart)

Save after every complete market operation (create/buy/resolve/withdraw).
On startup, load the snapshot. No replay needed.

64.64 values are stored as raw integers, so a round trip is exact.

Atomic write: write to .tmp, then os.replace. A crash mid-write
leaves the previous snapshot intact.
"""

import dataclasses
import json
import logging
import os

from lslmsr.auth import AuthStore, User
from lslmsr.fixed_point import BinaryExpLog, ExpLog, PRECISE, SHORT_SERIES
from lslmsr.ledgers import (
    CollateralToken, ConditionalTokens, Condition, Transfer,
)
from lslmsr.market_engine import LsLMSRMarket, MarketEngine
from lslmsr.models import (
    MarketState, Trade, _counters, set_counter, reset_counters,
)


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def _serialize(obj):
    """Recursively serialize dataclasses to JSON-safe types."""
    if dataclasses.is_dataclass(obj):
        return {
            f.name: _serialize(getattr(obj, f.name))
            for f in dataclasses.fields(obj)
        }
    if isinstance(obj, list):
        return [_serialize(item) for item in obj]
    if isinstance(obj, dict):
        return {str(k): _serialize(v) for k, v in obj.items()}
    return obj


def _serialize_market(m: LsLMSRMarket) -> dict:
    return {
        "id": m.id,
        "owner": m.owner,
        "question": m.question,
        "outcomes": m.outcomes,
        "question_id": m.question_id,
        "condition_id": m.condition_id,
        "created_at": m.created_at,
        "resolved_at": m.resolved_at,
        "state": _serialize(m.state),
        "trades": [_serialize(t) for t in m.trades],
    }


# ---------------------------------------------------------------------------
# Deserialization helpers
# ---------------------------------------------------------------------------

def _load_collateral(d: dict) -> CollateralToken:
    token = CollateralToken(address=d["address"], decimals=d["decimals"])
    token.balances = {k: int(v) for k, v in d["balances"].items()}
    token.allowances = {
        owner: {spender: int(v) for spender, v in spenders.items()}
        for owner, spenders in d["allowances"].items()
    }
    token.transfers = [Transfer(**t) for t in d["transfers"]]
    return token


def _load_positions(d: dict, collateral: CollateralToken) -> ConditionalTokens:
    ledger = ConditionalTokens(collateral, address=d["address"])
    for cdata in d["conditions"]:
        cond = Condition(**cdata)
        ledger.conditions[cond.condition_id] = cond
    ledger.balances = {
        position_id: {holder: int(v) for holder, v in holders.items()}
        for position_id, holders in d["balances"].items()
    }
    return ledger


def _load_market(d: dict, engine: MarketEngine) -> LsLMSRMarket:
    market = LsLMSRMarket(d["id"], d["owner"], engine.collateral,
                          engine.positions, engine.series,
                          engine.ledger_lock)
    market.question = d["question"]
    market.outcomes = d["outcomes"]
    market.question_id = d.get("question_id")
    market.condition_id = d.get("condition_id")
    market.created_at = d["created_at"]
    market.resolved_at = d.get("resolved_at")
    market.state = MarketState(**d["state"])
    market.trades = [Trade(**t) for t in d["trades"]]
    return market


def _serialize_series(series: ExpLog) -> int:
    """The series is stored as its term count."""
    if not isinstance(series, BinaryExpLog):
        raise ValueError(f"cannot snapshot exp/ln series {series!r}")
    return series.terms


def _load_series(terms: int) -> ExpLog:
    for known in (PRECISE, SHORT_SERIES):
        if known.terms == terms:
            return known
    return BinaryExpLog(terms=terms)


def _serialize_auth(auth_store: AuthStore) -> dict:
    """Serialize auth store to JSON-safe dict."""
    return {"users": [_serialize(u) for u in auth_store.users.values()]}


def _load_auth(auth_data: dict) -> AuthStore:
    store = AuthStore()
    for udata in auth_data.get("users", []):
        store.add(User(**udata))
    return store


# ---------------------------------------------------------------------------
# Schema versioning
# ---------------------------------------------------------------------------

CURRENT_VERSION = 2


def _migrate_1_to_2(state: dict) -> dict:
    """Add the auth section and the series term count."""
    state["auth"] = {"users": []}
    state["series_terms"] = PRECISE.terms
    state["version"] = 2
    return state


_MIGRATIONS: dict[int, callable] = {1: _migrate_1_to_2}


def _apply_migrations(state: dict) -> dict:
    """Apply all needed migrations to bring state to CURRENT_VERSION."""
    version = state.get("version", 1)
    if version > CURRENT_VERSION:
        raise ValueError(
            f"snapshot version {version} is newer than {CURRENT_VERSION}")
    while version < CURRENT_VERSION:
        migrate = _MIGRATIONS.get(version)
        if migrate is None:
            raise ValueError(
                f"no migration from version {version} to {version + 1}")
        state = migrate(state)
        version = state["version"]
    return state


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def save_snapshot(engine: MarketEngine, path: str,
                  auth_store: AuthStore | None = None) -> None:
    """
    Save complete ledger + market + auth state to a JSON file.
    Atomic: writes to .tmp then renames.
    """
    collateral = engine.collateral
    positions = engine.positions
    state = {
        "version": CURRENT_VERSION,
        "counters": dict(_counters),
        "series_terms": _serialize_series(engine.series),
        "collateral": {
            "address": collateral.address,
            "decimals": collateral.decimals,
            "balances": collateral.balances,
            "allowances": collateral.allowances,
            "transfers": [_serialize(t) for t in collateral.transfers],
        },
        "positions": {
            "address": positions.address,
            "conditions": [_serialize(c)
                           for c in positions.conditions.values()],
            "balances": positions.balances,
        },
        "markets": [_serialize_market(m) for m in engine.markets.values()],
        "auth": _serialize_auth(auth_store) if auth_store else {"users": []},
    }
    tmp = path + ".tmp"
    with open(tmp, "w") as f:
        json.dump(state, f, indent=2)
    os.replace(tmp, path)
    logger.debug("snapshot saved to %s (%d markets)",
                 path, len(engine.markets))


def load_snapshot(path: str) -> tuple[MarketEngine, AuthStore]:
    """
    Load ledger + market + auth state from a JSON snapshot.
    Applies migrations automatically if the snapshot is an older version.
    Returns (market_engine, auth_store) ready to use.
    """
    with open(path) as f:
        state = json.load(f)

    state = _apply_migrations(state)

    # Restore ID counters
    reset_counters()
    for kind, value in state["counters"].items():
        set_counter(kind, value)

    collateral = _load_collateral(state["collateral"])
    positions = _load_positions(state["positions"], collateral)
    engine = MarketEngine(collateral, positions,
                          _load_series(state["series_terms"]))
    for mdata in state["markets"]:
        market = _load_market(mdata, engine)
        engine.markets[market.id] = market

    auth_store = _load_auth(state["auth"])

    logger.info("snapshot loaded from %s (%d markets, %d accounts with keys)",
                path, len(engine.markets), len(auth_store.users))
    return engine, auth_store
