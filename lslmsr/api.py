"""
FastAPI application. HTTP API for LS-LMSR markets.

Public endpoints: health, markets, market detail, price quotes, trades,
account balances.
Trader endpoints (account API key): approve collateral, buy. A key only
acts for its own account.
Admin endpoints (admin key): issue account keys, mint collateral, create
market, resolve, withdraw. Admin acts on behalf of the market owner.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from lslmsr import fixed_point as fp
from lslmsr.api_errors import (
    APIError, ENGINE_ERRORS, api_error_handler, translate_engine_error,
)
from lslmsr.api_models import (
    AccountResponse, PositionEntry, ApproveRequest, ApproveResponse,
    MarketSummary, MarketDetail, QuoteResponse, TradeResponse,
    BuyRequest,
    IssueKeyRequest, IssueKeyResponse,
    MintRequest, MintResponse,
    CreateMarketRequest, CreateMarketResponse,
    ResolveRequest, ResolveResponse, WithdrawResponse,
    HealthResponse,
)
from lslmsr.auth import AuthStore
from lslmsr.ledgers import CollateralToken
from lslmsr.market_engine import LsLMSRMarket, MarketEngine
from lslmsr.middleware import AdminDep, AuthUser
from lslmsr.models import OutcomeMask, Trade, reset_counters
from lslmsr.persistence import save_snapshot, load_snapshot


STATE_PATH = os.environ.get("LSLMSR_STATE", "./lslmsr_state.json")
COLLATERAL_DECIMALS = int(os.environ.get("LSLMSR_COLLATERAL_DECIMALS", "18"))
LOG_LEVEL = os.environ.get("LSLMSR_LOG_LEVEL", "INFO")

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Load state
    if os.path.exists(STATE_PATH):
        engine, auth_store = load_snapshot(STATE_PATH)
    else:
        reset_counters()
        engine = MarketEngine(CollateralToken(decimals=COLLATERAL_DECIMALS))
        auth_store = AuthStore()
        logger.info("starting with empty state (%d collateral decimals)",
                    COLLATERAL_DECIMALS)

    app.state.engine = engine
    app.state.auth_store = auth_store
    app.state.lock = asyncio.Lock()
    yield


app = FastAPI(title="LS-LMSR API", version="0.1.0", lifespan=lifespan)
app.add_exception_handler(APIError, api_error_handler)


def _save():
    """Save state to disk. Called after every mutation."""
    save_snapshot(app.state.engine, STATE_PATH, app.state.auth_store)


def _parse_units(value: str, name: str, allow_zero: bool = False) -> int:
    """Positive (or, with allow_zero, non-negative) amount in collateral
    units."""
    try:
        amount = int(value)
    except ValueError:
        raise APIError(400, "invalid_amount", f"Invalid {name}: {value}")
    if amount < 0 or (amount == 0 and not allow_zero):
        wanted = "non-negative" if allow_zero else "positive"
        raise APIError(400, "invalid_amount", f"{name} must be {wanted}")
    return amount


def _get_market(market_id: int) -> LsLMSRMarket:
    try:
        return app.state.engine.get_market(market_id)
    except ENGINE_ERRORS as e:
        raise translate_engine_error(e)


def _dec(x: int) -> str:
    return str(fp.to_decimal(x))


def _summary_fields(m: LsLMSRMarket) -> dict:
    state = m.snapshot()
    return dict(
        market_id=m.id,
        question=m.question,
        outcomes=m.outcomes,
        num_outcomes=state.num_outcomes,
        initialized=state.initialized,
        resolved=state.resolved,
        cost=_dec(m.cost()),
        b=_dec(state.b),
        prices=[_dec(p) for p in m.prices()],
        num_trades=len(m.trades),
        created_at=m.created_at,
    )


def _trade_response(t: Trade) -> TradeResponse:
    return TradeResponse(
        trade_id=t.id,
        market_id=t.market_id,
        buyer=t.buyer,
        outcome_mask=t.outcome_mask,
        amount=str(t.amount),
        price=_dec(t.price),
        collateral=str(t.collateral),
        created_at=t.created_at,
    )


# ---------------------------------------------------------------------------
# Health (public)
# ---------------------------------------------------------------------------

@app.get("/v1/health")
async def health() -> HealthResponse:
    engine = app.state.engine
    return HealthResponse(
        status="ok",
        markets=len(engine.markets),
        accounts=len(engine.collateral.balances),
    )


# ---------------------------------------------------------------------------
# Public market data
# ---------------------------------------------------------------------------

@app.get("/v1/markets")
async def list_markets(resolved: bool | None = None) -> list[MarketSummary]:
    """List all markets. Optional filter on resolution status."""
    result = []
    for m in app.state.engine.markets.values():
        if resolved is not None and m.resolved != resolved:
            continue
        result.append(MarketSummary(**_summary_fields(m)))
    return result


@app.get("/v1/markets/{market_id}")
async def get_market(market_id: int) -> MarketDetail:
    """Get full market detail including LS-LMSR state."""
    m = _get_market(market_id)
    state = m.snapshot()
    return MarketDetail(
        **_summary_fields(m),
        address=m.address,
        owner=m.owner,
        oracle=state.oracle,
        question_id=m.question_id,
        condition_id=m.condition_id,
        q=[_dec(v) for v in state.q],
        alpha=_dec(state.alpha),
        total_shares=_dec(state.total_shares),
        resolved_at=m.resolved_at,
    )


@app.get("/v1/markets/{market_id}/price")
async def get_price(market_id: int, outcome_mask: int,
                    amount: str) -> QuoteResponse:
    """Quote a purchase without executing it."""
    m = _get_market(market_id)
    units = _parse_units(amount, "amount")
    try:
        price = m.price(OutcomeMask(outcome_mask), units)
        collateral = m.to_token_units(price, round_up=True)
    except ENGINE_ERRORS as e:
        raise translate_engine_error(e)
    return QuoteResponse(
        market_id=market_id,
        outcome_mask=outcome_mask,
        amount=str(units),
        price=_dec(price),
        collateral=str(collateral),
    )


@app.get("/v1/markets/{market_id}/trades")
async def get_market_trades(market_id: int) -> list[TradeResponse]:
    m = _get_market(market_id)
    return [_trade_response(t) for t in m.trades]


@app.get("/v1/accounts/{account}")
async def get_account(account: str) -> AccountResponse:
    """Collateral balance and non-zero outcome positions."""
    engine = app.state.engine
    positions = []
    for m in engine.markets.values():
        if m.condition_id is None:
            continue
        masks = {OutcomeMask(1 << i) for i in range(m.num_outcomes)}
        masks.update(OutcomeMask(t.outcome_mask) for t in m.trades)
        for mask in sorted(masks, key=int):
            position_id = m.position_id(mask)
            held = engine.positions.balance_of(account, position_id)
            if held > 0:
                positions.append(PositionEntry(
                    market_id=m.id,
                    outcome_mask=int(mask),
                    position_id=position_id,
                    amount=str(held),
                ))
    return AccountResponse(
        account=account,
        balance=str(engine.collateral.balance_of(account)),
        positions=positions,
    )


# ---------------------------------------------------------------------------
# Trader endpoints
# ---------------------------------------------------------------------------

@app.post("/v1/accounts/{account}/approve")
async def approve(account: str, req: ApproveRequest,
                  user: AuthUser) -> ApproveResponse:
    """Let a market (or the engine, for subsidies) pull collateral. An
    amount of 0 revokes the allowance."""
    if user.account != account:
        raise APIError(403, "forbidden",
                       f"API key does not belong to account {account}")
    if req.market_id is not None:
        spender = _get_market(req.market_id).address
    elif req.spender:
        spender = req.spender
    else:
        raise APIError(400, "invalid_request",
                       "Provide either 'market_id' or 'spender'")
    amount = _parse_units(req.amount, "amount", allow_zero=True)

    async with app.state.lock:
        collateral = app.state.engine.collateral
        collateral.approve(account, spender, amount)
        _save()

    return ApproveResponse(
        account=account,
        spender=spender,
        allowance=str(collateral.allowance(account, spender)),
    )


@app.post("/v1/markets/{market_id}/buy")
async def buy(market_id: int, req: BuyRequest,
              user: AuthUser) -> TradeResponse:
    """Buy outcome tokens for every outcome in the mask, paid from the
    authenticated account."""
    amount = _parse_units(req.amount, "amount")

    async with app.state.lock:
        m = _get_market(market_id)
        try:
            trade = m.buy(user.account, OutcomeMask(req.outcome_mask), amount)
            _save()
        except ENGINE_ERRORS as e:
            raise translate_engine_error(e)

    return _trade_response(trade)


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------

@app.post("/v1/admin/accounts")
async def admin_issue_key(req: IssueKeyRequest,
                          _: AdminDep) -> IssueKeyResponse:
    """Issue (or rotate) the API key for an account. The raw key is only
    returned here."""
    async with app.state.lock:
        user, raw_key = app.state.auth_store.issue_key(req.account)
        _save()
    logger.info("issued API key for %s", user.account)
    return IssueKeyResponse(account=user.account, api_key=raw_key)


@app.post("/v1/admin/mint")
async def admin_mint(req: MintRequest, _: AdminDep) -> MintResponse:
    """Mint collateral to an account."""
    amount = _parse_units(req.amount, "amount")

    async with app.state.lock:
        collateral = app.state.engine.collateral
        collateral.mint(req.account, amount)
        _save()

    return MintResponse(account=req.account,
                        balance=str(collateral.balance_of(req.account)))


@app.post("/v1/admin/markets")
async def admin_create_market(req: CreateMarketRequest,
                              _: AdminDep) -> CreateMarketResponse:
    """Create and set up a market. The creator must have approved the
    engine for the subsidy."""
    subsidy = _parse_units(req.subsidy, "subsidy")

    async with app.state.lock:
        try:
            market = app.state.engine.create_market(
                creator=req.creator,
                oracle=req.oracle,
                question=req.question,
                outcomes=req.outcomes,
                subsidy=subsidy,
                overround_bips=req.overround_bips,
                question_id=req.question_id,
            )
        except ENGINE_ERRORS as e:
            raise translate_engine_error(e)
        _save()

    return CreateMarketResponse(
        market_id=market.id,
        address=market.address,
        condition_id=market.condition_id,
        cost=_dec(market.cost()),
        b=_dec(market.state.b),
    )


@app.post("/v1/admin/markets/{market_id}/resolve")
async def admin_resolve(market_id: int, req: ResolveRequest,
                        _: AdminDep) -> ResolveResponse:
    """Report payouts for a market on behalf of its owner."""
    async with app.state.lock:
        m = _get_market(market_id)
        try:
            m.resolve_market(m.owner, req.payouts)
            _save()
        except ENGINE_ERRORS as e:
            raise translate_engine_error(e)

    return ResolveResponse(market_id=market_id, payouts=req.payouts)


@app.post("/v1/admin/markets/{market_id}/withdraw")
async def admin_withdraw(market_id: int, _: AdminDep) -> WithdrawResponse:
    """Settle a resolved market and send its collateral to the owner."""
    async with app.state.lock:
        m = _get_market(market_id)
        try:
            amount = m.withdraw(m.owner)
            _save()
        except ENGINE_ERRORS as e:
            raise translate_engine_error(e)

    return WithdrawResponse(market_id=market_id, owner=m.owner,
                            amount=str(amount))
