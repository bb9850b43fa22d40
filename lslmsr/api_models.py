"""
Pydantic request/response models for the API.

Collateral and position amounts are integer strings in the collateral
token's smallest unit. LS-LMSR quantities (cost, b, prices, q) are
decimal strings rendered exactly from 64.64.
"""

from pydantic import BaseModel


# --- Accounts ---

class PositionEntry(BaseModel):
    market_id: int
    outcome_mask: int
    position_id: str
    amount: str

class AccountResponse(BaseModel):
    account: str
    balance: str
    positions: list[PositionEntry]

class ApproveRequest(BaseModel):
    amount: str
    spender: str | None = None
    market_id: int | None = None

class ApproveResponse(BaseModel):
    account: str
    spender: str
    allowance: str


# --- Markets ---

class MarketSummary(BaseModel):
    market_id: int
    question: str
    outcomes: list[str]
    num_outcomes: int
    initialized: bool
    resolved: bool
    cost: str
    b: str
    prices: list[str]
    num_trades: int
    created_at: str

class MarketDetail(MarketSummary):
    address: str
    owner: str
    oracle: str | None
    question_id: str | None
    condition_id: str | None
    q: list[str]
    alpha: str
    total_shares: str
    resolved_at: str | None

class QuoteResponse(BaseModel):
    market_id: int
    outcome_mask: int
    amount: str
    price: str
    collateral: str

class TradeResponse(BaseModel):
    trade_id: int
    market_id: int
    buyer: str
    outcome_mask: int
    amount: str
    price: str
    collateral: str
    created_at: str


# --- Trading ---

class BuyRequest(BaseModel):
    outcome_mask: int
    amount: str


# --- Admin ---

class IssueKeyRequest(BaseModel):
    account: str

class IssueKeyResponse(BaseModel):
    account: str
    api_key: str

class MintRequest(BaseModel):
    account: str
    amount: str

class MintResponse(BaseModel):
    account: str
    balance: str

class CreateMarketRequest(BaseModel):
    creator: str
    oracle: str
    question: str
    outcomes: list[str]
    subsidy: str
    overround_bips: int
    question_id: str | None = None

class CreateMarketResponse(BaseModel):
    market_id: int
    address: str
    condition_id: str
    cost: str
    b: str

class ResolveRequest(BaseModel):
    payouts: list[int]

class ResolveResponse(BaseModel):
    market_id: int
    payouts: list[int]

class WithdrawResponse(BaseModel):
    market_id: int
    owner: str
    amount: str

class HealthResponse(BaseModel):
    status: str
    markets: int
    accounts: int
