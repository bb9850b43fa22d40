"""
API tests. Uses httpx AsyncClient with FastAPI's ASGI transport.

Covers:
- Public market data (no auth)
- Full trading lifecycle via HTTP
- Admin auth boundaries
- Account keys: a key only acts for its own account
- Error format and engine error translation
- Snapshot written after mutations
"""

import asyncio
import os
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

# Set admin key before importing app
os.environ["LSLMSR_ADMIN_KEY"] = "test-admin-key"
os.environ["LSLMSR_STATE"] = "/tmp/lslmsr_test_state.json"

from lslmsr.api import app, STATE_PATH
from lslmsr.auth import AuthStore
from lslmsr.ledgers import CollateralToken
from lslmsr.market_engine import ENGINE_ADDRESS, MarketEngine
from lslmsr.models import reset_counters


ADMIN_HEADERS = {"Authorization": "Bearer test-admin-key"}
UNIT = 10 ** 6
SUBSIDY = str(1000 * UNIT)


@pytest.fixture
async def client():
    """Fresh app state for each test."""
    reset_counters()
    app.state.engine = MarketEngine(CollateralToken(decimals=6))
    app.state.auth_store = AuthStore()
    app.state.lock = asyncio.Lock()

    try:
        os.remove(STATE_PATH)
    except FileNotFoundError:
        pass

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _mint(client, account, amount):
    resp = await client.post("/v1/admin/mint", headers=ADMIN_HEADERS,
                             json={"account": account, "amount": str(amount)})
    assert resp.status_code == 200
    return resp.json()


async def _key(client, account) -> dict:
    """Issue an API key for the account. Returns its auth headers."""
    resp = await client.post("/v1/admin/accounts", headers=ADMIN_HEADERS,
                             json={"account": account})
    assert resp.status_code == 200
    return {"Authorization": f"Bearer {resp.json()['api_key']}"}


async def _create_market(client, outcomes=("red", "green", "blue", "gold"),
                         bips=501) -> dict:
    """Helper: fund the creator and create a market. Returns the response."""
    await _mint(client, "creator", SUBSIDY)
    resp = await client.post("/v1/accounts/creator/approve",
                             headers=await _key(client, "creator"),
                             json={"spender": ENGINE_ADDRESS,
                                   "amount": SUBSIDY})
    assert resp.status_code == 200
    resp = await client.post("/v1/admin/markets", headers=ADMIN_HEADERS, json={
        "creator": "creator",
        "oracle": "oracle",
        "question": "Which colour?",
        "outcomes": list(outcomes),
        "subsidy": SUBSIDY,
        "overround_bips": bips,
    })
    assert resp.status_code == 200, resp.text
    return resp.json()


async def _trader(client, account, market_id, amount=100 * UNIT) -> dict:
    """Fund and key an account that has approved the market. Returns
    its auth headers."""
    await _mint(client, account, amount)
    headers = await _key(client, account)
    resp = await client.post(f"/v1/accounts/{account}/approve",
                             headers=headers,
                             json={"market_id": market_id,
                                   "amount": str(amount)})
    assert resp.status_code == 200
    return headers


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class TestHealth:
    async def test_health(self, client):
        resp = await client.get("/v1/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["markets"] == 0
        assert data["accounts"] == 0


# ---------------------------------------------------------------------------
# Admin auth
# ---------------------------------------------------------------------------

class TestAdminAuth:
    async def test_no_key(self, client):
        resp = await client.post("/v1/admin/mint",
                                 json={"account": "a", "amount": "1"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "auth_required"

    async def test_wrong_key(self, client):
        resp = await client.post("/v1/admin/mint",
                                 headers={"Authorization": "Bearer nope"},
                                 json={"account": "a", "amount": "1"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "admin_required"

    async def test_create_market_needs_admin(self, client):
        resp = await client.post("/v1/admin/markets", json={
            "creator": "c", "oracle": "o", "question": "q",
            "outcomes": ["a", "b"], "subsidy": "1", "overround_bips": 1,
        })
        assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Markets
# ---------------------------------------------------------------------------

class TestMarkets:
    async def test_create_market(self, client):
        data = await _create_market(client)
        assert data["market_id"] == 1
        assert data["address"] == "market:1"
        assert len(data["condition_id"]) == 64
        assert abs(Decimal(data["cost"]) - 1000) < Decimal("1e-6")
        assert Decimal(data["b"]) > 0

    async def test_create_without_approval(self, client):
        await _mint(client, "creator", SUBSIDY)
        resp = await client.post("/v1/admin/markets", headers=ADMIN_HEADERS,
                                 json={
            "creator": "creator", "oracle": "o", "question": "q",
            "outcomes": ["a", "b"], "subsidy": SUBSIDY, "overround_bips": 100,
        })
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "insufficient_funding"

    async def test_invalid_overround(self, client):
        await _mint(client, "creator", SUBSIDY)
        resp = await client.post("/v1/accounts/creator/approve",
                                 headers=await _key(client, "creator"),
                                 json={"spender": ENGINE_ADDRESS,
                                       "amount": SUBSIDY})
        assert resp.status_code == 200
        resp = await client.post("/v1/admin/markets", headers=ADMIN_HEADERS,
                                 json={
            "creator": "creator", "oracle": "o", "question": "q",
            "outcomes": ["a", "b"], "subsidy": SUBSIDY, "overround_bips": 0,
        })
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_overround"

        resp = await client.get("/v1/accounts/creator")
        assert resp.json()["balance"] == SUBSIDY

    async def test_list_and_detail(self, client):
        await _create_market(client)
        resp = await client.get("/v1/markets")
        assert resp.status_code == 200
        markets = resp.json()
        assert len(markets) == 1
        assert markets[0]["outcomes"] == ["red", "green", "blue", "gold"]

        resp = await client.get("/v1/markets/1")
        assert resp.status_code == 200
        detail = resp.json()
        assert detail["owner"] == "creator"
        assert detail["oracle"] == "oracle"
        assert len(detail["q"]) == 4
        assert len(set(detail["q"])) == 1
        total = sum(Decimal(p) for p in detail["prices"])
        assert abs(total - Decimal("1.0501")) < Decimal("1e-9")

    async def test_filter_resolved(self, client):
        await _create_market(client)
        resp = await client.get("/v1/markets", params={"resolved": "true"})
        assert resp.json() == []

    async def test_missing_market(self, client):
        resp = await client.get("/v1/markets/42")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "market_not_found"

    async def test_quote(self, client):
        await _create_market(client)
        resp = await client.get("/v1/markets/1/price",
                                params={"outcome_mask": 1,
                                        "amount": str(10 * UNIT)})
        assert resp.status_code == 200
        data = resp.json()
        assert 0 < Decimal(data["price"]) < 10
        assert int(data["collateral"]) > 0

    async def test_quote_invalid_mask(self, client):
        await _create_market(client)
        resp = await client.get("/v1/markets/1/price",
                                params={"outcome_mask": 0b1111,
                                        "amount": str(UNIT)})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_outcome"

    async def test_quote_invalid_amount(self, client):
        await _create_market(client)
        resp = await client.get("/v1/markets/1/price",
                                params={"outcome_mask": 1, "amount": "abc"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_amount"


# ---------------------------------------------------------------------------
# Account keys
# ---------------------------------------------------------------------------

class TestAccountAuth:
    async def test_buy_needs_a_key(self, client):
        await _create_market(client)
        await _trader(client, "alice", 1)
        resp = await client.post("/v1/markets/1/buy", json={
            "outcome_mask": 1, "amount": str(10 * UNIT),
        })
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "auth_required"

        resp = await client.get("/v1/accounts/alice")
        assert resp.json()["balance"] == str(100 * UNIT)

    async def test_buy_spends_only_the_key_holder(self, client):
        """Mallory's key buys from mallory's account, never alice's."""
        await _create_market(client)
        await _trader(client, "alice", 1)
        mallory = await _key(client, "mallory")
        resp = await client.post("/v1/markets/1/buy", headers=mallory,
                                 json={"account": "alice", "outcome_mask": 1,
                                       "amount": str(10 * UNIT)})
        assert resp.status_code == 402
        assert resp.json()["error"]["code"] == "payment_failed"

        resp = await client.get("/v1/accounts/alice")
        assert resp.json()["balance"] == str(100 * UNIT)
        assert resp.json()["positions"] == []

    async def test_approve_for_another_account(self, client):
        await _mint(client, "alice", 100 * UNIT)
        mallory = await _key(client, "mallory")
        resp = await client.post("/v1/accounts/alice/approve",
                                 headers=mallory,
                                 json={"spender": "mallory",
                                       "amount": str(100 * UNIT)})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"
        assert app.state.engine.collateral.allowance("alice", "mallory") == 0

    async def test_approve_without_key(self, client):
        resp = await client.post("/v1/accounts/alice/approve",
                                 json={"spender": "bob", "amount": "5"})
        assert resp.status_code == 401

    async def test_admin_key_is_not_an_account_key(self, client):
        resp = await client.post("/v1/accounts/alice/approve",
                                 headers=ADMIN_HEADERS,
                                 json={"spender": "bob", "amount": "5"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_api_key"

    async def test_rotated_key_stops_working(self, client):
        old = await _key(client, "alice")
        new = await _key(client, "alice")
        resp = await client.post("/v1/accounts/alice/approve", headers=old,
                                 json={"spender": "bob", "amount": "5"})
        assert resp.status_code == 401
        resp = await client.post("/v1/accounts/alice/approve", headers=new,
                                 json={"spender": "bob", "amount": "5"})
        assert resp.status_code == 200

    async def test_issue_key_needs_admin(self, client):
        resp = await client.post("/v1/admin/accounts",
                                 json={"account": "alice"})
        assert resp.status_code == 401

    async def test_approve_zero_revokes(self, client):
        await _create_market(client)
        alice = await _trader(client, "alice", 1)
        resp = await client.post("/v1/accounts/alice/approve", headers=alice,
                                 json={"market_id": 1, "amount": "0"})
        assert resp.status_code == 200
        assert resp.json()["allowance"] == "0"

        resp = await client.post("/v1/markets/1/buy", headers=alice, json={
            "outcome_mask": 1, "amount": str(UNIT),
        })
        assert resp.status_code == 402

    async def test_approve_negative_rejected(self, client):
        resp = await client.post("/v1/accounts/alice/approve",
                                 headers=await _key(client, "alice"),
                                 json={"spender": "bob", "amount": "-1"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_amount"


# ---------------------------------------------------------------------------
# Trading lifecycle
# ---------------------------------------------------------------------------

class TestTradingLifecycle:
    async def test_buy(self, client):
        await _create_market(client)
        alice = await _trader(client, "alice", 1)

        resp = await client.post("/v1/markets/1/buy", headers=alice, json={
            "outcome_mask": 1, "amount": str(10 * UNIT),
        })
        assert resp.status_code == 200, resp.text
        trade = resp.json()
        charged = int(trade["collateral"])
        assert trade["buyer"] == "alice"
        assert charged > 0

        resp = await client.get("/v1/accounts/alice")
        account = resp.json()
        assert int(account["balance"]) == 100 * UNIT - charged
        assert len(account["positions"]) == 1
        assert account["positions"][0]["outcome_mask"] == 1
        assert account["positions"][0]["amount"] == str(10 * UNIT)

        resp = await client.get("/v1/markets/1/trades")
        assert [t["trade_id"] for t in resp.json()] == [trade["trade_id"]]

    async def test_buy_without_approval(self, client):
        await _create_market(client)
        await _mint(client, "bob", 100 * UNIT)
        resp = await client.post("/v1/markets/1/buy",
                                 headers=await _key(client, "bob"), json={
            "outcome_mask": 1, "amount": str(UNIT),
        })
        assert resp.status_code == 402
        assert resp.json()["error"]["code"] == "payment_failed"

    async def test_buy_missing_market(self, client):
        resp = await client.post("/v1/markets/9/buy",
                                 headers=await _key(client, "bob"), json={
            "outcome_mask": 1, "amount": str(UNIT),
        })
        assert resp.status_code == 404

    async def test_resolve_and_withdraw(self, client):
        await _create_market(client)
        alice = await _trader(client, "alice", 1)
        resp = await client.post("/v1/markets/1/buy", headers=alice, json={
            "outcome_mask": 0b0110,
            "amount": str(5 * UNIT),
        })
        charged = int(resp.json()["collateral"])

        resp = await client.post("/v1/admin/markets/1/withdraw",
                                 headers=ADMIN_HEADERS)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "not_resolved"

        resp = await client.post("/v1/admin/markets/1/resolve",
                                 headers=ADMIN_HEADERS,
                                 json={"payouts": [1, 0, 0, 0]})
        assert resp.status_code == 200

        resp = await client.post("/v1/admin/markets/1/withdraw",
                                 headers=ADMIN_HEADERS)
        assert resp.status_code == 200
        data = resp.json()
        assert data["owner"] == "creator"
        # Outcome 0 was split off as dust and won
        assert int(data["amount"]) == 1000 * UNIT + charged

        resp = await client.get("/v1/markets/1")
        assert resp.json()["resolved"] is True

    async def test_buy_after_resolve(self, client):
        await _create_market(client)
        alice = await _trader(client, "alice", 1)
        await client.post("/v1/admin/markets/1/resolve",
                          headers=ADMIN_HEADERS,
                          json={"payouts": [1, 0, 0, 0]})
        resp = await client.post("/v1/markets/1/buy", headers=alice, json={
            "outcome_mask": 1, "amount": str(UNIT),
        })
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "market_resolved"

    async def test_resolve_twice(self, client):
        await _create_market(client)
        await client.post("/v1/admin/markets/1/resolve",
                          headers=ADMIN_HEADERS,
                          json={"payouts": [1, 0, 0, 0]})
        resp = await client.post("/v1/admin/markets/1/resolve",
                                 headers=ADMIN_HEADERS,
                                 json={"payouts": [0, 1, 0, 0]})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "already_resolved"

    async def test_wrong_payout_length(self, client):
        await _create_market(client)
        resp = await client.post("/v1/admin/markets/1/resolve",
                                 headers=ADMIN_HEADERS,
                                 json={"payouts": [1, 0]})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_payout_length"


# ---------------------------------------------------------------------------
# Persistence and error format
# ---------------------------------------------------------------------------

class TestPersistence:
    async def test_state_saved_after_mutation(self, client):
        await _mint(client, "alice", UNIT)
        assert os.path.exists(STATE_PATH)


class TestErrorFormat:
    async def test_error_shape(self, client):
        resp = await client.get("/v1/markets/42")
        body = resp.json()
        assert set(body["error"]) == {"code", "message", "details"}

    async def test_approve_needs_spender(self, client):
        resp = await client.post("/v1/accounts/alice/approve",
                                 headers=await _key(client, "alice"),
                                 json={"amount": "5"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_request"
