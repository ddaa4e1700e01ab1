"""
Tests for Wallet service.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from service_auth.app.credentials import CredentialManager, RegistrationRequest
from service_wallet.app.main import WalletService
from shared.config import get_config
from shared.store import InMemoryRecordStore


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def api_key(store):
    manager = CredentialManager(store, rounds=4)
    issued = asyncio.run(manager.issue(RegistrationRequest(name="Barfly")))
    return issued.api_key


def make_client(store, rpc_client, **overrides):
    config = get_config("wallet", 8012, bcrypt_rounds=4, **overrides)
    service = WalletService(config=config, store=store, rpc_client=rpc_client)
    return TestClient(service.app)


@pytest.fixture
def client(store, rpc_client, chain):
    """Create test client."""
    with make_client(store, rpc_client, treasury_address=chain.treasury) as test_client:
        yield test_client


def test_root_endpoint(client):
    """Test root endpoint."""
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["service"] == "wallet"


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["dependencies"]["treasury"] == "ok"


def test_deposit_instructions(client, chain):
    response = client.get("/wallet/deposit")
    assert response.status_code == 200
    data = response.json()
    assert data["configured"] is True
    assert data["treasury_address"] == chain.treasury
    assert data["chain"] == "Polygon"
    assert data["token_contract"] == "0x3c499c542cef5e3811e1192ce70d8cc03d5c3359"
    assert chain.treasury in data["instructions"]


def test_deposit_requires_key(client, chain):
    response = client.post("/wallet/deposit", json={"tx_hash": chain.tx_hash(1)})
    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "X-Agent-Key"


def test_deposit_credits_balance(client, api_key, chain):
    response = client.post(
        "/wallet/deposit",
        json={"tx_hash": chain.tx_hash(1), "amount": "999"},
        headers={"X-Agent-Key": api_key}
    )

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["amount_credited"] == "25.500000"
    assert data["new_balance"] == "25.500000"
    assert data["block_number"] == 42
    assert response.headers["X-RateLimit-Remaining"] == "4"

    history = client.get("/wallet/deposits", headers={"X-Agent-Key": api_key})
    assert history.status_code == 200
    assert history.json()["count"] == 1
    assert history.json()["deposits"][0]["tx_hash"] == chain.tx_hash(1)


def test_duplicate_deposit_rejected(client, api_key, chain):
    headers = {"X-Agent-Key": api_key}
    assert client.post("/wallet/deposit", json={"tx_hash": chain.tx_hash(1)}, headers=headers).status_code == 200

    response = client.post("/wallet/deposit", json={"tx_hash": chain.tx_hash(1)}, headers=headers)

    assert response.status_code == 400
    data = response.json()
    assert data["code"] == "DEPOSIT_REJECTED"
    assert data["details"]["reason"] == "already_claimed"


def test_missing_tx_hash(client, api_key):
    response = client.post("/wallet/deposit", json={}, headers={"X-Agent-Key": api_key})
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_deposit_rate_limited(client, api_key, chain):
    headers = {"X-Agent-Key": api_key}
    for n in range(5):
        client.post("/wallet/deposit", json={"tx_hash": chain.tx_hash(100 + n)}, headers=headers)

    response = client.post("/wallet/deposit", json={"tx_hash": chain.tx_hash(200)}, headers=headers)

    assert response.status_code == 429
    assert response.headers["X-RateLimit-Remaining"] == "0"
    assert response.headers["X-RateLimit-Reset"] == "720"


def test_chain_outage_is_503(client, api_key, rpc_client, chain):
    from shared.errors import ChainUnavailableError

    rpc_client.get_transaction_receipt.side_effect = ChainUnavailableError("Chain RPC timed out")

    response = client.post("/wallet/deposit", json={"tx_hash": chain.tx_hash(1)}, headers={"X-Agent-Key": api_key})

    assert response.status_code == 503
    assert response.json()["details"]["reason"] == "verification_unavailable"


def test_wallet_not_configured(store, rpc_client, api_key, chain):
    with make_client(store, rpc_client, treasury_address=None) as client:
        response = client.post(
            "/wallet/deposit",
            json={"tx_hash": chain.tx_hash(1)},
            headers={"X-Agent-Key": api_key}
        )

    assert response.status_code == 503
    assert response.json()["code"] == "WALLET_NOT_CONFIGURED"


def test_simulated_deposit(store, rpc_client, api_key, chain):
    with make_client(store, rpc_client, treasury_address=None, allow_test_deposits=True) as client:
        response = client.post(
            "/wallet/deposit",
            json={"tx_hash": chain.tx_hash(1), "test_mode": True, "amount": "15"},
            headers={"X-Agent-Key": api_key}
        )

    assert response.status_code == 200
    data = response.json()
    assert data["test_mode"] is True
    assert data["amount_credited"] == "15.000000"
    rpc_client.get_transaction_receipt.assert_not_called()
