"""
End-to-end deposit flow: register, authenticate, deposit.

Auth and wallet services share one record store; the chain is simulated
below the JSON-RPC client so receipt parsing runs for real.
"""

import pytest
from unittest.mock import AsyncMock, patch
from fastapi.testclient import TestClient

from service_auth.app.main import AuthService
from service_wallet.app.chain import ChainRpcClient
from service_wallet.app.deposits import TRANSFER_EVENT_SIGNATURE
from service_wallet.app.main import WalletService
from shared.config import USDC_CONTRACT, get_config
from shared.store import InMemoryRecordStore


TREASURY = "0x" + "ab" * 20
SENDER = "0x" + "cd" * 20
TX_HASH = "0x" + "5e" * 32


def rpc_body(amount_units: int, status: str = "0x1"):
    return {
        "jsonrpc": "2.0",
        "id": 1,
        "result": {
            "transactionHash": TX_HASH,
            "status": status,
            "blockNumber": "0x3039",
            "logs": [
                {
                    "address": USDC_CONTRACT,
                    "topics": [
                        TRANSFER_EVENT_SIGNATURE,
                        "0x" + "0" * 24 + SENDER[2:],
                        "0x" + "0" * 24 + TREASURY[2:],
                    ],
                    "data": "0x" + f"{amount_units:064x}",
                }
            ],
        },
    }


@pytest.fixture
def clients():
    store = InMemoryRecordStore()
    overrides = {"bcrypt_rounds": 4, "treasury_address": TREASURY}

    auth = AuthService(config=get_config("auth", 8010, **overrides), store=store)
    wallet = WalletService(
        config=get_config("wallet", 8012, **overrides),
        store=store,
        rpc_client=ChainRpcClient("https://polygon-rpc.example", timeout=2.0)
    )

    with TestClient(auth.app) as auth_client, TestClient(wallet.app) as wallet_client:
        yield auth, auth_client, wallet_client


def test_register_then_deposit(clients):
    _, auth_client, wallet_client = clients

    registered = auth_client.post("/agents/register", json={"name": "Barfly", "bio": "regular"})
    assert registered.status_code == 201
    api_key = registered.json()["api_key"]
    assert TREASURY in registered.json()["deposit_instructions"]

    headers = {"X-Agent-Key": api_key}
    with patch.object(ChainRpcClient, "_post", new_callable=AsyncMock) as mock_post:
        mock_post.return_value = rpc_body(100_250_000)

        deposit = wallet_client.post("/wallet/deposit", json={"tx_hash": TX_HASH.upper().replace("0X", "0x")},
                                     headers=headers)
        assert deposit.status_code == 200
        assert deposit.json()["amount_credited"] == "100.250000"
        assert deposit.json()["block_number"] == 12345

        replay = wallet_client.post("/wallet/deposit", json={"tx_hash": TX_HASH}, headers=headers)
        assert replay.status_code == 400
        assert replay.json()["details"]["reason"] == "already_claimed"

        payload = mock_post.call_args[0][0]
        assert payload["method"] == "eth_getTransactionReceipt"
        assert payload["params"] == [TX_HASH]
        assert mock_post.await_count == 1

    me = auth_client.get("/agents/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["balance_usdc"] == "100.250000"
    assert me.json()["status"] == "online"


def test_failed_transaction_credits_nothing(clients):
    _, auth_client, wallet_client = clients
    api_key = auth_client.post("/agents/register", json={"name": "Barfly"}).json()["api_key"]
    headers = {"X-Agent-Key": api_key}

    with patch.object(ChainRpcClient, "_post", new_callable=AsyncMock) as mock_post:
        mock_post.return_value = rpc_body(100_000_000, status="0x0")
        response = wallet_client.post("/wallet/deposit", json={"tx_hash": TX_HASH}, headers=headers)

    assert response.status_code == 400
    assert response.json()["details"]["reason"] == "execution_failed"
    assert auth_client.get("/agents/me", headers=headers).json()["balance_usdc"] == "0"


def test_rotated_key_stops_working(clients):
    auth, auth_client, _ = clients
    registered = auth_client.post("/agents/register", json={"name": "Barfly"}).json()
    old_key = registered["api_key"]

    new_key = auth_client.portal.call(auth.credential_manager.rotate, registered["agent_id"])

    assert auth_client.get("/agents/me", headers={"X-Agent-Key": old_key}).status_code == 401
    assert auth_client.get("/agents/me", headers={"X-Agent-Key": new_key}).status_code == 200
