"""
Shared fixtures for wallet tests.
"""

from decimal import Decimal

import pytest
from unittest.mock import AsyncMock

from service_wallet.app.chain import ChainRpcClient, TransactionReceipt
from service_wallet.app.deposits import TRANSFER_EVENT_SIGNATURE, DepositVerifier
from shared.config import USDC_CONTRACT


class ReceiptBuilder:
    """Builds Polygon receipts carrying USDC Transfer logs."""

    treasury = "0x1111111111111111111111111111111111111111"
    sender = "0x2222222222222222222222222222222222222222"
    other = "0x3333333333333333333333333333333333333333"
    contract = USDC_CONTRACT

    @staticmethod
    def tx_hash(n: int) -> str:
        return "0x" + f"{n:064x}"

    @staticmethod
    def address_topic(address: str) -> str:
        return "0x" + "0" * 24 + address[2:]

    def transfer_log(self, amount_units: int, to: str = None, sender: str = None, contract: str = None) -> dict:
        return {
            "address": contract or self.contract,
            "topics": [
                TRANSFER_EVENT_SIGNATURE,
                self.address_topic(sender or self.sender),
                self.address_topic(to or self.treasury),
            ],
            "data": "0x" + f"{amount_units:064x}",
        }

    def receipt(self, *logs, status: str = "0x1", block: int = 42) -> TransactionReceipt:
        return TransactionReceipt.model_validate({
            "status": status,
            "blockNumber": hex(block),
            "logs": list(logs),
        })


@pytest.fixture
def chain():
    return ReceiptBuilder()


@pytest.fixture
def rpc_client(chain):
    client = AsyncMock(spec=ChainRpcClient)
    # 25.5 USDC into the treasury
    client.get_transaction_receipt.return_value = chain.receipt(chain.transfer_log(25_500_000))
    return client


@pytest.fixture
def verifier(rpc_client, chain):
    return DepositVerifier(
        rpc_client,
        treasury_address=chain.treasury,
        token_contract=USDC_CONTRACT,
        token_decimals=6,
        min_deposit=Decimal("1.00"),
        max_deposit=Decimal("1000.00"),
    )
