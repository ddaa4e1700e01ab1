"""
Unit tests for the deposit crediting pipeline.
"""

import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock

from service_wallet.app.deposits import DepositPipeline, DepositVerifier
from shared.config import get_config
from shared.errors import (
    ChainUnavailableError,
    DepositRejectedError,
    DepositRejection,
    StoreUnavailableError,
    ValidationError,
    WalletNotConfiguredError,
)
from shared.metrics import MetricsCollector
from shared.store import InMemoryRecordStore, Principal


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest_asyncio.fixture
async def principal(store):
    return await store.insert_principal(
        Principal(name="Barfly", api_key_hash="$2b$04$unused", api_key_prefix="clwdbar_abcdefgh")
    )


@pytest.fixture
def config(chain):
    return get_config("wallet", 8012, treasury_address=chain.treasury)


@pytest.fixture
def pipeline(store, verifier, config):
    return DepositPipeline(store, verifier, config)


def unconfigured_pipeline(store, rpc_client, chain, **config_overrides):
    config = get_config("wallet", 8012, treasury_address=None, **config_overrides)
    verifier = DepositVerifier(rpc_client, treasury_address=None, token_contract=chain.contract)
    return DepositPipeline(store, verifier, config)


class TestDepositPipeline:
    """Test cases for DepositPipeline.submit."""

    @pytest.mark.asyncio
    async def test_credits_verified_amount(self, pipeline, store, principal, chain):
        receipt = await pipeline.submit(principal.principal_id, chain.tx_hash(1))

        assert receipt.amount_credited == Decimal("25.5")
        assert receipt.new_balance == Decimal("25.5")
        assert receipt.block_number == 42
        assert receipt.test_mode is False

        record = await store.get_deposit(chain.tx_hash(1))
        assert record.principal_id == principal.principal_id
        assert record.from_address == chain.sender
        assert (await store.get_principal(principal.principal_id)).balance == Decimal("25.5")

    @pytest.mark.asyncio
    async def test_requested_amount_is_ignored(self, pipeline, principal, chain):
        receipt = await pipeline.submit(principal.principal_id, chain.tx_hash(1), requested_amount=Decimal("900"))
        assert receipt.amount_credited == Decimal("25.5")

    @pytest.mark.asyncio
    async def test_sequential_duplicate(self, pipeline, store, principal, rpc_client, chain):
        await pipeline.submit(principal.principal_id, chain.tx_hash(0xabc))

        with pytest.raises(DepositRejectedError) as exc_info:
            await pipeline.submit(principal.principal_id, "0x" + chain.tx_hash(0xabc)[2:].upper())

        assert exc_info.value.reason == DepositRejection.ALREADY_CLAIMED
        assert rpc_client.get_transaction_receipt.await_count == 1
        assert (await store.get_principal(principal.principal_id)).balance == Decimal("25.5")

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_credit_once(self, pipeline, store, principal, rpc_client, chain):
        async def slow_receipt(tx_hash):
            await asyncio.sleep(0.01)
            return chain.receipt(chain.transfer_log(25_500_000))

        rpc_client.get_transaction_receipt.side_effect = slow_receipt

        results = await asyncio.gather(
            *[pipeline.submit(principal.principal_id, chain.tx_hash(7)) for _ in range(5)],
            return_exceptions=True
        )

        credited = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, DepositRejectedError)]
        assert len(credited) == 1
        assert len(rejected) == 4
        assert all(r.reason == DepositRejection.ALREADY_CLAIMED for r in rejected)
        assert (await store.get_principal(principal.principal_id)).balance == Decimal("25.5")

    @pytest.mark.asyncio
    async def test_malformed_reference(self, pipeline, principal, rpc_client):
        with pytest.raises(DepositRejectedError) as exc_info:
            await pipeline.submit(principal.principal_id, "not-a-hash")

        assert exc_info.value.reason == DepositRejection.MALFORMED_REFERENCE
        rpc_client.get_transaction_receipt.assert_not_called()

    @pytest.mark.asyncio
    async def test_chain_rejection_credits_nothing(self, pipeline, store, principal, rpc_client, chain):
        rpc_client.get_transaction_receipt.return_value = chain.receipt(status="0x0")

        with pytest.raises(DepositRejectedError) as exc_info:
            await pipeline.submit(principal.principal_id, chain.tx_hash(1))

        assert exc_info.value.reason == DepositRejection.EXECUTION_FAILED
        assert await store.get_deposit(chain.tx_hash(1)) is None
        assert (await store.get_principal(principal.principal_id)).balance == Decimal("0")

    @pytest.mark.asyncio
    async def test_rejected_reference_can_be_retried(self, pipeline, principal, rpc_client, chain):
        rpc_client.get_transaction_receipt.side_effect = [
            None,
            chain.receipt(chain.transfer_log(25_500_000)),
        ]

        with pytest.raises(DepositRejectedError):
            await pipeline.submit(principal.principal_id, chain.tx_hash(1))

        receipt = await pipeline.submit(principal.principal_id, chain.tx_hash(1))
        assert receipt.amount_credited == Decimal("25.5")

    @pytest.mark.asyncio
    async def test_verification_unavailable(self, pipeline, store, principal, rpc_client, chain):
        rpc_client.get_transaction_receipt.side_effect = ChainUnavailableError("Chain RPC timed out")

        with pytest.raises(ChainUnavailableError):
            await pipeline.submit(principal.principal_id, chain.tx_hash(1))

        assert await store.get_deposit(chain.tx_hash(1)) is None

    @pytest.mark.asyncio
    async def test_store_failure_on_credit(self, pipeline, store, principal, chain):
        store.credit_deposit = AsyncMock(side_effect=StoreUnavailableError())

        with pytest.raises(StoreUnavailableError):
            await pipeline.submit(principal.principal_id, chain.tx_hash(1))

    @pytest.mark.asyncio
    async def test_outcomes_are_counted(self, store, verifier, config, principal, chain):
        metrics = MetricsCollector("wallet-test")
        pipeline = DepositPipeline(store, verifier, config, metrics=metrics)

        await pipeline.submit(principal.principal_id, chain.tx_hash(1))
        with pytest.raises(DepositRejectedError):
            await pipeline.submit(principal.principal_id, chain.tx_hash(1))

        assert metrics.registry.get_sample_value("deposits_total", {"outcome": "credited"}) == 1.0
        assert metrics.registry.get_sample_value("deposits_total", {"outcome": "already_claimed"}) == 1.0


class TestUnconfiguredTreasury:
    """Test cases for the wallet_not_configured path and simulated deposits."""

    @pytest.mark.asyncio
    async def test_wallet_not_configured(self, store, principal, rpc_client, chain):
        pipeline = unconfigured_pipeline(store, rpc_client, chain)

        with pytest.raises(WalletNotConfiguredError) as exc_info:
            await pipeline.submit(principal.principal_id, chain.tx_hash(1))

        assert exc_info.value.status_code == 503
        rpc_client.get_transaction_receipt.assert_not_called()

    @pytest.mark.asyncio
    async def test_test_mode_requires_flag(self, store, principal, rpc_client, chain):
        pipeline = unconfigured_pipeline(store, rpc_client, chain, allow_test_deposits=False)

        with pytest.raises(WalletNotConfiguredError):
            await pipeline.submit(principal.principal_id, chain.tx_hash(1), test_mode=True)

    @pytest.mark.asyncio
    async def test_test_mode_disabled_in_production(self, store, principal, rpc_client, chain):
        pipeline = unconfigured_pipeline(store, rpc_client, chain, allow_test_deposits=True, env="production")

        with pytest.raises(WalletNotConfiguredError):
            await pipeline.submit(principal.principal_id, chain.tx_hash(1), test_mode=True)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("requested,expected", [
        (None, Decimal("10")),
        (Decimal("42.5"), Decimal("42.5")),
        (Decimal("250"), Decimal("100")),
    ])
    async def test_simulated_deposit(self, store, principal, rpc_client, chain, requested, expected):
        pipeline = unconfigured_pipeline(store, rpc_client, chain, allow_test_deposits=True)

        receipt = await pipeline.submit(
            principal.principal_id, chain.tx_hash(1), test_mode=True, requested_amount=requested
        )

        assert receipt.test_mode is True
        assert receipt.amount_credited == expected
        record = await store.get_deposit(chain.tx_hash(1))
        assert record.test_mode is True
        assert record.from_address == "0x_test_address"
        assert record.block_number == 0
        rpc_client.get_transaction_receipt.assert_not_called()

    @pytest.mark.asyncio
    async def test_simulated_deposit_rejects_negative_amount(self, store, principal, rpc_client, chain):
        pipeline = unconfigured_pipeline(store, rpc_client, chain, allow_test_deposits=True)

        with pytest.raises(ValidationError):
            await pipeline.submit(principal.principal_id, chain.tx_hash(1), test_mode=True,
                                  requested_amount=Decimal("-5"))

    def test_deposit_instructions(self, store, rpc_client, chain):
        info = unconfigured_pipeline(store, rpc_client, chain).deposit_instructions()

        assert info["configured"] is False
        assert info["treasury_address"] is None
        assert info["chain_id"] == 137
        assert info["token"] == "USDC"
        assert info["min_deposit"] == "1.00"
        assert info["max_deposit"] == "1000.00"
        assert "not configured" in info["instructions"]
