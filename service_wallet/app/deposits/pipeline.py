"""
Deposit crediting pipeline.

RECEIVED -> FORMAT_CHECKED -> DUPLICATE_CHECKED -> CHAIN_VERIFIED -> CREDITED,
or REJECTED at any gate. The duplicate check before verification only
saves an RPC call; the unique index on tx_hash inside ``credit_deposit`` is
what guarantees a transaction is credited once.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from shared.errors import (
    AccessLayerException,
    DepositRejectedError,
    DepositRejection,
    DuplicateRecordError,
    ValidationError,
    WalletNotConfiguredError,
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.store import DepositRecord, RecordStore
from shared.store.models import quantize_amount

from .verifier import DepositVerifier, VerifiedTransfer, normalize_reference


TEST_DEPOSIT_DEFAULT = Decimal("10")
TEST_DEPOSIT_CAP = Decimal("100")
TEST_FROM_ADDRESS = "0x_test_address"


class DepositState(str, Enum):
    RECEIVED = "received"
    FORMAT_CHECKED = "format_checked"
    DUPLICATE_CHECKED = "duplicate_checked"
    CHAIN_VERIFIED = "chain_verified"
    CREDITED = "credited"
    REJECTED = "rejected"


@dataclass
class DepositAttempt:
    """Progress of one submission through the pipeline."""
    principal_id: str
    tx_hash: str
    state: DepositState = DepositState.RECEIVED
    rejection: Optional[DepositRejection] = None
    history: List[DepositState] = field(default_factory=lambda: [DepositState.RECEIVED])


@dataclass
class DepositReceipt:
    """Result of a credited deposit."""
    tx_hash: str
    amount_credited: Decimal
    new_balance: Decimal
    block_number: int
    from_address: str
    test_mode: bool = False

    def to_response(self) -> Dict[str, Any]:
        response = {
            "success": True,
            "amount_credited": str(self.amount_credited),
            "new_balance": str(self.new_balance),
            "tx_hash": self.tx_hash,
            "block_number": self.block_number,
        }
        if self.test_mode:
            response["test_mode"] = True
            response["message"] = "TEST MODE: Treasury wallet not configured. Using simulated deposit."
        else:
            response["message"] = f"Successfully deposited ${self.amount_credited:.2f} USDC"
        return response


class DepositPipeline:
    """Turns a transaction reference into exactly one balance credit."""

    def __init__(self, store: RecordStore, verifier: DepositVerifier, config,
                 metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.verifier = verifier
        self.config = config
        self.metrics = metrics
        self.logger = get_logger("wallet.deposit_pipeline")

    async def submit(self, principal_id: str, tx_hash: Optional[str], test_mode: bool = False,
                     requested_amount: Optional[Decimal] = None) -> DepositReceipt:
        """Run a deposit submission through every gate and credit it.

        ``requested_amount`` is only read by the simulated test-mode path.
        """
        attempt = DepositAttempt(principal_id=principal_id, tx_hash=str(tx_hash))
        self.logger.info("Deposit received", principal_id=principal_id, state=attempt.state.value)

        try:
            attempt.tx_hash = normalize_reference(tx_hash)
            self._advance(attempt, DepositState.FORMAT_CHECKED)

            if await self.store.get_deposit(attempt.tx_hash) is not None:
                raise self._already_claimed(attempt.tx_hash)
            self._advance(attempt, DepositState.DUPLICATE_CHECKED)

            if not self.verifier.configured:
                if test_mode and self.config.test_deposits_enabled:
                    return await self._credit_test_deposit(attempt, requested_amount)
                raise WalletNotConfiguredError()

            transfer = await self.verifier.verify(attempt.tx_hash)
            self._advance(attempt, DepositState.CHAIN_VERIFIED)

            return await self._credit(attempt, transfer)

        except AccessLayerException as e:
            self._reject(attempt, e)
            raise

    def deposit_instructions(self) -> Dict[str, Any]:
        """Where and how to send funds."""
        treasury = self.verifier.treasury_address
        if treasury:
            instructions = (
                f"Send USDC on Polygon network to {treasury}, "
                "then call POST /wallet/deposit with your tx_hash"
            )
        else:
            instructions = "Treasury wallet not configured. Contact administrator."

        return {
            "chain": "Polygon",
            "chain_id": self.config.chain_id,
            "token": "USDC",
            "token_contract": self.config.token_contract,
            "treasury_address": treasury,
            "min_deposit": str(self.config.min_deposit),
            "max_deposit": str(self.config.max_deposit),
            "configured": bool(treasury),
            "instructions": instructions,
        }

    async def _credit(self, attempt: DepositAttempt, transfer: VerifiedTransfer) -> DepositReceipt:
        record = DepositRecord(
            tx_hash=transfer.tx_hash,
            principal_id=attempt.principal_id,
            amount=transfer.amount,
            from_address=transfer.from_address,
            block_number=transfer.block_number,
        )
        return await self._commit(attempt, record)

    async def _credit_test_deposit(self, attempt: DepositAttempt,
                                   requested_amount: Optional[Decimal]) -> DepositReceipt:
        amount = Decimal(requested_amount) if requested_amount else TEST_DEPOSIT_DEFAULT
        if amount <= 0:
            raise ValidationError("Test deposit amount must be positive")

        record = DepositRecord(
            tx_hash=attempt.tx_hash,
            principal_id=attempt.principal_id,
            amount=quantize_amount(min(amount, TEST_DEPOSIT_CAP)),
            from_address=TEST_FROM_ADDRESS,
            block_number=0,
            test_mode=True,
        )
        self.logger.warning("Crediting simulated deposit", principal_id=attempt.principal_id,
                            tx_hash=attempt.tx_hash, amount=str(record.amount))
        return await self._commit(attempt, record)

    async def _commit(self, attempt: DepositAttempt, record: DepositRecord) -> DepositReceipt:
        try:
            new_balance = await self.store.credit_deposit(record)
        except DuplicateRecordError:
            # Lost the race against a concurrent submission of the same hash
            raise self._already_claimed(record.tx_hash)

        self._advance(attempt, DepositState.CREDITED, amount=str(record.amount), test_mode=record.test_mode)
        self._record("credited")

        return DepositReceipt(
            tx_hash=record.tx_hash,
            amount_credited=record.amount,
            new_balance=new_balance,
            block_number=record.block_number,
            from_address=record.from_address,
            test_mode=record.test_mode,
        )

    def _advance(self, attempt: DepositAttempt, state: DepositState, **fields) -> None:
        attempt.state = state
        attempt.history.append(state)
        self.logger.info(
            "Deposit state changed",
            principal_id=attempt.principal_id,
            tx_hash=attempt.tx_hash,
            state=state.value,
            **fields
        )

    def _reject(self, attempt: DepositAttempt, error: AccessLayerException) -> None:
        reason = getattr(error, "reason", None)
        attempt.rejection = reason
        attempt.state = DepositState.REJECTED
        attempt.history.append(DepositState.REJECTED)

        outcome = reason.value if isinstance(reason, DepositRejection) else error.code.lower()
        self.logger.warning(
            "Deposit rejected",
            principal_id=attempt.principal_id,
            tx_hash=attempt.tx_hash,
            state=DepositState.REJECTED.value,
            reason=outcome,
            message=error.message
        )
        self._record(outcome)

    @staticmethod
    def _already_claimed(tx_hash: str) -> DepositRejectedError:
        return DepositRejectedError(
            DepositRejection.ALREADY_CLAIMED,
            "This transaction has already been claimed",
            details={"tx_hash": tx_hash}
        )

    def _record(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("deposits_total", outcome=outcome)
