"""
On-chain deposit verification.

A deposit is accepted only if the receipt proves a successful USDC
Transfer into the treasury. The amount always comes from the Transfer
log; whatever the caller claims is ignored.
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Tuple

from shared.errors import DepositRejectedError, DepositRejection, WalletNotConfiguredError
from shared.logging import get_logger
from shared.store.models import quantize_amount

from ..chain import ChainRpcClient, ReceiptLog, TransactionReceipt


TX_HASH_PATTERN = re.compile(r"^0x[a-fA-F0-9]{64}$")

# keccak256("Transfer(address,address,uint256)")
TRANSFER_EVENT_SIGNATURE = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

RECEIPT_STATUS_SUCCESS = "0x1"


@dataclass
class VerifiedTransfer:
    """A Transfer into the treasury, read from a confirmed receipt."""
    tx_hash: str
    amount: Decimal
    from_address: str
    to_address: str
    block_number: int


def normalize_reference(tx_hash: Optional[str]) -> str:
    """Check the hash format and return the lower-cased idempotency key."""
    if not isinstance(tx_hash, str) or not TX_HASH_PATTERN.match(tx_hash):
        raise DepositRejectedError(
            DepositRejection.MALFORMED_REFERENCE,
            "Invalid transaction hash format"
        )
    return tx_hash.lower()


def topic_to_address(topic: str) -> str:
    """Indexed address topics are left-padded to 32 bytes; keep the last 20."""
    return "0x" + topic[-40:].lower()


def to_base_units(amount: Decimal, decimals: int) -> int:
    return int(Decimal(amount).scaleb(decimals))


def scale_amount(raw: int, decimals: int) -> Decimal:
    """Convert an integer token amount to the internal fixed-point scale."""
    return quantize_amount(Decimal(raw).scaleb(-decimals))


class DepositVerifier:
    """Validates a transaction reference against the chain."""

    def __init__(self,
                 rpc_client: ChainRpcClient,
                 treasury_address: Optional[str],
                 token_contract: str,
                 token_decimals: int = 6,
                 min_deposit: Decimal = Decimal("1.00"),
                 max_deposit: Decimal = Decimal("1000.00")):
        self.rpc_client = rpc_client
        self.treasury_address = treasury_address.lower() if treasury_address else None
        self.token_contract = token_contract.lower()
        self.token_decimals = token_decimals
        self.min_deposit = min_deposit
        self.max_deposit = max_deposit
        self.logger = get_logger("wallet.deposit_verifier")

    @classmethod
    def from_config(cls, config, rpc_client: ChainRpcClient) -> "DepositVerifier":
        return cls(
            rpc_client,
            treasury_address=config.treasury_address,
            token_contract=config.token_contract,
            token_decimals=config.token_decimals,
            min_deposit=config.min_deposit,
            max_deposit=config.max_deposit,
        )

    @property
    def configured(self) -> bool:
        return bool(self.treasury_address)

    async def verify(self, tx_hash: str) -> VerifiedTransfer:
        """Fetch the receipt for ``tx_hash`` and check it credits the treasury.

        Raises DepositRejectedError for anything the chain contradicts and
        ChainUnavailableError when the chain could not be asked.
        """
        tx_hash = normalize_reference(tx_hash)

        if not self.configured:
            raise WalletNotConfiguredError()

        receipt = await self.rpc_client.get_transaction_receipt(tx_hash)

        if receipt is None:
            raise DepositRejectedError(
                DepositRejection.NOT_CONFIRMED,
                "Transaction not found or not yet confirmed",
                details={"tx_hash": tx_hash}
            )

        if receipt.status != RECEIPT_STATUS_SUCCESS:
            raise DepositRejectedError(
                DepositRejection.EXECUTION_FAILED,
                "Transaction failed",
                details={"tx_hash": tx_hash, "status": receipt.status}
            )

        match = self._find_treasury_transfer(receipt)
        if match is None:
            raise DepositRejectedError(
                DepositRejection.NO_MATCHING_TRANSFER,
                "No USDC transfer to treasury address found in transaction",
                details={"tx_hash": tx_hash}
            )

        log, raw_amount = match
        self._check_bounds(tx_hash, raw_amount)

        transfer = VerifiedTransfer(
            tx_hash=tx_hash,
            amount=scale_amount(raw_amount, self.token_decimals),
            from_address=topic_to_address(log.topics[1]) if len(log.topics) > 1 else "",
            to_address=self.treasury_address,
            block_number=receipt.block_number,
        )
        self.logger.info(
            "Deposit verified on chain",
            tx_hash=tx_hash,
            amount=str(transfer.amount),
            block_number=transfer.block_number
        )
        return transfer

    def _find_treasury_transfer(self, receipt: TransactionReceipt) -> Optional[Tuple[ReceiptLog, int]]:
        for log in receipt.logs:
            if log.address != self.token_contract:
                continue
            if len(log.topics) < 3 or log.topics[0] != TRANSFER_EVENT_SIGNATURE:
                continue
            if topic_to_address(log.topics[2]) != self.treasury_address:
                continue
            try:
                raw_amount = int(log.data, 16) if log.data not in ("", "0x") else 0
            except ValueError:
                self.logger.warning("Unparseable Transfer amount", tx_hash=receipt.transaction_hash, data=log.data)
                continue
            return log, raw_amount
        return None

    def _check_bounds(self, tx_hash: str, raw_amount: int) -> None:
        # Bounds are checked on the raw integer, before any Decimal scaling
        if raw_amount < to_base_units(self.min_deposit, self.token_decimals):
            raise DepositRejectedError(
                DepositRejection.AMOUNT_OUT_OF_BOUNDS,
                f"Minimum deposit is ${self.min_deposit} USDC",
                details={"tx_hash": tx_hash, "min_deposit": str(self.min_deposit)}
            )
        if raw_amount > to_base_units(self.max_deposit, self.token_decimals):
            raise DepositRejectedError(
                DepositRejection.AMOUNT_OUT_OF_BOUNDS,
                f"Maximum deposit is ${self.max_deposit} USDC",
                details={"tx_hash": tx_hash, "max_deposit": str(self.max_deposit)}
            )
