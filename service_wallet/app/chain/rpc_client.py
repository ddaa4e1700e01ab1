"""
Polygon JSON-RPC client.

Only the one call the deposit verifier needs is implemented. The client
never signs or sends transactions.
"""

from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from shared.errors import ChainUnavailableError
from shared.logging import get_logger
from shared.metrics import MetricsCollector


class ReceiptLog(BaseModel):
    """One event log entry from a transaction receipt."""
    address: str
    topics: List[str] = []
    data: str = "0x"

    @field_validator("address", "data")
    @classmethod
    def _lower(cls, value: str) -> str:
        return value.lower()

    @field_validator("topics")
    @classmethod
    def _lower_topics(cls, value: List[str]) -> List[str]:
        return [topic.lower() for topic in value]


class TransactionReceipt(BaseModel):
    """The subset of ``eth_getTransactionReceipt`` the verifier reads."""

    model_config = ConfigDict(populate_by_name=True)

    transaction_hash: Optional[str] = Field(None, alias="transactionHash")
    status: Optional[str] = None
    block_number: int = Field(..., alias="blockNumber")
    logs: List[ReceiptLog] = []

    @field_validator("block_number", mode="before")
    @classmethod
    def _parse_quantity(cls, value: Any) -> int:
        if isinstance(value, str):
            return int(value, 16)
        return value


class ChainRpcClient:
    """Client for a Polygon JSON-RPC endpoint."""

    def __init__(self, rpc_url: str, timeout: float = 10.0, metrics: Optional[MetricsCollector] = None):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.metrics = metrics
        self.logger = get_logger("wallet.chain_rpc")
        self._request_id = 0

    async def call(self, method: str, params: List[Any]) -> Any:
        """Perform one JSON-RPC 2.0 call and return its ``result``."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }

        try:
            if self.metrics:
                with self.metrics.time_operation("chain_rpc_duration_seconds", method=method):
                    body = await self._post(payload)
            else:
                body = await self._post(payload)

        except httpx.TimeoutException as e:
            self.logger.error("Chain RPC timeout", method=method, timeout=self.timeout)
            raise ChainUnavailableError("Chain RPC timed out", details={"method": method}) from e
        except httpx.HTTPError as e:
            self.logger.error("Chain RPC HTTP error", method=method, error=str(e))
            raise ChainUnavailableError(details={"method": method, "http_error": str(e)}) from e

        error = body.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            self.logger.error("Chain RPC returned error", method=method, error=message)
            raise ChainUnavailableError(f"RPC Error: {message}", details={"method": method})

        return body.get("result")

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        """Receipt for a mined transaction, or None if it is unknown or pending."""
        result = await self.call("eth_getTransactionReceipt", [tx_hash])
        if result is None:
            return None

        try:
            return TransactionReceipt.model_validate(result)
        except (PydanticValidationError, ValueError) as e:
            self.logger.error("Malformed transaction receipt", tx_hash=tx_hash, error=str(e))
            raise ChainUnavailableError("Malformed transaction receipt", details={"tx_hash": tx_hash}) from e

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.rpc_url, json=payload)

        if response.status_code != 200:
            raise ChainUnavailableError(
                f"Chain RPC returned HTTP {response.status_code}",
                details={"status_code": response.status_code}
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ChainUnavailableError("Chain RPC returned invalid JSON") from e

        if not isinstance(body, dict):
            raise ChainUnavailableError("Chain RPC returned unexpected payload")
        return body
