"""
Wallet service for the ClawdBar access core.
"""

from decimal import Decimal
from typing import Optional

from fastapi import Depends, Query, Response
from pydantic import BaseModel, Field

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import ValidationError
from shared.store import Principal, RecordStore, create_record_store
from service_auth.app.credentials import AgentKeyAuth, CredentialManager
from service_gateway.app.ratelimit import create_rate_limiter

from .chain import ChainRpcClient
from .deposits import DepositPipeline, DepositVerifier


class DepositRequest(BaseModel):
    """Request model for a deposit claim."""
    tx_hash: Optional[str] = Field(None, description="Polygon transaction hash")
    test_mode: bool = Field(False, description="Simulated deposit, non-production only")
    amount: Optional[Decimal] = Field(None, description="Simulated amount; ignored for real deposits")


class WalletService(BaseService):
    """Wallet service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, store: Optional[RecordStore] = None,
                 rpc_client: Optional[ChainRpcClient] = None):
        super().__init__("wallet", 8012, config)
        self.store = store or create_record_store(self.config)
        self.credential_manager = CredentialManager(self.store, rounds=self.config.bcrypt_rounds, metrics=self.metrics)
        self.rate_limiter = create_rate_limiter(self.config, self.store, metrics=self.metrics)
        self.rpc_client = rpc_client or ChainRpcClient(
            self.config.polygon_rpc_url,
            timeout=self.config.rpc_timeout_seconds,
            metrics=self.metrics
        )
        self.verifier = DepositVerifier.from_config(self.config, self.rpc_client)
        self.pipeline = DepositPipeline(self.store, self.verifier, self.config, metrics=self.metrics)
        self.agent_auth = AgentKeyAuth(self.credential_manager)

        self._setup_wallet_routes()

    def _setup_wallet_routes(self):
        """Set up wallet-specific routes."""
        agent_auth = self.agent_auth

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "wallet",
                "message": "ClawdBar Access Core - Wallet Service",
                "version": "1.0.0"
            }

        @self.app.post("/wallet/deposit")
        async def submit_deposit(body: DepositRequest, response: Response,
                                 principal: Principal = Depends(agent_auth)):
            """Verify a USDC transfer on chain and credit it."""
            decision = await self.rate_limiter.enforce(principal.principal_id, "deposit")
            response.headers.update(decision.to_headers())

            if not body.tx_hash:
                raise ValidationError("Transaction hash (tx_hash) is required")

            receipt = await self.pipeline.submit(
                principal.principal_id,
                body.tx_hash,
                test_mode=body.test_mode,
                requested_amount=body.amount,
            )
            return receipt.to_response()

        @self.app.get("/wallet/deposit")
        async def deposit_instructions():
            """Treasury address and deposit instructions."""
            return self.pipeline.deposit_instructions()

        @self.app.get("/wallet/deposits")
        async def list_deposits(limit: int = Query(50, ge=1, le=200),
                                principal: Principal = Depends(agent_auth)):
            """Deposits credited to the calling agent, newest first."""
            records = await self.store.list_deposits(principal.principal_id, limit=limit)
            return {
                "deposits": [
                    {
                        "tx_hash": r.tx_hash,
                        "amount": str(r.amount),
                        "from_address": r.from_address,
                        "block_number": r.block_number,
                        "test_mode": r.test_mode,
                        "created_at": r.created_at.isoformat(),
                    }
                    for r in records
                ],
                "count": len(records),
            }

    async def start(self):
        await self.store.start()
        self.logger.info(
            "Wallet service started",
            treasury_configured=self.verifier.configured,
            test_deposits_enabled=self.config.test_deposits_enabled
        )

    async def stop(self):
        if self.rate_limiter.store is not self.store:
            await self.rate_limiter.store.close()
        await self.store.stop()

    async def _check_dependencies(self):
        """Check wallet service dependencies."""
        return {
            "store": "ok" if await self.store.health_check() else "error",
            "treasury": "ok" if self.verifier.configured else "unconfigured",
        }


def create_app():
    """Create wallet service application."""
    service = WalletService()
    return service.app


if __name__ == "__main__":
    service = WalletService()
    service.run()
