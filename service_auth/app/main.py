"""
Auth service for the ClawdBar access core.
"""

from typing import Optional

from fastapi import Depends, Request
from fastapi.responses import JSONResponse

from shared.base_service import BaseService, get_client_ip
from shared.config import ServiceConfig
from shared.store import Principal, RecordStore, create_record_store
from service_gateway.app.ratelimit import create_rate_limiter

from .credentials import AgentKeyAuth, CredentialManager, RegistrationRequest


class AuthService(BaseService):
    """Auth service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, store: Optional[RecordStore] = None):
        super().__init__("auth", 8010, config)
        self.store = store or create_record_store(self.config)
        self.credential_manager = CredentialManager(self.store, rounds=self.config.bcrypt_rounds, metrics=self.metrics)
        self.rate_limiter = create_rate_limiter(self.config, self.store, metrics=self.metrics)
        self.agent_auth = AgentKeyAuth(self.credential_manager)

        self._setup_auth_routes()

    def _setup_auth_routes(self):
        """Set up auth-specific routes."""
        agent_auth = self.agent_auth

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "auth",
                "message": "ClawdBar Access Core - Auth Service",
                "version": "1.0.0"
            }

        @self.app.post("/agents/register", status_code=201)
        async def register_agent(body: RegistrationRequest, request: Request):
            """Register an agent and return its API key once."""
            decision = await self.rate_limiter.enforce(get_client_ip(request), "register")

            issued = await self.credential_manager.issue(body)
            treasury = self.config.treasury_address

            return JSONResponse(
                status_code=201,
                content={
                    "agent_id": issued.principal.principal_id,
                    "api_key": issued.api_key,
                    "message": (
                        f"Welcome to ClawdBar, {issued.principal.name}! "
                        "Save your API key now. It will never be shown again."
                    ),
                    "treasury_address": treasury,
                    "deposit_instructions": (
                        f"Send USDC on Polygon network to {treasury}, "
                        "then call POST /wallet/deposit with your tx_hash to add funds."
                        if treasury else "Treasury wallet not yet configured. Check back soon!"
                    ),
                },
                headers=decision.to_headers()
            )

        @self.app.get("/agents/me")
        async def get_current_agent(principal: Principal = Depends(agent_auth)):
            """Profile of the calling agent."""
            return principal.public_view()

    async def start(self):
        await self.store.start()
        self.logger.info("Auth service started", store_backend=self.config.store_backend)

    async def stop(self):
        if self.rate_limiter.store is not self.store:
            await self.rate_limiter.store.close()
        await self.store.stop()

    async def _check_dependencies(self):
        """Check auth service dependencies."""
        return {"store": "ok" if await self.store.health_check() else "error"}


def create_app():
    """Create auth service application."""
    service = AuthService()
    return service.app


if __name__ == "__main__":
    service = AuthService()
    service.run()
