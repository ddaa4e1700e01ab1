"""
Credential transport: agents present their key in the ``X-Agent-Key`` header.
"""

from fastapi import Request

from shared.logging import get_logger, set_principal_context
from shared.store import Principal

from .manager import CredentialManager


AGENT_KEY_HEADER = "X-Agent-Key"


class AgentKeyAuth:
    """FastAPI dependency that authenticates the calling agent.

    Authentication marks the agent active; handlers that depend on this
    therefore always write to the record store.
    """

    def __init__(self, credential_manager: CredentialManager):
        self.credential_manager = credential_manager
        self.logger = get_logger("auth.transport")

    async def __call__(self, request: Request) -> Principal:
        presented = request.headers.get(AGENT_KEY_HEADER)
        principal = await self.credential_manager.authenticate(presented)

        set_principal_context(principal_id=principal.principal_id)
        request.state.principal = principal
        return principal
