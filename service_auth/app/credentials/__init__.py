"""
Agent credential package.

- manager: key generation, bcrypt verifiers, prefix-narrowed validation
  and the explicit mark-active step.
- transport: ``X-Agent-Key`` header dependency for FastAPI routes.
"""

from .manager import (
    CredentialManager,
    IssuedCredential,
    RegistrationRequest,
    KEY_PREFIX,
    lookup_prefix,
)
from .transport import AgentKeyAuth, AGENT_KEY_HEADER

__all__ = [
    "AGENT_KEY_HEADER",
    "AgentKeyAuth",
    "CredentialManager",
    "IssuedCredential",
    "KEY_PREFIX",
    "RegistrationRequest",
    "lookup_prefix",
]
