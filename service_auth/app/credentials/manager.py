"""
Agent API key issuance and validation.

Keys look like ``clwdbar_<28 base64url chars>``: 21 random bytes, 168 bits
of entropy. Only a bcrypt verifier and the first 16 characters of the key
are stored. The prefix narrows the candidate set so validation runs a
handful of bcrypt comparisons instead of one per agent; because every
verifier carries its own salt there is no single indexed lookup to attack
with precomputed tables.
"""

import asyncio
import re
import secrets
from dataclasses import dataclass
from typing import Optional

import bcrypt
from pydantic import BaseModel, Field

from shared.errors import (
    ConflictError,
    DuplicateRecordError,
    EntropyExhaustedError,
    InvalidCredentialError,
    MissingCredentialError,
    ValidationError,
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.store import Principal, PrincipalStatus, RecordStore
from shared.store.models import utcnow


KEY_PREFIX = "clwdbar_"
KEY_ENTROPY_BYTES = 21
LOOKUP_PREFIX_LENGTH = 16

# 2^12 = 4096 rounds
BCRYPT_COST_FACTOR = 12

# bcrypt only looks at the first 72 bytes of its input
MAX_KEY_BYTES = 72

NAME_MAX_LENGTH = 50
BIO_MAX_LENGTH = 500
NAME_PATTERN = re.compile(r"^[\w\s\-]+$")


class RegistrationRequest(BaseModel):
    """Request model for agent registration."""
    name: Optional[str] = Field(None, description="Display name, unique across agents")
    bio: Optional[str] = Field(None, description="Free-form description")
    wallet_address: Optional[str] = Field(None, description="Agent's own wallet")


@dataclass
class IssuedCredential:
    """A freshly issued key. ``api_key`` is the only copy of the secret."""
    principal: Principal
    api_key: str

    def __repr__(self) -> str:
        return f"IssuedCredential(principal_id={self.principal.principal_id!r}, api_key=<redacted>)"


def lookup_prefix(api_key: str) -> str:
    """Non-secret leading slice used to narrow validation candidates."""
    return api_key[:LOOKUP_PREFIX_LENGTH]


class CredentialManager:
    """Issues API keys and resolves presented keys to principals."""

    def __init__(self, store: RecordStore, rounds: int = BCRYPT_COST_FACTOR,
                 metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.rounds = rounds
        self.metrics = metrics
        self.logger = get_logger("auth.credentials")
        # Compared against when no agent owns the prefix
        self._dummy_hash = bcrypt.hashpw(b"clwdbar_dummy-verifier", bcrypt.gensalt(rounds=rounds))

    def generate_token(self) -> str:
        """Create a new plaintext key."""
        try:
            payload = secrets.token_urlsafe(KEY_ENTROPY_BYTES)
        except (OSError, NotImplementedError) as e:
            self.logger.critical("Entropy source failed during key generation", error=str(e))
            raise EntropyExhaustedError(details={"error": str(e)}) from e
        return KEY_PREFIX + payload

    def hash_token(self, api_key: str) -> str:
        """Salted bcrypt verifier for ``api_key``."""
        try:
            salt = bcrypt.gensalt(rounds=self.rounds)
        except (OSError, NotImplementedError) as e:
            raise EntropyExhaustedError(details={"error": str(e)}) from e
        return bcrypt.hashpw(api_key.encode("utf-8"), salt).decode("ascii")

    async def issue(self, registration: RegistrationRequest) -> IssuedCredential:
        """Register a new agent and return its key exactly once."""
        name = self._validate_name(registration.name)

        api_key = self.generate_token()
        api_key_hash = await asyncio.to_thread(self.hash_token, api_key)

        principal = Principal(
            name=name,
            bio=registration.bio[:BIO_MAX_LENGTH] if registration.bio else None,
            wallet_address=registration.wallet_address or None,
            api_key_hash=api_key_hash,
            api_key_prefix=lookup_prefix(api_key),
        )

        try:
            principal = await self.store.insert_principal(principal)
        except DuplicateRecordError:
            raise ConflictError(
                "An agent with this name already exists. Choose a different name.",
                details={"name": name}
            )

        self.logger.info(
            "Agent registered",
            principal_id=principal.principal_id,
            key_prefix=principal.api_key_prefix
        )
        return IssuedCredential(principal=principal, api_key=api_key)

    async def validate(self, presented: Optional[str]) -> Principal:
        """Resolve a presented key to its principal without side effects.

        Unknown prefixes and wrong secrets raise the same error after the
        same amount of bcrypt work.
        """
        if not self._is_well_formed(presented):
            self._record("missing")
            raise MissingCredentialError()

        candidates = await self.store.find_principals_by_prefix(lookup_prefix(presented))

        if not candidates:
            await asyncio.to_thread(self._check, presented, self._dummy_hash)
            self._record("invalid")
            raise InvalidCredentialError()

        for candidate in candidates:
            if await asyncio.to_thread(self._check, presented, candidate.api_key_hash.encode("ascii")):
                self._record("valid")
                return candidate

        self._record("invalid")
        raise InvalidCredentialError()

    async def mark_active(self, principal: Principal) -> Principal:
        """Record activity for an authenticated principal (writes to the store)."""
        seen_at = utcnow()
        await self.store.mark_principal_active(principal.principal_id, seen_at)
        principal.last_seen = seen_at
        principal.status = PrincipalStatus.ONLINE
        return principal

    async def authenticate(self, presented: Optional[str]) -> Principal:
        """Validate a key and then mark its principal active."""
        principal = await self.validate(presented)
        return await self.mark_active(principal)

    async def rotate(self, principal_id: str) -> str:
        """Administrative key rotation. Returns the new key; the old one stops working."""
        api_key = self.generate_token()
        api_key_hash = await asyncio.to_thread(self.hash_token, api_key)

        if not await self.store.replace_credential(principal_id, api_key_hash, lookup_prefix(api_key)):
            raise ValidationError("Unknown agent", details={"agent_id": principal_id})

        self.logger.warning(
            "Agent key rotated",
            principal_id=principal_id,
            key_prefix=lookup_prefix(api_key)
        )
        return api_key

    def _validate_name(self, raw: Optional[str]) -> str:
        name = (raw or "").strip()
        if not name:
            raise ValidationError("Agent name is required")
        if len(name) > NAME_MAX_LENGTH:
            raise ValidationError(f"Agent name must be {NAME_MAX_LENGTH} characters or less")
        if not NAME_PATTERN.match(name):
            raise ValidationError(
                "Agent name can only contain letters, numbers, spaces, underscores, and hyphens"
            )
        return name

    @staticmethod
    def _is_well_formed(presented: Optional[str]) -> bool:
        if not isinstance(presented, str) or not presented.strip():
            return False
        return len(presented.encode("utf-8")) <= MAX_KEY_BYTES

    @staticmethod
    def _check(presented: str, verifier: bytes) -> bool:
        try:
            return bcrypt.checkpw(presented.encode("utf-8"), verifier)
        except ValueError:
            # Corrupt verifier in the store; treat as a non-match
            return False

    def _record(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("credential_validations_total", outcome=outcome)
