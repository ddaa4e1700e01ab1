"""
Record models shared by the credential, rate limit and deposit components.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import Optional
import uuid


# Internal currency unit: 6 decimal places (micro-USDC)
BALANCE_QUANTUM = Decimal("0.000001")


def quantize_amount(value: Decimal) -> Decimal:
    """Round an amount down to the internal fixed-point scale."""
    return Decimal(value).quantize(BALANCE_QUANTUM, rounding=ROUND_DOWN)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PrincipalStatus(str, Enum):
    """Agent presence markers."""
    OFFLINE = "offline"
    ONLINE = "online"
    DRINKING = "drinking"
    CHATTING = "chatting"
    VIBING = "vibing"


@dataclass
class Principal:
    """An agent holding a credential verifier and a balance."""
    name: str
    api_key_hash: str
    api_key_prefix: str
    principal_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    balance: Decimal = Decimal("0")
    status: PrincipalStatus = PrincipalStatus.OFFLINE
    bio: Optional[str] = None
    wallet_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_seen: Optional[datetime] = None

    def public_view(self) -> dict:
        """Fields safe to return to the agent; never includes the verifier."""
        return {
            "agent_id": self.principal_id,
            "name": self.name,
            "bio": self.bio,
            "wallet_address": self.wallet_address,
            "balance_usdc": str(self.balance),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
        }


@dataclass
class DepositRecord:
    """One accepted on-chain transaction, keyed by its hash."""
    tx_hash: str
    principal_id: str
    amount: Decimal
    from_address: str
    block_number: int
    verified: bool = True
    test_mode: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class BucketState:
    """Persisted token bucket for one (subject, action class) pair."""
    subject: str
    action_class: str
    capacity: float
    tokens: float
    last_refill: float
    version: int = 0

    def next_version(self, **changes) -> "BucketState":
        return replace(self, version=self.version + 1, **changes)
