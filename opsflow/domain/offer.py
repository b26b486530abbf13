"""Task offer value objects.

Invariants:
1. open → claimed | expired | cancelled; terminal states never change
2. at most one accept per offer flips it to claimed (store-level CAS)
3. an accept after expires_at never wins, whatever the stored status
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class OfferStatus(str, Enum):
    OPEN = "open"
    CLAIMED = "claimed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class ClaimReason(str, Enum):
    ALREADY_CLAIMED = "already_claimed"
    OFFER_NOT_FOUND_OR_EXPIRED = "offer_not_found_or_expired"


@dataclass(frozen=True)
class ClaimResult:
    won: bool
    reason: ClaimReason | None = None
    offer_id: str | None = None
    request_id: str | None = None
    claimed_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "won": self.won,
            "reason": self.reason.value if self.reason else None,
            "offer_id": self.offer_id,
            "request_id": self.request_id,
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
        }


@dataclass(frozen=True)
class OfferSnapshot:
    id: str
    request_id: str
    status: OfferStatus
    expires_at: datetime
    created_at: datetime
    created_by: str | None = None
    claimed_by: str | None = None
    claimed_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "offer_id": self.id,
            "request_id": self.request_id,
            "status": self.status.value,
            "expires_at": self.expires_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "created_by": self.created_by,
            "claimed_by": self.claimed_by,
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
        }


@dataclass(frozen=True)
class BroadcastResult:
    offer: OfferSnapshot
    recipients_count: int

    def to_dict(self) -> dict:
        return {**self.offer.to_dict(), "recipients_count": self.recipients_count}
