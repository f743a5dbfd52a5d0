"""Models for Grafana service accounts, tokens and stored credentials.

The pydantic models sit at the Azure CLI boundary:
1. Type-safe parsing of ``az grafana`` JSON output
2. Normalization of field names that vary between CLI/Grafana versions
3. Validation at the boundary (fail fast, fail loudly)

Everything past the boundary works with the normalized models only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

# Field names seen for the same concept across Grafana/CLI versions, in order
# of preference.
EXPIRY_FIELD_ALIASES = ("expiresAt", "expiration", "expiry")
SECRET_FIELD_ALIASES = ("key", "token", "value")

# Token names embed a fixed-width UTC timestamp so lexical order is age order
TOKEN_NAME_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


def token_name_for(service_account_name: str, now: datetime) -> str:
    """Build a token name ``<account>-<yyyymmddHHMMSS>`` in UTC."""
    return f"{service_account_name}-{now.astimezone(UTC).strftime(TOKEN_NAME_TIMESTAMP_FORMAT)}"


# =============================================================================
# Boundary models (parsed from az CLI output)
# =============================================================================


class ServiceAccount(BaseModel):
    """A Grafana service account."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str
    role: str = ""
    id: str | None = None
    is_disabled: bool = Field(False, alias="isDisabled")

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str | None:
        return None if v is None else str(v)


class GrafanaToken(BaseModel):
    """Metadata of one service account token.

    The token's secret value is never part of this model: Grafana only
    returns it once, from the create call (see CreatedToken).
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    id: str = ""
    name: str = ""
    expires_at: datetime | None = Field(None, alias="expiresAt")
    has_expired: bool = Field(False, alias="hasExpired")
    revoked: bool = Field(False, alias="isRevoked")

    @model_validator(mode="before")
    @classmethod
    def normalize_fields(cls, data: Any) -> Any:
        """Fold version-specific field names into the canonical ones."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        expiry = None
        for alias in ("expires_at", *EXPIRY_FIELD_ALIASES):
            if data.get(alias):
                expiry = data[alias]
                break
        data.pop("expires_at", None)
        data["expiresAt"] = expiry
        for flag in ("hasExpired", "isRevoked"):
            if data.get(flag) is None:
                data.pop(flag, None)
        return data

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("name", mode="before")
    @classmethod
    def coerce_name(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("expires_at", mode="before")
    @classmethod
    def parse_expiry(cls, v: Any) -> datetime | None:
        # Unparseable expiry is treated as unknown, not as an error
        if v is None or v == "":
            return None
        if isinstance(v, datetime):
            parsed = v
        else:
            try:
                parsed = datetime.fromisoformat(str(v).replace("Z", "+00:00"))
            except ValueError:
                return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed

    def is_active(self, now: datetime) -> bool:
        """Not revoked, not flagged expired, and not past its expiry."""
        if self.revoked or self.has_expired:
            return False
        return self.expires_at is None or self.expires_at > now


class CreatedToken(BaseModel):
    """Response of a token create call; the only place the secret appears."""

    model_config = {"extra": "ignore"}

    name: str
    key: str = Field(repr=False)

    @model_validator(mode="before")
    @classmethod
    def normalize_secret(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for alias in SECRET_FIELD_ALIASES:
            if data.get(alias):
                data["key"] = data[alias]
                break
        return data

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("token key must not be empty")
        return v.strip()


# =============================================================================
# Decision procedure types
# =============================================================================


@dataclass(frozen=True)
class StoredCredential:
    """The (name, value) pair persisted in the secret store.

    Either half may be missing; a value without a name is a known degraded
    state left behind by an interrupted write.
    """

    value: str | None = field(default=None, repr=False)
    name: str | None = None

    @property
    def has_value(self) -> bool:
        return bool(self.value)

    @property
    def has_name(self) -> bool:
        return bool(self.name)


class ReconcileStatus(str, Enum):
    """Outcome of one reconciliation run."""

    CREATED = "created"
    REUSED = "reused"
    NO_OP = "no_op"


@dataclass
class PruneResult:
    """Outcome of pruning active tokens down to one."""

    keep_name: str | None
    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    remaining_active: int = 0
    attempts: int = 0

    @property
    def converged(self) -> bool:
        """At most one active token remains."""
        return self.remaining_active <= 1


@dataclass
class ReconcileResult:
    """Result of a reconciliation run.

    ``value`` is never empty on a returned result and is kept out of repr.
    """

    value: str = field(repr=False)
    status: ReconcileStatus
    token_name: str | None = None
    expired_deleted: list[str] = field(default_factory=list)
    name_repaired: bool = False
    stale_detected: bool = False
    prune: PruneResult | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def created(self) -> bool:
        return self.status == ReconcileStatus.CREATED

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()
