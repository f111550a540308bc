from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, computed_field, field_validator

from .identity import normalize_email, safe_text

EntitlementStatus = Literal["active", "on_trial", "past_due", "cancelled", "expired", "paid"]

ENTITLEMENT_STATUSES: frozenset[str] = frozenset({"active", "on_trial", "past_due", "cancelled", "expired", "paid"})
GRANT_STATUSES: frozenset[str] = frozenset({"paid", "active", "on_trial"})
STATUS_ALIASES: dict[str, str] = {
    "refunded": "cancelled",
    "unpaid": "past_due",
    "paused": "past_due",
}


def now_utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def normalize_status(value: str | None) -> str:
    return safe_text(value).lower()


def is_grant_status(status: str | None) -> bool:
    return normalize_status(status) in GRANT_STATUSES


def entitlement_status_for(provider_status: str | None) -> str | None:
    """Fold a provider status into the record enum, or None when it has no record meaning."""
    status = normalize_status(provider_status)
    status = STATUS_ALIASES.get(status, status)
    if status in ENTITLEMENT_STATUSES:
        return status
    return None


def premium_from_status(status: str | None) -> bool:
    return is_grant_status(status)


def subject_key_for(user_id: str | None, email: str | None) -> str | None:
    user_token = safe_text(user_id)
    if user_token:
        return f"user:{user_token}"
    email_token = normalize_email(email)
    if email_token:
        return f"email:{email_token}"
    return None


class LedgerEntry(BaseModel):
    provider_reference: str
    email: str = ""
    status: str
    event_type: str
    user_id: str | None = None
    received_at: str = Field(default_factory=now_utc_iso)

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value: Any) -> str:
        return normalize_email(value if isinstance(value, str) else None)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> str:
        return normalize_status(value if isinstance(value, str) else None)

    @property
    def grants_premium(self) -> bool:
        return is_grant_status(self.status)


class EntitlementRecord(BaseModel):
    user_id: str | None = None
    email: str = ""
    status: EntitlementStatus
    provider_reference: str = ""
    renews_at: str | None = None
    updated_at: str = Field(default_factory=now_utc_iso)

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value: Any) -> str:
        return normalize_email(value if isinstance(value, str) else None)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_premium(self) -> bool:
        return premium_from_status(self.status)

    @property
    def subject_key(self) -> str | None:
        return subject_key_for(self.user_id, self.email)

    @classmethod
    def from_ledger(cls, entry: LedgerEntry, user_id: str | None, email: str) -> "EntitlementRecord | None":
        status = entitlement_status_for(entry.status)
        if status is None:
            return None
        return cls(
            user_id=user_id,
            email=email or entry.email,
            status=status,
            provider_reference=entry.provider_reference,
        )


class Lead(BaseModel):
    name: str
    email: str
    marketing_consent: bool = False
    mission_id: str | None = None

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value: Any) -> str:
        return normalize_email(value if isinstance(value, str) else None)


class CheckoutRequest(BaseModel):
    email: str | None = None


class LeadRequest(BaseModel):
    name: str
    email: str
    marketing_consent: bool = False
    mission_id: str | None = None


class AnalyzeRequest(BaseModel):
    file_base64: str
    mime_type: str | None = None
    mission_id: str
    name: str
    email: str | None = None


class SendReportRequest(BaseModel):
    email: str
    name: str
    pdf_base64: str
    mission_title: str | None = None
