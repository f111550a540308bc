from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Literal

from pydantic import BaseModel

from .errors import ConfigurationError, SignatureError, StorageError
from .events import GrantCandidateEvent, IgnoredEvent, PaymentEvent, RevocationEvent, parse_webhook_event
from .identity import safe_text
from .models import EntitlementRecord, LedgerEntry, entitlement_status_for, subject_key_for
from .store import EntitlementStore

logger = logging.getLogger("cosmic_cv.webhooks")

SIGNATURE_HEADER = "x-signature"


class WebhookOutcome(BaseModel):
    action: Literal["processed", "ignored", "unresolved"]
    event_type: str = ""
    resource_id: str = ""
    status: str = ""
    ledger_written: bool = False
    entitlement_written: bool = False
    entitlements_synced: int = 0
    reason: str = ""


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: str | None, secret: str) -> None:
    """Check the hex HMAC-SHA256 of the exact request bytes. Fails closed."""
    if not secret:
        raise ConfigurationError("Webhook secret is not configured.")
    provided = safe_text(signature).lower()
    if not provided:
        raise SignatureError("Missing webhook signature.")
    expected = compute_signature(raw_body, secret)
    if not hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8")):
        raise SignatureError("Invalid webhook signature.")


class WebhookIngestor:
    def __init__(self, store: EntitlementStore, secret: str):
        self.store = store
        self.secret = secret

    def ingest(self, raw_body: bytes, signature: str | None) -> WebhookOutcome:
        verify_signature(raw_body, signature, self.secret)

        event = parse_webhook_event(raw_body)
        if isinstance(event, IgnoredEvent):
            logger.info("Webhook ignored (event=%s): %s", event.event_type or "-", event.reason)
            return WebhookOutcome(action="ignored", event_type=event.event_type, reason=event.reason)
        if isinstance(event, (GrantCandidateEvent, RevocationEvent)):
            return self._apply(event)
        raise TypeError(f"Unhandled webhook event variant: {type(event).__name__}")

    def _apply(self, event: PaymentEvent) -> WebhookOutcome:
        outcome = WebhookOutcome(
            action="processed",
            event_type=event.event_type,
            resource_id=event.resource_id,
            status=event.status,
        )
        failures: list[str] = []

        try:
            self.store.upsert_ledger_entry(
                LedgerEntry(
                    provider_reference=event.resource_id,
                    email=event.email,
                    status=event.status,
                    event_type=event.event_type,
                    user_id=event.user_id,
                )
            )
            outcome.ledger_written = True
            logger.info(
                "Ledger upserted: reference=%s event=%s status=%s",
                event.resource_id,
                event.event_type,
                event.status,
            )
        except StorageError:
            failures.append("ledger")
            logger.exception(
                "Ledger write failed: reference=%s event=%s status=%s",
                event.resource_id,
                event.event_type,
                event.status,
            )

        subject_key = subject_key_for(event.user_id, event.email)
        record_status = entitlement_status_for(event.status)
        if subject_key is None:
            outcome.action = "unresolved"
            outcome.reason = "no user id or email on event; kept in ledger for later reconciliation"
            logger.warning("Webhook identity unresolved: reference=%s event=%s", event.resource_id, event.event_type)
        elif record_status is None:
            outcome.reason = f"status '{event.status}' has no entitlement meaning"
            logger.info(
                "Entitlement unchanged: reference=%s status=%s has no entitlement meaning",
                event.resource_id,
                event.status,
            )
        else:
            record = EntitlementRecord(
                user_id=event.user_id,
                email=event.email,
                status=record_status,
                provider_reference=event.resource_id,
                renews_at=event.renews_at,
            )
            try:
                self.store.upsert_entitlement(record)
                outcome.entitlement_written = True
                logger.info(
                    "Entitlement upserted: subject=%s status=%s premium=%s",
                    subject_key,
                    record.status,
                    record.is_premium,
                )
            except StorageError:
                failures.append("entitlement")
                logger.exception(
                    "Entitlement write failed: subject=%s reference=%s status=%s",
                    subject_key,
                    event.resource_id,
                    record.status,
                )

        if record_status is not None:
            try:
                outcome.entitlements_synced = self.store.sync_status_by_reference(event.resource_id, record_status)
            except StorageError:
                failures.append("entitlement sync")
                logger.exception(
                    "Entitlement sync failed: reference=%s status=%s",
                    event.resource_id,
                    record_status,
                )
            else:
                logger.info(
                    "Entitlements synced: reference=%s status=%s rows=%s",
                    event.resource_id,
                    record_status,
                    outcome.entitlements_synced,
                )

        if failures:
            raise StorageError(f"Webhook storage failed for {', '.join(failures)} (reference {event.resource_id}).")
        return outcome
