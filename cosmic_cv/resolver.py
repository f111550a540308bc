from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel

from .errors import StorageError
from .identity import Identity
from .models import EntitlementRecord, LedgerEntry, entitlement_status_for
from .store import EntitlementStore

logger = logging.getLogger("cosmic_cv.resolver")


class Resolution(BaseModel):
    entitled: bool
    status: str | None = None
    source: Literal["record", "ledger", "none", "unknown"] = "none"
    pending_payment: bool = False


class EntitlementResolver:
    """Answers "is this identity premium right now?" from the projection, healing it from the ledger."""

    def __init__(self, store: EntitlementStore):
        self.store = store

    def resolve(self, identity: Identity) -> bool:
        return self.check(identity).entitled

    def check(self, identity: Identity) -> Resolution:
        try:
            return self._check(identity)
        except StorageError:
            logger.exception("Entitlement lookup failed for user=%s; treating as not entitled.", identity.user_id or "-")
            return Resolution(entitled=False, source="unknown")

    def _check(self, identity: Identity) -> Resolution:
        record: EntitlementRecord | None = None
        if identity.user_id:
            record = self.store.get_entitlement_by_user(identity.user_id)
        elif identity.email:
            record = self.store.get_entitlement_by_email(identity.email)
        if record is not None and record.is_premium:
            return Resolution(entitled=True, status=record.status, source="record")

        entries = self.store.find_ledger_entries_by_email(identity.email) if identity.email else []
        granting = self._healing_entry(entries, record)
        if granting is not None:
            self._heal(identity, granting)
            return Resolution(entitled=True, status=granting.status, source="ledger")

        return Resolution(
            entitled=False,
            status=record.status if record is not None else None,
            source="record" if record is not None else "none",
            pending_payment=any(entitlement_status_for(entry.status) is None for entry in entries),
        )

    @staticmethod
    def _healing_entry(entries: list[LedgerEntry], record: EntitlementRecord | None) -> LedgerEntry | None:
        """Pick the ledger entry that may restore premium, if any.

        Only the newest entry with an entitlement meaning counts, so a
        cancellation on one reference is not undone by an older paid order
        on another. An existing record also has to be older than that entry.
        """
        latest = next((entry for entry in entries if entitlement_status_for(entry.status) is not None), None)
        if latest is None or not latest.grants_premium:
            return None
        # ISO-8601 UTC timestamps compare chronologically as strings.
        if record is not None and latest.received_at <= record.updated_at:
            return None
        return latest

    def _heal(self, identity: Identity, entry: LedgerEntry) -> None:
        healed = EntitlementRecord.from_ledger(entry, identity.user_id, identity.email)
        if healed is None:
            return
        try:
            self.store.upsert_entitlement(healed)
        except StorageError:
            logger.exception(
                "Self-heal write failed for user=%s from ledger reference=%s.",
                identity.user_id or "-",
                entry.provider_reference,
            )
            return
        logger.info(
            "Self-healed entitlement for user=%s from ledger reference=%s (status=%s).",
            identity.user_id or identity.email,
            entry.provider_reference,
            entry.status,
        )
