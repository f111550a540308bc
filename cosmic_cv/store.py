from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Protocol

from .config import Settings
from .db import DB_ERRORS, SCHEMA_STATEMENTS, StoreConnection, open_connection
from .errors import StorageError
from .identity import normalize_email, safe_text
from .models import EntitlementRecord, Lead, LedgerEntry, now_utc_iso, premium_from_status, subject_key_for

logger = logging.getLogger("cosmic_cv.store")


class EntitlementStore(Protocol):
    configured: bool

    def init_schema(self) -> None: ...

    def upsert_ledger_entry(self, entry: LedgerEntry) -> None: ...

    def get_ledger_entry(self, provider_reference: str) -> LedgerEntry | None: ...

    def find_ledger_entries_by_email(self, email: str) -> list[LedgerEntry]: ...

    def upsert_entitlement(self, record: EntitlementRecord) -> None: ...

    def sync_status_by_reference(self, provider_reference: str, status: str) -> int: ...

    def get_entitlement_by_user(self, user_id: str) -> EntitlementRecord | None: ...

    def get_entitlement_by_email(self, email: str) -> EntitlementRecord | None: ...

    def save_lead(self, lead: Lead) -> None: ...


def ledger_entry_from_row(row: dict[str, Any]) -> LedgerEntry:
    return LedgerEntry(
        provider_reference=str(row["provider_reference"]),
        email=str(row["email"] or ""),
        status=str(row["status"]),
        event_type=str(row["event_type"]),
        user_id=row["user_id"],
        received_at=str(row["received_at"]),
    )


def entitlement_from_row(row: dict[str, Any]) -> EntitlementRecord:
    return EntitlementRecord(
        user_id=row["user_id"],
        email=str(row["email"] or ""),
        status=str(row["status"]),
        provider_reference=str(row["provider_reference"] or ""),
        renews_at=row["renews_at"],
        updated_at=str(row["updated_at"]),
    )


class SQLEntitlementStore:
    """Ledger, entitlement projection and leads on SQLite or Postgres.

    Every write is a single ``INSERT ... ON CONFLICT DO UPDATE`` so that
    concurrent redeliveries converge on one row per key without locks.
    """

    configured = True

    def __init__(self, settings: Settings):
        if settings.store_backend == "none":
            raise StorageError("No database is configured for the entitlement store.")
        self.backend = settings.store_backend
        self._database_url = settings.database_url
        self._sqlite_path = settings.sqlite_path
        self._timeout_seconds = settings.store_timeout_seconds

    @contextmanager
    def _connection(self, operation: str) -> Iterator[StoreConnection]:
        try:
            connection = open_connection(self.backend, self._database_url, self._sqlite_path, self._timeout_seconds)
        except DB_ERRORS as exc:
            raise StorageError(f"Unable to connect to the {self.backend} store during {operation}.") from exc
        try:
            yield connection
        except DB_ERRORS as exc:
            try:
                connection.rollback()
            except DB_ERRORS:
                logger.exception("Rollback failed after %s error.", operation)
            raise StorageError(f"Store {operation} failed: {type(exc).__name__}.") from exc
        finally:
            connection.close()

    def init_schema(self) -> None:
        with self._connection("schema init") as connection:
            cursor = connection.cursor()
            for statement in SCHEMA_STATEMENTS:
                cursor.execute(statement)
            connection.commit()
        logger.info("Entitlement store ready on %s backend.", self.backend)

    def upsert_ledger_entry(self, entry: LedgerEntry) -> None:
        reference = safe_text(entry.provider_reference)
        if not reference:
            raise StorageError("Ledger entries need a provider reference.")
        with self._connection("ledger upsert") as connection:
            connection.execute(
                """
                INSERT INTO payment_ledger (provider_reference, email, status, event_type, user_id, received_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (provider_reference) DO UPDATE SET
                    email = CASE WHEN excluded.email <> '' THEN excluded.email ELSE payment_ledger.email END,
                    status = excluded.status,
                    event_type = excluded.event_type,
                    user_id = COALESCE(excluded.user_id, payment_ledger.user_id),
                    received_at = excluded.received_at
                """,
                (
                    reference,
                    normalize_email(entry.email),
                    entry.status,
                    entry.event_type,
                    entry.user_id,
                    entry.received_at,
                ),
            )
            connection.commit()

    def get_ledger_entry(self, provider_reference: str) -> LedgerEntry | None:
        with self._connection("ledger read") as connection:
            row = connection.execute(
                """
                SELECT provider_reference, email, status, event_type, user_id, received_at
                FROM payment_ledger WHERE provider_reference = ?
                """,
                (safe_text(provider_reference),),
            ).fetchone()
        return ledger_entry_from_row(row) if row else None

    def find_ledger_entries_by_email(self, email: str) -> list[LedgerEntry]:
        normalized = normalize_email(email)
        if not normalized:
            return []
        with self._connection("ledger lookup") as connection:
            rows = connection.execute(
                """
                SELECT provider_reference, email, status, event_type, user_id, received_at
                FROM payment_ledger WHERE email = ?
                ORDER BY received_at DESC
                """,
                (normalized,),
            ).fetchall()
        return [ledger_entry_from_row(row) for row in rows]

    def upsert_entitlement(self, record: EntitlementRecord) -> None:
        subject_key = record.subject_key
        if not subject_key:
            raise StorageError("Entitlement records need a user id or an email.")
        with self._connection("entitlement upsert") as connection:
            connection.execute(
                """
                INSERT INTO entitlements
                (subject_key, user_id, email, is_premium, status, provider_reference, renews_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (subject_key) DO UPDATE SET
                    user_id = COALESCE(excluded.user_id, entitlements.user_id),
                    email = CASE WHEN excluded.email <> '' THEN excluded.email ELSE entitlements.email END,
                    is_premium = excluded.is_premium,
                    status = excluded.status,
                    provider_reference = excluded.provider_reference,
                    renews_at = excluded.renews_at,
                    updated_at = excluded.updated_at
                """,
                (
                    subject_key,
                    record.user_id,
                    normalize_email(record.email),
                    1 if record.is_premium else 0,
                    record.status,
                    record.provider_reference,
                    record.renews_at,
                    record.updated_at,
                ),
            )
            connection.commit()

    def sync_status_by_reference(self, provider_reference: str, status: str) -> int:
        """Apply ``status`` to every record that was granted from ``provider_reference``.

        A record healed under ``user:<id>`` and the ``email:<addr>`` record a
        guest webhook wrote can both point at the same reference.
        """
        reference = safe_text(provider_reference)
        if not reference:
            return 0
        with self._connection("entitlement sync") as connection:
            cursor = connection.execute(
                """
                UPDATE entitlements SET status = ?, is_premium = ?, updated_at = ?
                WHERE provider_reference = ?
                """,
                (status, 1 if premium_from_status(status) else 0, now_utc_iso(), reference),
            )
            synced = cursor.rowcount
            connection.commit()
        return synced

    def _get_entitlement(self, subject_key: str | None) -> EntitlementRecord | None:
        if not subject_key:
            return None
        with self._connection("entitlement read") as connection:
            row = connection.execute(
                """
                SELECT user_id, email, status, provider_reference, renews_at, updated_at
                FROM entitlements WHERE subject_key = ?
                """,
                (subject_key,),
            ).fetchone()
        return entitlement_from_row(row) if row else None

    def get_entitlement_by_user(self, user_id: str) -> EntitlementRecord | None:
        return self._get_entitlement(subject_key_for(user_id, None))

    def get_entitlement_by_email(self, email: str) -> EntitlementRecord | None:
        return self._get_entitlement(subject_key_for(None, email))

    def save_lead(self, lead: Lead) -> None:
        if not lead.email:
            raise StorageError("Leads need an email.")
        with self._connection("lead upsert") as connection:
            connection.execute(
                """
                INSERT INTO leads (email, name, marketing_consent, mission_id, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (email) DO UPDATE SET
                    name = excluded.name,
                    marketing_consent = excluded.marketing_consent,
                    mission_id = excluded.mission_id,
                    updated_at = excluded.updated_at
                """,
                (lead.email, safe_text(lead.name), 1 if lead.marketing_consent else 0, lead.mission_id, now_utc_iso()),
            )
            connection.commit()


class NullEntitlementStore:
    """Stand-in used when no database is configured: nothing is found, nothing is kept."""

    configured = False

    def init_schema(self) -> None:
        logger.warning("Entitlement store is not configured. Premium access cannot be granted.")

    def upsert_ledger_entry(self, entry: LedgerEntry) -> None:
        raise StorageError("Entitlement store is not configured.")

    def get_ledger_entry(self, provider_reference: str) -> LedgerEntry | None:
        return None

    def find_ledger_entries_by_email(self, email: str) -> list[LedgerEntry]:
        return []

    def upsert_entitlement(self, record: EntitlementRecord) -> None:
        raise StorageError("Entitlement store is not configured.")

    def sync_status_by_reference(self, provider_reference: str, status: str) -> int:
        raise StorageError("Entitlement store is not configured.")

    def get_entitlement_by_user(self, user_id: str) -> EntitlementRecord | None:
        return None

    def get_entitlement_by_email(self, email: str) -> EntitlementRecord | None:
        return None

    def save_lead(self, lead: Lead) -> None:
        raise StorageError("Entitlement store is not configured.")


def build_store(settings: Settings) -> EntitlementStore:
    if settings.store_backend == "none":
        return NullEntitlementStore()
    return SQLEntitlementStore(settings)
