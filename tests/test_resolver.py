import threading

import pytest

from cosmic_cv.errors import StorageError
from cosmic_cv.identity import Identity
from cosmic_cv.models import EntitlementRecord, LedgerEntry
from cosmic_cv.resolver import EntitlementResolver
from cosmic_cv.store import NullEntitlementStore, SQLEntitlementStore

from conftest import make_payload, sign


class ReadsDownStore(SQLEntitlementStore):
    def get_entitlement_by_user(self, user_id):
        raise StorageError("read timeout")


class HealWriteDownStore(SQLEntitlementStore):
    def upsert_entitlement(self, record):
        raise StorageError("write timeout")


def test_fast_path_uses_existing_record(store, resolver):
    store.upsert_entitlement(EntitlementRecord(user_id="u1", email="a@x.com", status="active", provider_reference="sub_1"))
    resolution = resolver.check(Identity(user_id="u1", email="a@x.com"))
    assert resolution.entitled is True
    assert resolution.source == "record"
    assert resolution.status == "active"


def test_self_heal_from_ledger_creates_fast_path_record(store, resolver):
    store.upsert_ledger_entry(
        LedgerEntry(provider_reference="ord_1", email="a@x.com", status="paid", event_type="order_created")
    )
    identity = Identity(user_id="u1", email="a@x.com")

    first = resolver.check(identity)
    assert first.entitled is True
    assert first.source == "ledger"

    healed = store.get_entitlement_by_user("u1")
    assert healed.is_premium is True
    assert healed.provider_reference == "ord_1"

    second = resolver.check(identity)
    assert second.entitled is True
    assert second.source == "record"


@pytest.mark.parametrize("lookup", ["A@X.com", "a@x.com", " a@x.com "])
def test_ledger_lookup_is_case_and_space_insensitive(store, resolver, lookup):
    store.upsert_ledger_entry(
        LedgerEntry(provider_reference="ord_1", email="A@X.com", status="paid", event_type="order_created")
    )
    entries = store.find_ledger_entries_by_email(lookup)
    assert [entry.provider_reference for entry in entries] == ["ord_1"]
    assert resolver.resolve(Identity(user_id="u1", email=lookup)) is True


def test_negative_result_is_not_an_error(resolver):
    resolution = resolver.check(Identity(user_id="nobody", email="nobody@x.com"))
    assert resolution.entitled is False
    assert resolution.source == "none"
    assert resolution.pending_payment is False


def test_non_premium_record_without_ledger_reports_status(store, resolver):
    store.upsert_entitlement(EntitlementRecord(user_id="u2", email="b@x.com", status="cancelled"))
    resolution = resolver.check(Identity(user_id="u2", email="b@x.com"))
    assert resolution.entitled is False
    assert resolution.status == "cancelled"
    assert resolution.source == "record"


def test_non_premium_record_is_healed_by_newer_grant(store, resolver):
    store.upsert_entitlement(
        EntitlementRecord(user_id="u2", email="b@x.com", status="expired", updated_at="2026-01-01T00:00:00.000000+00:00")
    )
    store.upsert_ledger_entry(
        LedgerEntry(
            provider_reference="ord_2",
            email="b@x.com",
            status="paid",
            event_type="order_created",
            received_at="2026-02-01T00:00:00.000000+00:00",
        )
    )
    assert resolver.resolve(Identity(user_id="u2", email="b@x.com")) is True
    assert store.get_entitlement_by_user("u2").status == "paid"


def test_non_premium_record_is_not_healed_by_older_grant(store, resolver):
    store.upsert_ledger_entry(
        LedgerEntry(
            provider_reference="ord_2",
            email="b@x.com",
            status="paid",
            event_type="order_created",
            received_at="2026-01-01T00:00:00.000000+00:00",
        )
    )
    store.upsert_entitlement(
        EntitlementRecord(user_id="u2", email="b@x.com", status="expired", updated_at="2026-02-01T00:00:00.000000+00:00")
    )
    resolution = resolver.check(Identity(user_id="u2", email="b@x.com"))
    assert resolution.entitled is False
    assert resolution.status == "expired"
    assert store.get_entitlement_by_user("u2").status == "expired"


def test_newest_ledger_entry_decides_between_references(store, resolver):
    store.upsert_ledger_entry(
        LedgerEntry(
            provider_reference="ord_5",
            email="e@x.com",
            status="paid",
            event_type="order_created",
            received_at="2026-01-01T00:00:00.000000+00:00",
        )
    )
    store.upsert_ledger_entry(
        LedgerEntry(
            provider_reference="sub_5",
            email="e@x.com",
            status="expired",
            event_type="subscription_expired",
            received_at="2026-03-01T00:00:00.000000+00:00",
        )
    )
    assert resolver.resolve(Identity(user_id="u5", email="e@x.com")) is False
    assert store.get_entitlement_by_user("u5") is None


def test_cancelled_subscription_is_not_regranted_by_its_order(ingestor, store, resolver):
    order = make_payload("order_created", "ord_1", "paid", email="a@x.com", user_id="u1")
    created = make_payload("subscription_created", "sub_1", "active", email="a@x.com", user_id="u1")
    cancelled = make_payload("subscription_cancelled", "sub_1", "cancelled", email="a@x.com", user_id="u1")
    for body in (order, created, cancelled):
        ingestor.ingest(body, sign(body))

    identity = Identity(user_id="u1", email="a@x.com")
    assert resolver.resolve(identity) is False
    assert resolver.resolve(identity) is False
    record = store.get_entitlement_by_user("u1")
    assert record.status == "cancelled"
    assert record.is_premium is False


def test_guest_cancellation_reaches_healed_user_record(ingestor, store, resolver):
    created = make_payload("subscription_created", "sub_2", "active", email="g@x.com")
    ingestor.ingest(created, sign(created))
    identity = Identity(user_id="u2", email="g@x.com")
    assert resolver.resolve(identity) is True
    assert store.get_entitlement_by_user("u2").provider_reference == "sub_2"

    cancelled = make_payload("subscription_cancelled", "sub_2", "cancelled", email="g@x.com")
    outcome = ingestor.ingest(cancelled, sign(cancelled))

    assert outcome.entitlements_synced == 2
    assert resolver.resolve(identity) is False
    assert store.get_entitlement_by_user("u2").status == "cancelled"
    assert store.get_entitlement_by_email("g@x.com").status == "cancelled"

def test_revoked_ledger_entry_does_not_grant(store, resolver):
    store.upsert_ledger_entry(
        LedgerEntry(provider_reference="sub_1", email="c@x.com", status="cancelled", event_type="subscription_cancelled")
    )
    assert resolver.resolve(Identity(user_id="u3", email="c@x.com")) is False
    assert store.get_entitlement_by_user("u3") is None


def test_pending_ledger_entry_is_reported_as_processing(store, resolver):
    store.upsert_ledger_entry(
        LedgerEntry(provider_reference="ord_p", email="d@x.com", status="pending", event_type="order_created")
    )
    resolution = resolver.check(Identity(user_id="u4", email="d@x.com"))
    assert resolution.entitled is False
    assert resolution.pending_payment is True


def test_identity_without_user_id_uses_email_record(store, resolver):
    store.upsert_entitlement(EntitlementRecord(email="guest@x.com", status="on_trial"))
    assert resolver.resolve(Identity(email="GUEST@x.com")) is True


def test_store_read_failure_fails_closed(settings):
    store = ReadsDownStore(settings)
    store.init_schema()
    resolution = EntitlementResolver(store).check(Identity(user_id="u1", email="a@x.com"))
    assert resolution.entitled is False
    assert resolution.source == "unknown"


def test_failed_heal_write_still_reports_ledger_grant(settings):
    store = HealWriteDownStore(settings)
    store.init_schema()
    store.upsert_ledger_entry(
        LedgerEntry(provider_reference="ord_1", email="a@x.com", status="paid", event_type="order_created")
    )
    assert EntitlementResolver(store).resolve(Identity(user_id="u1", email="a@x.com")) is True


def test_unconfigured_store_is_never_entitled():
    assert EntitlementResolver(NullEntitlementStore()).resolve(Identity(user_id="u1", email="a@x.com")) is False


def test_pay_before_account_exists_scenario(ingestor, store, resolver):
    body = make_payload("order_created", "ord_1", "paid", email="new@user.com")
    ingestor.ingest(body, sign(body))
    assert store.get_entitlement_by_user("u42") is None

    assert resolver.resolve(Identity(user_id="u42", email="new@user.com")) is True
    record = store.get_entitlement_by_user("u42")
    assert record is not None
    assert record.is_premium is True


def test_concurrent_heals_converge(store, resolver):
    store.upsert_ledger_entry(
        LedgerEntry(provider_reference="ord_1", email="a@x.com", status="paid", event_type="order_created")
    )
    results = []
    identity = Identity(user_id="u1", email="a@x.com")
    threads = [threading.Thread(target=lambda: results.append(resolver.resolve(identity))) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results == [True, True, True, True]
    assert store.get_entitlement_by_user("u1").status == "paid"
