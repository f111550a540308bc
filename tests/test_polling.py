from cosmic_cv.identity import Identity
from cosmic_cv.models import LedgerEntry
from cosmic_cv.polling import HARD_MAX_ATTEMPTS, RetryPolicy, poll_entitlement
from cosmic_cv.resolver import Resolution


class ScriptedResolver:
    def __init__(self, answers):
        self.answers = list(answers)
        self.calls = 0

    def check(self, identity):
        self.calls += 1
        entitled = self.answers.pop(0) if self.answers else False
        return Resolution(entitled=entitled, source="ledger" if entitled else "none")


def test_should_retry_respects_max_attempts():
    policy = RetryPolicy(max_attempts=3)
    assert [policy.should_retry(attempt) for attempt in range(5)] == [True, True, True, False, False]


def test_hard_ceiling_caps_configured_attempts():
    policy = RetryPolicy(max_attempts=1000)
    assert policy.should_retry(HARD_MAX_ATTEMPTS - 1) is True
    assert policy.should_retry(HARD_MAX_ATTEMPTS) is False


def test_delay_for_applies_backoff():
    policy = RetryPolicy(interval_seconds=2.0, backoff=2.0)
    assert [policy.delay_for(attempt) for attempt in (1, 2, 3)] == [2.0, 4.0, 8.0]
    assert RetryPolicy(interval_seconds=1.5).delay_for(4) == 1.5


def test_poll_stops_on_first_confirmation():
    sleeps = []
    resolver = ScriptedResolver([False, True, True])
    result = poll_entitlement(resolver, Identity(user_id="u1", email="a@x.com"), RetryPolicy(max_attempts=5, interval_seconds=1.0), sleep=sleeps.append)
    assert result.state == "confirmed"
    assert result.attempts == 2
    assert sleeps == [1.0]


def test_poll_gives_up_after_max_attempts():
    sleeps = []
    resolver = ScriptedResolver([])
    result = poll_entitlement(resolver, Identity(user_id="u1", email="a@x.com"), RetryPolicy(max_attempts=3, interval_seconds=0.5), sleep=sleeps.append)
    assert result.state == "not_verified"
    assert result.attempts == 3
    assert resolver.calls == 3
    assert sleeps == [0.5, 0.5]


def test_poll_reports_processing_for_pending_payment(store, resolver):
    store.upsert_ledger_entry(
        LedgerEntry(provider_reference="ord_p", email="a@x.com", status="pending", event_type="order_created")
    )
    result = poll_entitlement(resolver, Identity(user_id="u1", email="a@x.com"), RetryPolicy(max_attempts=2, interval_seconds=0), sleep=lambda _: None)
    assert result.state == "processing"
