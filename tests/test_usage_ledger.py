from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlmodel import Session

from core.database import create_db_and_tables, create_db_engine
from core.errors import ValidationError
from models.models import SubscriptionTier, User
from services.usage_ledger import Period, UsageLedger, current_period


PERIOD = Period(2025, 3)


def test_period_rolls_over_year():
    assert Period(2025, 12).next() == Period(2026, 1)
    assert Period(2025, 3).next() == Period(2025, 4)


def test_record_created_with_free_limit_when_user_has_no_state(session, make_user, ledger):
    user = make_user()
    record = ledger.get_or_create(session, user.id, PERIOD)
    assert record.generated_count == 0
    assert record.limit_snapshot == 5


def test_record_created_with_limit_of_current_tier(session, make_user, ledger, set_state):
    user = make_user()
    set_state(user.id, SubscriptionTier.PREMIUM)
    record = ledger.get_or_create(session, user.id, PERIOD)
    assert record.limit_snapshot == 100


def test_get_or_create_returns_existing_record(session, make_user, ledger):
    user = make_user()
    first = ledger.get_or_create(session, user.id, PERIOD)
    second = ledger.get_or_create(session, user.id, PERIOD)
    assert first.id == second.id


def test_consume_until_limit_then_refuse(session, make_user, ledger):
    user = make_user()
    for expected in range(1, 6):
        result = ledger.try_consume(session, user.id, PERIOD)
        assert result.ok
        assert result.current == expected
        assert result.remaining == 5 - expected

    refused = ledger.try_consume(session, user.id, PERIOD)
    assert not refused.ok
    assert refused.current == 5
    assert refused.limit == 5
    assert refused.remaining == 0


def test_consume_that_would_overshoot_leaves_count_untouched(session, make_user, ledger):
    user = make_user()
    ledger.try_consume(session, user.id, PERIOD, amount=3)

    result = ledger.try_consume(session, user.id, PERIOD, amount=3)

    assert not result.ok
    assert ledger.get(session, user.id, PERIOD).generated_count == 3


@pytest.mark.parametrize("amount", [0, -1])
def test_non_positive_amount_is_rejected(session, make_user, ledger, amount):
    user = make_user()
    with pytest.raises(ValidationError):
        ledger.try_consume(session, user.id, PERIOD, amount=amount)


def test_periods_are_isolated(session, make_user, ledger):
    user = make_user()
    for _ in range(5):
        assert ledger.try_consume(session, user.id, PERIOD).ok
    assert not ledger.try_consume(session, user.id, PERIOD).ok

    result = ledger.try_consume(session, user.id, PERIOD.next())
    assert result.ok
    assert result.current == 1
    assert ledger.get(session, user.id, PERIOD).generated_count == 5


def test_resync_limit_keeps_count(session, make_user, ledger):
    user = make_user()
    ledger.try_consume(session, user.id, PERIOD, amount=4)

    record = ledger.resync_limit(session, user.id, PERIOD, SubscriptionTier.PREMIUM)
    assert record.limit_snapshot == 100
    assert record.generated_count == 4

    record = ledger.resync_limit(session, user.id, PERIOD, SubscriptionTier.FREE)
    assert record.limit_snapshot == 5
    assert record.generated_count == 4


def test_resync_creates_missing_record(session, make_user, ledger):
    user = make_user()
    record = ledger.resync_limit(session, user.id, PERIOD, SubscriptionTier.TRIAL)
    assert record.limit_snapshot == 100
    assert record.generated_count == 0


def test_usage_summary_reports_current_period(session, make_user, ledger):
    user = make_user()
    period = current_period()
    ledger.try_consume(session, user.id, period, amount=2)

    summary = ledger.usage_summary(session, user.id)

    assert (summary.year, summary.month) == (period.year, period.month)
    assert summary.generated_count == 2
    assert summary.monthly_limit == 5
    assert summary.remaining == 3


def test_concurrent_consumers_never_exceed_limit(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'ledger.db'}", connect_args={"timeout": 30})
    create_db_and_tables(engine)
    ledger = UsageLedger()

    with Session(engine) as session:
        user = User(email="racer@example.com")
        session.add(user)
        session.commit()
        session.refresh(user)
        user_id = user.id
        ledger.get_or_create(session, user_id, PERIOD)
        session.commit()

    def consume(_):
        with Session(engine) as session:
            result = ledger.try_consume(session, user_id, PERIOD)
            session.commit()
            return result.ok

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(consume, range(20)))

    assert outcomes.count(True) == 5
    with Session(engine) as session:
        assert ledger.get(session, user_id, PERIOD).generated_count == 5
    engine.dispose()


def test_release_gives_back_consumed_units(session, make_user, ledger):
    user = make_user()
    ledger.try_consume(session, user.id, PERIOD, amount=2)

    assert ledger.release(session, user.id, PERIOD) is True

    record = ledger.get_or_create(session, user.id, PERIOD)
    session.refresh(record)
    assert record.generated_count == 1


def test_release_never_goes_below_zero(session, make_user, ledger):
    user = make_user()
    ledger.get_or_create(session, user.id, PERIOD)

    assert ledger.release(session, user.id, PERIOD) is False
    assert ledger.release(session, user.id, Period(2025, 4)) is False
    with pytest.raises(ValidationError):
        ledger.release(session, user.id, PERIOD, amount=0)
