"""
Tests for ActivityAggregator.build.
"""

from datetime import datetime, timezone

from sqlalchemy import insert

from matchadmin.core.database import activity_records, get_db_session
from matchadmin.features.activity.aggregator import ActivityAggregator
from matchadmin.features.activity.ledger import ActivityLedger


def _seed(account_id, year, month, likes=0, matches=0, swipes=0):
    with get_db_session() as session:
        session.execute(
            insert(activity_records).values(
                account_id=account_id, year=year, month=month, likes=likes, matches=matches, swipes=swipes
            )
        )


def test_no_records_gives_twelve_zeros():
    chart = ActivityAggregator().build("nobody", 2024)

    assert chart.likes == [0] * 12
    assert chart.matches == [0] * 12
    assert chart.swipes == [0] * 12


def test_every_month_filled():
    for month in range(1, 13):
        _seed("u1", 2024, month, likes=month, matches=month * 2, swipes=month * 3)

    chart = ActivityAggregator().build("u1", 2024)

    assert chart.likes == list(range(1, 13))
    assert chart.matches == [m * 2 for m in range(1, 13)]
    assert chart.swipes == [m * 3 for m in range(1, 13)]


def test_series_sums_equal_record_sums():
    _seed("u1", 2024, 1, likes=4, matches=1, swipes=9)
    _seed("u1", 2024, 7, likes=2, matches=0, swipes=5)
    _seed("u1", 2024, 12, likes=1, matches=3, swipes=0)

    records = ActivityAggregator().records("u1", 2024)
    chart = ActivityAggregator().build("u1", 2024)

    assert [r.month for r in records] == [1, 7, 12]
    assert sum(chart.likes) == sum(r.likes for r in records) == 7
    assert sum(chart.matches) == sum(r.matches for r in records) == 4
    assert sum(chart.swipes) == sum(r.swipes for r in records) == 14
    assert chart.likes[6] == 2


def test_other_years_and_accounts_are_excluded():
    _seed("u1", 2023, 5, likes=10)
    _seed("u2", 2024, 5, likes=20)
    _seed("u1", 2024, 5, likes=1)

    chart = ActivityAggregator().build("u1", 2024)

    assert chart.likes[4] == 1
    assert sum(chart.likes) == 1


def test_build_reflects_ledger_increments():
    ledger = ActivityLedger()
    ledger.increment("u1", "like", datetime(2024, 2, 14, tzinfo=timezone.utc))
    ledger.increment("u1", "match", datetime(2024, 2, 14, tzinfo=timezone.utc))

    chart = ActivityAggregator().build("u1", 2024)

    assert chart.likes[1] == 1
    assert chart.matches[1] == 1
    assert len(chart.likes) == len(chart.matches) == len(chart.swipes) == 12
