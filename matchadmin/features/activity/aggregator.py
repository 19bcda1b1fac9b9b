"""
matchadmin/features/activity/aggregator.py

Yearly activity chart: twelve monthly values per counter for one account.
"""

from typing import List

from sqlalchemy import select

from matchadmin.core.database import activity_records, get_db_session
from matchadmin.models.activity import MONTHS_PER_YEAR, ActivityChart, ActivityRecord


class ActivityAggregator:
    def records(self, account_id: str, year: int) -> List[ActivityRecord]:
        with get_db_session() as session:
            rows = session.execute(
                select(activity_records)
                .where(activity_records.c.account_id == account_id)
                .where(activity_records.c.year == year)
                .order_by(activity_records.c.month)
            ).fetchall()
        return [
            ActivityRecord(
                account_id=row.account_id,
                year=row.year,
                month=row.month,
                likes=row.likes,
                matches=row.matches,
                swipes=row.swipes,
            )
            for row in rows
        ]

    def build(self, account_id: str, year: int) -> ActivityChart:
        likes = [0] * MONTHS_PER_YEAR
        matches = [0] * MONTHS_PER_YEAR
        swipes = [0] * MONTHS_PER_YEAR
        for record in self.records(account_id, year):
            index = record.month - 1
            likes[index] = record.likes
            matches[index] = record.matches
            swipes[index] = record.swipes
        return ActivityChart(likes=likes, matches=matches, swipes=swipes)
