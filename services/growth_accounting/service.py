"""Growth accounting read path."""

import logging
from datetime import date
from typing import List, Optional, TypeVar

from shared.models import GrowthAccountingReport, GrowthScope
from .activity import ActivitySource
from .engine import Granularity, ltv_cohorts, mau_decomposition, mrr_decomposition

logger = logging.getLogger(__name__)

Row = TypeVar("Row")


def _within(rows: List[Row], attribute: str, start: Optional[date], end: Optional[date]) -> List[Row]:
    return [
        row
        for row in rows
        if (start is None or getattr(row, attribute) >= start)
        and (end is None or getattr(row, attribute) <= end)
    ]


class GrowthAccountingService:
    """Computes growth accounting reports over an activity source."""

    def __init__(self, source: ActivitySource):
        self.source = source

    async def compute(
        self,
        scope: GrowthScope,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> GrowthAccountingReport:
        """Decompose the whole history of ``scope``, then keep rows in [start, end].

        MAU and MRR rows are kept by period, LTV rows by cohort period.
        """
        if start is not None and end is not None and start > end:
            raise ValueError("start must not be after end")

        events = await self.source.fetch_events(scope)
        logger.info(f"Computing growth accounting over {len(events)} events")

        return GrowthAccountingReport(
            scope=scope,
            mau=_within(mau_decomposition(events), "period", start, end),
            mrr=_within(mrr_decomposition(events), "period", start, end),
            ltv=_within(ltv_cohorts(events, Granularity.WEEK), "cohort_period", start, end),
            ltv_monthly=_within(
                ltv_cohorts(events, Granularity.MONTH), "cohort_period", start, end
            ),
        )
