"""
Investment Activity Service - Immutable audit trail for investment transitions
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import InvestmentActivity as DBInvestmentActivity

log = logging.getLogger(__name__)


class ActivityService:
    """Append-only activity log. Rows are inserted, never updated or deleted."""

    @staticmethod
    def record(
        db: AsyncSession,
        investment_id: int,
        activity_type: str,
        description: str,
        performed_by: Optional[int],
        created_at: datetime,
        old_status: Optional[str] = None,
        new_status: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> DBInvestmentActivity:
        """
        Stage one activity row in the caller's transaction.

        The row commits or rolls back together with the state change it
        describes, so the trail never shows a transition that did not happen.
        """
        entry = DBInvestmentActivity(
            investment_id=investment_id,
            activity_type=activity_type,
            description=description,
            old_status=old_status,
            new_status=new_status,
            performed_by=performed_by,
            details=json.dumps(details, default=str) if details else None,
            created_at=created_at,
        )
        db.add(entry)

        log.info("AUDIT: " + json.dumps({
            "timestamp": created_at.isoformat(),
            "investment_id": investment_id,
            "activity_type": activity_type,
            "old_status": old_status,
            "new_status": new_status,
            "performed_by": performed_by,
            "description": description,
        }))
        return entry

    @staticmethod
    async def get_activity(db: AsyncSession, investment_id: int) -> List[DBInvestmentActivity]:
        """Activity history for one investment, newest first"""
        result = await db.execute(
            select(DBInvestmentActivity)
            .where(DBInvestmentActivity.investment_id == investment_id)
            .order_by(DBInvestmentActivity.created_at.desc(), DBInvestmentActivity.id.desc())
        )
        return list(result.scalars().all())
