import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import models


# -----------------------------------------------------------------------------
# REQUEST HISTORY
# Purpose: filtered, paginated views over access requests for the
# developer, team lead and admin screens.
# -----------------------------------------------------------------------------


@dataclass
class RequestFilters:
    status: Optional[str] = None
    db_instance_id: Optional[int] = None
    collection_name: Optional[str] = None
    developer_id: Optional[int] = None
    team_lead_id: Optional[int] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None

    def conditions(self) -> List[Any]:
        Request = models.AccessRequest
        conditions = []
        if self.status:
            conditions.append(Request.status == self.status)
        if self.db_instance_id is not None:
            conditions.append(Request.db_instance_id == self.db_instance_id)
        if self.collection_name:
            pattern = f"%{self.collection_name.lower()}%"
            conditions.append(func.lower(Request.collection_name).like(pattern))
        if self.developer_id is not None:
            conditions.append(Request.developer_id == self.developer_id)
        if self.team_lead_id is not None:
            conditions.append(Request.team_lead_id == self.team_lead_id)
        if self.date_from:
            start = datetime.combine(self.date_from, time.min, tzinfo=timezone.utc)
            conditions.append(Request.created_at >= start)
        if self.date_to:
            # Inclusive of the whole end day
            end = datetime.combine(
                self.date_to + timedelta(days=1), time.min, tzinfo=timezone.utc
            )
            conditions.append(Request.created_at < end)
        return conditions


async def list_requests(
    db: AsyncSession, filters: RequestFilters, page: int = 1, limit: int = 20
) -> Dict[str, Any]:
    """
    Return one page of requests matching filters, newest first.

    Returns:
        {"items": [...], "total": int, "page": int, "limit": int, "pages": int}
    """
    where = and_(True, *filters.conditions())

    count_query = select(func.count(models.AccessRequest.id)).where(where)
    total = (await db.execute(count_query)).scalar() or 0

    query = (
        select(models.AccessRequest)
        .where(where)
        .order_by(models.AccessRequest.created_at.desc(), models.AccessRequest.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    result = await db.execute(query)
    items = result.scalars().all()

    return {
        "items": items,
        "total": total,
        "page": page,
        "limit": limit,
        "pages": math.ceil(total / limit) if total else 0,
    }


async def filter_options(db: AsyncSession, filters: RequestFilters) -> Dict[str, Any]:
    """Distinct instances, collections and developers present in the caller's scope."""
    Request = models.AccessRequest
    where = and_(True, *filters.conditions())

    instance_query = (
        select(Request.db_instance_id, Request.db_instance_name)
        .where(where)
        .distinct()
        .order_by(Request.db_instance_name)
    )
    instances = [
        {"id": row.db_instance_id, "name": row.db_instance_name}
        for row in (await db.execute(instance_query)).all()
    ]

    collection_query = (
        select(Request.collection_name)
        .where(where)
        .distinct()
        .order_by(Request.collection_name)
    )
    collections = list((await db.execute(collection_query)).scalars().all())

    developer_query = (
        select(models.User.id, models.User.email)
        .join(Request, Request.developer_id == models.User.id)
        .where(where)
        .distinct()
        .order_by(models.User.email)
    )
    developers = [
        {"id": row.id, "email": row.email}
        for row in (await db.execute(developer_query)).all()
    ]

    return {
        "db_instances": instances,
        "collections": collections,
        "developers": developers,
    }
