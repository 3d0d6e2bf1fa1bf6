"""
Activity service - timeline entries for contacts, companies, deals and referrals.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy.orm import Session

from trellis.models import Activity, ActivityType, EntityType


class ActivityService:
    """Service for recording and listing activities."""

    def __init__(self, session: Session):
        self.session = session

    def log(
        self,
        org_id: int,
        entity_type: EntityType,
        entity_id: int,
        activity_type: ActivityType,
        title: str,
        description: Optional[str] = None,
        meta: Optional[dict] = None,
        created_by: Optional[int] = None,
    ) -> Activity:
        """Add an activity to the session. The caller commits."""
        activity = Activity(
            org_id=org_id,
            entity_type=entity_type,
            entity_id=entity_id,
            activity_type=activity_type,
            title=title,
            description=description,
            meta=meta or {},
            created_by=created_by,
        )
        self.session.add(activity)
        return activity

    def create(self, org_id: int, created_by: Optional[int] = None, **kwargs) -> Activity:
        """Create a manual activity (note, call, meeting...) and commit it."""
        activity = self.log(org_id=org_id, created_by=created_by, **kwargs)
        self.session.commit()
        self.session.refresh(activity)
        return activity

    def list_for_entity(
        self,
        org_id: int,
        entity_type: EntityType,
        entity_id: int,
        limit: int = 50,
    ) -> list[Activity]:
        return (
            self.session.query(Activity)
            .filter(
                Activity.org_id == org_id,
                Activity.entity_type == entity_type,
                Activity.entity_id == entity_id,
            )
            .order_by(Activity.created_at.desc(), Activity.id.desc())
            .limit(limit)
            .all()
        )

    def list_recent(self, org_id: int, limit: int = 20) -> list[Activity]:
        return (
            self.session.query(Activity)
            .filter(Activity.org_id == org_id)
            .order_by(Activity.created_at.desc(), Activity.id.desc())
            .limit(limit)
            .all()
        )

    def count(self, org_id: int, created_by: Optional[int] = None) -> int:
        query = self.session.query(Activity).filter(Activity.org_id == org_id)
        if created_by is not None:
            query = query.filter(Activity.created_by == created_by)
        return query.count()
