"""
Deal service - deals and the pipeline stages they move through.

Moving a deal into a won or lost stage closes it; a deal becoming won
credits the referral that introduced its contact.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session, joinedload

from trellis.exceptions import NotFoundError, ValidationError
from trellis.models import (
    ActivityType,
    Company,
    Contact,
    Deal,
    DealStatus,
    EntityTag,
    EntityType,
    PipelineStage,
)
from trellis.services.activity_service import ActivityService
from trellis.services.referral_service import ReferralService

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = {
    "name",
    "value",
    "currency",
    "stage_id",
    "probability",
    "contact_id",
    "company_id",
    "deal_type",
    "recurring_interval",
    "recurring_value",
    "expected_close_date",
    "actual_close_date",
    "status",
    "description",
    "notes",
    "custom_fields",
    "assigned_to",
}


class DealService:
    """Service for managing deals."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, org_id: int, deal_id: int) -> Optional[Deal]:
        return (
            self.session.query(Deal)
            .options(joinedload(Deal.contact), joinedload(Deal.company), joinedload(Deal.stage))
            .filter(Deal.org_id == org_id, Deal.id == deal_id)
            .first()
        )

    def list(
        self,
        org_id: int,
        status: Optional[DealStatus] = None,
        stage_id: Optional[int] = None,
        contact_id: Optional[int] = None,
        company_id: Optional[int] = None,
        search: Optional[str] = None,
        page: int = 0,
        page_size: int = 25,
    ) -> tuple[list[Deal], int]:
        query = self.session.query(Deal).filter(Deal.org_id == org_id)
        if status:
            query = query.filter(Deal.status == status)
        if stage_id:
            query = query.filter(Deal.stage_id == stage_id)
        if contact_id:
            query = query.filter(Deal.contact_id == contact_id)
        if company_id:
            query = query.filter(Deal.company_id == company_id)
        if search:
            term = f"%{search}%"
            query = query.filter(or_(Deal.name.ilike(term), Deal.description.ilike(term)))

        total = query.count()
        deals = (
            query.options(joinedload(Deal.contact), joinedload(Deal.company), joinedload(Deal.stage))
            .order_by(Deal.created_at.desc(), Deal.id.desc())
            .offset(max(page, 0) * page_size)
            .limit(page_size)
            .all()
        )
        return deals, total

    def pipeline_summary(self, org_id: int) -> list[dict]:
        """Deal count and value per stage, in display order."""
        rows = dict(
            (stage_id, (count, value))
            for stage_id, count, value in self.session.query(
                Deal.stage_id, func.count(Deal.id), func.coalesce(func.sum(Deal.value), 0)
            )
            .filter(Deal.org_id == org_id)
            .group_by(Deal.stage_id)
            .all()
        )
        return [
            {
                "stage": stage,
                "deal_count": rows.get(stage.id, (0, 0))[0],
                "total_value": float(rows.get(stage.id, (0, 0))[1]),
            }
            for stage in self.list_stages(org_id)
        ]

    def create(self, org_id: int, created_by: Optional[int] = None, **kwargs) -> Deal:
        if not kwargs.get("name"):
            raise ValidationError("name is required")
        self._check_refs(org_id, kwargs)

        data = {k: v for k, v in kwargs.items() if k in EDITABLE_FIELDS and v is not None}
        deal = Deal(org_id=org_id, **data)
        if deal.stage_id is None:
            first_stage = self.list_stages(org_id)[:1]
            if first_stage:
                deal.stage_id = first_stage[0].id
        self.session.add(deal)
        self.session.flush()
        self._apply_stage_outcome(deal)

        ActivityService(self.session).log(
            org_id=org_id,
            entity_type=EntityType.DEAL,
            entity_id=deal.id,
            activity_type=ActivityType.DEAL_CREATED,
            title=f"Deal {deal.name} created",
            meta={"value": deal.value},
            created_by=created_by,
        )
        if deal.status == DealStatus.WON:
            self._on_won(deal, created_by)

        self.session.commit()
        self.session.refresh(deal)
        logger.info(f"Deal {deal.id} created in org {org_id}")
        return deal

    def update(
        self, org_id: int, deal_id: int, updated_by: Optional[int] = None, **kwargs
    ) -> Optional[Deal]:
        """Update a deal; stage and status changes drive close handling."""
        deal = self.get(org_id, deal_id)
        if not deal:
            return None
        self._check_refs(org_id, kwargs)

        previous_status = deal.status
        previous_stage = deal.stage_id
        for field, value in kwargs.items():
            if field in EDITABLE_FIELDS:
                setattr(deal, field, value)
        self.session.flush()
        if deal.stage_id != previous_stage:
            self.session.refresh(deal, ["stage"])
            self._apply_stage_outcome(deal)

        if deal.status in (DealStatus.WON, DealStatus.LOST) and deal.actual_close_date is None:
            deal.actual_close_date = date.today()

        activities = ActivityService(self.session)
        if deal.status != previous_status and deal.status == DealStatus.WON:
            self._on_won(deal, updated_by)
        elif deal.status != previous_status and deal.status == DealStatus.LOST:
            activities.log(
                org_id=org_id,
                entity_type=EntityType.DEAL,
                entity_id=deal.id,
                activity_type=ActivityType.DEAL_LOST,
                title=f"Deal {deal.name} lost",
                created_by=updated_by,
            )
        else:
            activities.log(
                org_id=org_id,
                entity_type=EntityType.DEAL,
                entity_id=deal.id,
                activity_type=ActivityType.DEAL_UPDATED,
                title=f"Deal {deal.name} updated",
                meta={"fields": sorted(k for k in kwargs if k in EDITABLE_FIELDS)},
                created_by=updated_by,
            )

        self.session.commit()
        self.session.refresh(deal)
        return deal

    def delete(self, org_id: int, deal_id: int) -> bool:
        deal = self.get(org_id, deal_id)
        if not deal:
            return False
        self.session.query(EntityTag).filter(
            EntityTag.entity_type == EntityType.DEAL, EntityTag.entity_id == deal_id
        ).delete(synchronize_session=False)
        self.session.delete(deal)
        self.session.commit()
        return True

    def _apply_stage_outcome(self, deal: Deal) -> None:
        stage = deal.stage or (self.session.get(PipelineStage, deal.stage_id) if deal.stage_id else None)
        if stage is None:
            return
        if stage.is_won:
            deal.status = DealStatus.WON
        elif stage.is_lost:
            deal.status = DealStatus.LOST
        if stage.is_won or stage.is_lost:
            deal.actual_close_date = deal.actual_close_date or date.today()

    def _on_won(self, deal: Deal, user_id: Optional[int]) -> None:
        deal.actual_close_date = deal.actual_close_date or date.today()
        ActivityService(self.session).log(
            org_id=deal.org_id,
            entity_type=EntityType.DEAL,
            entity_id=deal.id,
            activity_type=ActivityType.DEAL_WON,
            title=f"Deal {deal.name} won",
            meta={"value": deal.value},
            created_by=user_id,
        )
        ReferralService(self.session).link_won_deal(deal)

    def _check_refs(self, org_id: int, data: dict) -> None:
        checks = (
            ("contact_id", Contact, "Contact not found"),
            ("company_id", Company, "Company not found"),
            ("stage_id", PipelineStage, "Pipeline stage not found"),
        )
        for key, model, message in checks:
            value = data.get(key)
            if value is None:
                continue
            found = (
                self.session.query(model.id)
                .filter(model.org_id == org_id, model.id == value)
                .first()
            )
            if not found:
                raise ValidationError(message)

    # -------------------------------------------------------------------------
    # Pipeline stages
    # -------------------------------------------------------------------------

    def list_stages(self, org_id: int) -> list[PipelineStage]:
        return (
            self.session.query(PipelineStage)
            .filter(PipelineStage.org_id == org_id)
            .order_by(PipelineStage.display_order, PipelineStage.id)
            .all()
        )

    def create_stage(
        self,
        org_id: int,
        name: str,
        color: str = "#94a3b8",
        is_won: bool = False,
        is_lost: bool = False,
        display_order: Optional[int] = None,
    ) -> PipelineStage:
        if not name:
            raise ValidationError("Stage name is required")
        if is_won and is_lost:
            raise ValidationError("A stage cannot be both won and lost")
        if display_order is None:
            current = (
                self.session.query(func.max(PipelineStage.display_order))
                .filter(PipelineStage.org_id == org_id)
                .scalar()
            )
            display_order = (current + 1) if current is not None else 0
        stage = PipelineStage(
            org_id=org_id,
            name=name,
            color=color,
            is_won=is_won,
            is_lost=is_lost,
            display_order=display_order,
        )
        self.session.add(stage)
        self.session.commit()
        self.session.refresh(stage)
        return stage

    def update_stage(self, org_id: int, stage_id: int, **kwargs) -> PipelineStage:
        stage = (
            self.session.query(PipelineStage)
            .filter(PipelineStage.org_id == org_id, PipelineStage.id == stage_id)
            .first()
        )
        if not stage:
            raise NotFoundError("Pipeline stage not found")
        for field in ("name", "color", "is_won", "is_lost", "display_order"):
            if kwargs.get(field) is not None:
                setattr(stage, field, kwargs[field])
        if stage.is_won and stage.is_lost:
            raise ValidationError("A stage cannot be both won and lost")
        self.session.commit()
        self.session.refresh(stage)
        return stage

    def reorder_stages(self, org_id: int, stage_ids: list[int]) -> list[PipelineStage]:
        stages = {s.id: s for s in self.list_stages(org_id)}
        if set(stage_ids) != set(stages):
            raise ValidationError("stage_ids must list every stage exactly once")
        for order, stage_id in enumerate(stage_ids):
            stages[stage_id].display_order = order
        self.session.commit()
        return self.list_stages(org_id)

    def delete_stage(self, org_id: int, stage_id: int) -> bool:
        stage = (
            self.session.query(PipelineStage)
            .filter(PipelineStage.org_id == org_id, PipelineStage.id == stage_id)
            .first()
        )
        if not stage:
            return False
        in_use = self.session.query(Deal.id).filter(Deal.stage_id == stage_id).first()
        if in_use:
            raise ValidationError("Move deals out of this stage before deleting it")
        self.session.delete(stage)
        self.session.commit()
        return True
