"""
Tag service - org-defined labels and their attachment to records.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.orm import Session

from trellis.exceptions import ConflictError, NotFoundError, ValidationError
from trellis.models import Company, Contact, Deal, EntityTag, EntityType, Tag
from trellis.services.automation_service import AutomationService

logger = logging.getLogger(__name__)

TAGGABLE = {
    EntityType.CONTACT: Contact,
    EntityType.COMPANY: Company,
    EntityType.DEAL: Deal,
}


class TagService:
    """Service for tags and entity tagging."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, org_id: int, tag_id: int) -> Optional[Tag]:
        return self.session.query(Tag).filter(Tag.org_id == org_id, Tag.id == tag_id).first()

    def list(self, org_id: int, entity_type: Optional[EntityType] = None) -> list[Tag]:
        query = self.session.query(Tag).filter(Tag.org_id == org_id)
        if entity_type:
            query = query.filter(Tag.entity_type == entity_type)
        return query.order_by(Tag.name).all()

    def create(self, org_id: int, name: str, entity_type: EntityType, color: Optional[str] = None) -> Tag:
        if entity_type not in TAGGABLE:
            raise ValidationError(f"Cannot tag {entity_type.value} records")
        name = (name or "").strip()
        if not name:
            raise ValidationError("Tag name is required")
        existing = (
            self.session.query(Tag)
            .filter(Tag.org_id == org_id, Tag.name == name, Tag.entity_type == entity_type)
            .first()
        )
        if existing:
            raise ConflictError(f"Tag '{name}' already exists")
        tag = Tag(org_id=org_id, name=name, entity_type=entity_type)
        if color:
            tag.color = color
        self.session.add(tag)
        self.session.commit()
        self.session.refresh(tag)
        return tag

    def delete(self, org_id: int, tag_id: int) -> bool:
        tag = self.get(org_id, tag_id)
        if not tag:
            return False
        self.session.query(EntityTag).filter(EntityTag.tag_id == tag_id).delete(
            synchronize_session=False
        )
        self.session.delete(tag)
        self.session.commit()
        return True

    def tags_for(self, org_id: int, entity_type: EntityType, entity_id: int) -> list[Tag]:
        return (
            self.session.query(Tag)
            .join(EntityTag, EntityTag.tag_id == Tag.id)
            .filter(
                Tag.org_id == org_id,
                EntityTag.entity_type == entity_type,
                EntityTag.entity_id == entity_id,
            )
            .order_by(Tag.name)
            .all()
        )

    def attach(self, org_id: int, tag_id: int, entity_id: int) -> EntityTag:
        """
        Attach a tag to a record of the tag's entity type.

        Tagging a contact auto-enrolls it in active automations triggered by
        that tag.
        """
        tag = self.get(org_id, tag_id)
        if not tag:
            raise NotFoundError("Tag not found")
        model = TAGGABLE[tag.entity_type]
        record = (
            self.session.query(model.id)
            .filter(model.org_id == org_id, model.id == entity_id)
            .first()
        )
        if not record:
            raise NotFoundError(f"{tag.entity_type.value.title()} not found")

        existing = (
            self.session.query(EntityTag)
            .filter(
                EntityTag.tag_id == tag_id,
                EntityTag.entity_type == tag.entity_type,
                EntityTag.entity_id == entity_id,
            )
            .first()
        )
        if existing:
            return existing

        link = EntityTag(tag_id=tag_id, entity_type=tag.entity_type, entity_id=entity_id)
        self.session.add(link)
        self.session.flush()
        if tag.entity_type == EntityType.CONTACT:
            enrolled = AutomationService(self.session).handle_tag_added(org_id, entity_id, tag_id)
            if enrolled:
                logger.info(f"Tag {tag_id} on contact {entity_id} started {enrolled} automation(s)")
        self.session.commit()
        self.session.refresh(link)
        return link

    def detach(self, org_id: int, tag_id: int, entity_id: int) -> bool:
        tag = self.get(org_id, tag_id)
        if not tag:
            return False
        deleted = (
            self.session.query(EntityTag)
            .filter(
                EntityTag.tag_id == tag_id,
                EntityTag.entity_type == tag.entity_type,
                EntityTag.entity_id == entity_id,
            )
            .delete(synchronize_session=False)
        )
        self.session.commit()
        return bool(deleted)
