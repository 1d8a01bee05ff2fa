"""
Process template lifecycle.

Templates are edited as drafts, validated and published, and never
changed once published: a change to a published template is made on a
new draft version.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List

from ..const import TemplateStatus
from ..exceptions import InvalidStateError, NotFoundError
from ..models import ProcessTemplate, db
from ..template import validate_template

log = logging.getLogger(__name__)

EDITABLE_FIELDS = ('name', 'description', 'category', 'steps', 'start_step', 'end_steps')


class TemplateService:

    def get(self, template_id: int) -> ProcessTemplate:
        template = db.session.get(ProcessTemplate, template_id)
        if template is None:
            raise NotFoundError(f"Process template {template_id} not found")
        return template

    def create_template(self, payload: Dict[str, Any], created_by: int = None) -> ProcessTemplate:
        """Validate ``payload`` and store it as a draft template."""
        graph = validate_template(payload)
        template = ProcessTemplate(
            name=payload.get('name') or graph.name,
            description=payload.get('description'),
            category=payload.get('category'),
            version=graph.version,
            status=TemplateStatus.DRAFT.value,
            steps=list(payload['steps']),
            start_step=graph.start_step,
            end_steps=sorted(graph.end_steps),
            created_by=created_by,
        )
        db.session.add(template)
        db.session.commit()
        log.info(f"Template created: {template.name} v{template.version} ({template.id})")
        return template

    def update_template(self, template_id: int, **changes) -> ProcessTemplate:
        template = self.get(template_id)
        if template.status != TemplateStatus.DRAFT.value:
            raise InvalidStateError(
                f"Template {template.id} is {template.status}; only drafts can be edited, "
                f"create a new version instead"
            )
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")

        payload = dict(template.graph_payload(), **changes)
        validate_template(payload)
        for key, value in changes.items():
            setattr(template, key, value)
        db.session.commit()
        log.info(f"Template updated: {template.name} v{template.version} ({template.id})")
        return template

    def publish(self, template_id: int, actor_id: int = None) -> ProcessTemplate:
        template = self.get(template_id)
        if template.status != TemplateStatus.DRAFT.value:
            raise InvalidStateError("Only draft templates can be published")
        validate_template(template.graph_payload())

        template.status = TemplateStatus.PUBLISHED.value
        template.published_by = actor_id
        template.published_at = datetime.utcnow()
        db.session.commit()
        log.info(f"Template published: {template.name} v{template.version} ({template.id})")
        return template

    def new_version(self, template_id: int, actor_id: int = None) -> ProcessTemplate:
        """Clone a published or archived template into a new draft version."""
        source = self.get(template_id)
        if source.status == TemplateStatus.DRAFT.value:
            raise InvalidStateError("Template is still a draft, edit it in place")

        latest = (
            db.session.query(db.func.max(ProcessTemplate.version))
            .filter(ProcessTemplate.name == source.name)
            .scalar()
        ) or source.version
        template = ProcessTemplate(
            name=source.name,
            description=source.description,
            category=source.category,
            version=latest + 1,
            status=TemplateStatus.DRAFT.value,
            steps=list(source.steps or []),
            start_step=source.start_step,
            end_steps=list(source.end_steps or []),
            created_by=actor_id,
        )
        db.session.add(template)
        db.session.commit()
        log.info(f"Template {source.name} v{template.version} drafted from v{source.version}")
        return template

    def archive(self, template_id: int) -> ProcessTemplate:
        template = self.get(template_id)
        if template.status != TemplateStatus.PUBLISHED.value:
            raise InvalidStateError("Only published templates can be archived")
        template.status = TemplateStatus.ARCHIVED.value
        db.session.commit()
        log.info(f"Template archived: {template.name} v{template.version} ({template.id})")
        return template

    def published(self) -> List[ProcessTemplate]:
        return (
            db.session.query(ProcessTemplate)
            .filter(ProcessTemplate.status == TemplateStatus.PUBLISHED.value)
            .order_by(ProcessTemplate.name, ProcessTemplate.version)
            .all()
        )
