"""
Template payload schemas.

Structural validation of template payloads with marshmallow, followed by
a graph integrity check so that dangling step references are rejected at
template-validation time and never reach the engine.
"""

import logging
from collections import Counter
from typing import Any, Dict

from marshmallow import (
    EXCLUDE, Schema, ValidationError, fields, post_load, pre_load, validate,
    validates_schema
)

from ..const import AssigneeType, StepType
from ..exceptions import TemplateValidationError
from .graph import NextStep, StepDefinition, TemplateGraph

log = logging.getLogger(__name__)


class NextStepSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    step_id = fields.String(required=True, validate=validate.Length(min=1))
    condition = fields.String(load_default="", allow_none=True)

    @post_load
    def make_next_step(self, data, **kwargs):
        return NextStep(step_id=data['step_id'], condition=data.get('condition') or "")


class StepDefinitionSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    step_id = fields.String(required=True, validate=validate.Length(min=1, max=100))
    name = fields.String(required=True, validate=validate.Length(min=1, max=200))
    description = fields.String(load_default="")
    type = fields.String(
        required=True,
        validate=validate.OneOf([t.value for t in StepType])
    )
    assignee_type = fields.String(
        load_default=AssigneeType.USER.value,
        validate=validate.OneOf([a.value for a in AssigneeType])
    )
    assignees = fields.List(fields.String(), load_default=list)
    next_steps = fields.List(fields.Nested(NextStepSchema), load_default=list)
    time_limit_hours = fields.Float(allow_none=True, load_default=None,
                                    validate=validate.Range(min=0))
    auto_complete = fields.Boolean(load_default=False)

    @pre_load
    def normalize_assignee_type(self, data, **kwargs):
        # "auto" is the legacy spelling of a system-assigned step
        if isinstance(data, dict) and data.get('assignee_type') == 'auto':
            data = dict(data, assignee_type=AssigneeType.SYSTEM.value)
        return data

    @post_load
    def make_step(self, data, **kwargs):
        return StepDefinition(
            step_id=data['step_id'],
            name=data['name'],
            description=data.get('description') or "",
            type=data['type'],
            assignee_type=data['assignee_type'],
            assignees=tuple(data['assignees']),
            next_steps=tuple(data['next_steps']),
            time_limit_hours=data.get('time_limit_hours'),
            auto_complete=data['auto_complete'],
        )


class ProcessTemplateSchema(Schema):
    """Schema for a full template payload."""

    class Meta:
        unknown = EXCLUDE

    name = fields.String(load_default="")
    version = fields.Integer(load_default=1, validate=validate.Range(min=1))
    steps = fields.List(fields.Nested(StepDefinitionSchema), required=True,
                        validate=validate.Length(min=1))
    start_step = fields.String(required=True, validate=validate.Length(min=1))
    end_steps = fields.List(fields.String(), load_default=list)

    @validates_schema
    def validate_graph(self, data, **kwargs):
        """Reject duplicate step ids and references to undefined steps."""
        steps = data['steps']
        duplicates = [sid for sid, count in Counter(s.step_id for s in steps).items()
                      if count > 1]
        if duplicates:
            raise ValidationError(
                f"Duplicate step ids: {', '.join(sorted(duplicates))}", 'steps'
            )

        graph = TemplateGraph(
            steps=tuple(steps),
            start_step=data['start_step'],
            end_steps=frozenset(data['end_steps']),
        )
        problems = graph.dangling_references()
        if problems:
            raise ValidationError({
                key: [f"Unknown step reference: {ref}" for ref in refs]
                for key, refs in problems.items()
            })

    @post_load
    def make_graph(self, data, **kwargs):
        return TemplateGraph(
            steps=tuple(data['steps']),
            start_step=data['start_step'],
            end_steps=frozenset(data['end_steps']),
            name=data['name'],
            version=data['version'],
        )


def validate_template(payload: Dict[str, Any]) -> TemplateGraph:
    """
    Validate a template payload and return its graph.

    Raises:
        TemplateValidationError: if the payload is malformed or the graph
            references undefined steps
    """
    try:
        return ProcessTemplateSchema().load(payload)
    except ValidationError as e:
        log.info(f"Template validation failed: {e.messages}")
        raise TemplateValidationError("Invalid process template", messages=e.messages)
