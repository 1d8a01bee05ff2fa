"""
Serialization schemas for the workflow models.
"""

from marshmallow import fields
from marshmallow_sqlalchemy import SQLAlchemyAutoSchema

from .models import Notification, ProcessHistory, ProcessInstance, StepInstance


class StepInstanceSchema(SQLAlchemyAutoSchema):
    """Schema for StepInstance serialization."""

    class Meta:
        model = StepInstance
        include_fk = True
        exclude = ('version_id',)

    form_data = fields.Raw()
    variables = fields.Raw()
    comments = fields.Raw()
    escalation_history = fields.Raw()
    created_at = fields.DateTime(dump_only=True)
    updated_at = fields.DateTime(dump_only=True)
    is_overdue = fields.Method('get_is_overdue', dump_only=True)

    def get_is_overdue(self, obj):
        return obj.is_overdue()


class ProcessInstanceSchema(SQLAlchemyAutoSchema):
    """Schema for ProcessInstance serialization, steps included."""

    class Meta:
        model = ProcessInstance
        include_fk = True
        exclude = ('version_id',)

    current_steps = fields.Raw()
    variables = fields.Raw()
    steps = fields.Nested(StepInstanceSchema, many=True, dump_only=True)
    created_at = fields.DateTime(dump_only=True)
    updated_at = fields.DateTime(dump_only=True)


class ProcessHistorySchema(SQLAlchemyAutoSchema):

    class Meta:
        model = ProcessHistory

    details = fields.Raw(data_key='metadata', dump_only=True)
    timestamp = fields.DateTime(dump_only=True)


class NotificationSchema(SQLAlchemyAutoSchema):

    class Meta:
        model = Notification
