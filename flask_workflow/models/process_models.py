"""
Core data models for the workflow engine.

Templates, process instances, step instances and the append-only
process history log.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint
)
from sqlalchemy.orm import relationship, validates

from ..const import (
    LIVE_STEP_STATUSES, HistoryAction, ProcessPriority, ProcessStatus, StepStatus,
    TemplateStatus
)
from ..template import TemplateGraph, validate_template
from .sqla import JSONType, Model

log = logging.getLogger(__name__)


class ProcessTemplate(Model):
    """
    Versioned process template.

    Stores the step graph as JSON. Editable while in draft; immutable once
    published, further changes go into a new version.
    """

    __tablename__ = 'wf_process_template'
    __table_args__ = (
        UniqueConstraint('name', 'version', name='uq_wf_template_name_version'),
        Index('ix_wf_template_status', 'status'),
    )

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    version = Column(Integer, default=1, nullable=False)
    category = Column(String(50))
    status = Column(String(20), default=TemplateStatus.DRAFT.value, nullable=False)

    steps = Column(JSONType, nullable=False, default=list)
    start_step = Column(String(100), nullable=False)
    end_steps = Column(JSONType, nullable=False, default=list)

    created_by = Column(Integer)
    published_by = Column(Integer)
    published_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    instances = relationship("ProcessInstance", back_populates="template")

    @validates('status')
    def validate_status(self, key, status):
        valid_statuses = [s.value for s in TemplateStatus]
        if status not in valid_statuses:
            raise ValueError(f"Invalid status: {status}. Must be one of: {valid_statuses}")
        return status

    @property
    def is_published(self) -> bool:
        return self.status == TemplateStatus.PUBLISHED.value

    def graph_payload(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'version': self.version or 1,
            'steps': self.steps or [],
            'start_step': self.start_step,
            'end_steps': self.end_steps or [],
        }

    def to_graph(self) -> TemplateGraph:
        """Parse the stored JSON into an immutable graph."""
        graph = validate_template(self.graph_payload())
        return TemplateGraph(
            steps=graph.steps,
            start_step=graph.start_step,
            end_steps=graph.end_steps,
            template_id=self.id,
            name=self.name,
            version=self.version or 1,
        )

    def __repr__(self):
        return f'<ProcessTemplate {self.name} v{self.version} ({self.status})>'


class ProcessInstance(Model):
    """
    One runtime execution of a process template.

    ``current_steps`` holds the step ids of the template steps in flight;
    it is always replaced, never mutated in place, so that the change is
    picked up by the session.
    """

    __tablename__ = 'wf_process_instance'
    __table_args__ = (
        Index('ix_wf_instance_template_status', 'template_id', 'status'),
        Index('ix_wf_instance_initiator_status', 'initiated_by', 'status'),
        Index('ix_wf_instance_updated', 'status', 'updated_at'),
    )

    id = Column(Integer, primary_key=True)
    template_id = Column(Integer, ForeignKey('wf_process_template.id'), nullable=False)

    name = Column(String(100), nullable=False)
    description = Column(Text)
    status = Column(String(20), default=ProcessStatus.DRAFT.value, nullable=False)
    priority = Column(String(20), default=ProcessPriority.MEDIUM.value, nullable=False)
    initiated_by = Column(Integer, nullable=False)

    current_steps = Column(JSONType, nullable=False, default=list)
    variables = Column(JSONType, nullable=False, default=dict)

    start_date = Column(DateTime)
    end_date = Column(DateTime)
    due_date = Column(DateTime)
    completion_percentage = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    version_id = Column(Integer, nullable=False)
    __mapper_args__ = {'version_id_col': version_id}

    template = relationship("ProcessTemplate", back_populates="instances")
    steps = relationship("StepInstance", back_populates="process_instance",
                         cascade="all, delete-orphan", order_by="StepInstance.id")

    @validates('status')
    def validate_status(self, key, status):
        valid_statuses = [s.value for s in ProcessStatus]
        if status not in valid_statuses:
            raise ValueError(f"Invalid status: {status}. Must be one of: {valid_statuses}")
        return status

    @validates('completion_percentage')
    def validate_completion(self, key, value):
        if value is not None and not 0 <= value <= 100:
            raise ValueError(f"completion_percentage out of range: {value}")
        return value

    def live_steps(self) -> List['StepInstance']:
        return [s for s in self.steps if s.status in LIVE_STEP_STATUSES]

    def add_current_step(self, step_id: str):
        if step_id not in (self.current_steps or []):
            self.current_steps = list(self.current_steps or []) + [step_id]

    def remove_current_step(self, step_id: str):
        self.current_steps = [s for s in (self.current_steps or []) if s != step_id]

    def __repr__(self):
        return f'<ProcessInstance {self.id} ({self.status}) - {self.name}>'


class StepInstance(Model):
    """
    One execution of a template step within a process instance.

    Escalation only touches ``escalated``, ``escalation_level`` and
    ``escalation_history``; status changes go through the step state
    machine.
    """

    __tablename__ = 'wf_step_instance'
    __table_args__ = (
        Index('ix_wf_step_instance_step', 'process_instance_id', 'step_id'),
        Index('ix_wf_step_assignee_status', 'assigned_to', 'status'),
        Index('ix_wf_step_status_due', 'status', 'due_date'),
        Index('ix_wf_step_role_status', 'assigned_role', 'status'),
        Index('ix_wf_step_department_status', 'assigned_department', 'status'),
    )

    id = Column(Integer, primary_key=True)
    process_instance_id = Column(Integer, ForeignKey('wf_process_instance.id'), nullable=False)

    step_id = Column(String(100), nullable=False)
    name = Column(String(200), nullable=False)
    description = Column(Text)
    step_type = Column(String(30), nullable=False)
    assignee_type = Column(String(20))
    status = Column(String(20), default=StepStatus.PENDING.value, nullable=False)

    assigned_to = Column(Integer)
    assigned_role = Column(String(100))
    assigned_department = Column(String(100))

    start_date = Column(DateTime)
    end_date = Column(DateTime)
    due_date = Column(DateTime)

    form_data = Column(JSONType, nullable=False, default=dict)
    variables = Column(JSONType, nullable=False, default=dict)
    comments = Column(JSONType, nullable=False, default=list)

    escalated = Column(Boolean, default=False, nullable=False)
    escalation_level = Column(Integer, default=0, nullable=False)
    escalation_history = Column(JSONType, nullable=False, default=list)

    completed_by = Column(Integer)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    version_id = Column(Integer, nullable=False)
    __mapper_args__ = {'version_id_col': version_id}

    process_instance = relationship("ProcessInstance", back_populates="steps")

    @validates('status')
    def validate_status(self, key, status):
        valid_statuses = [s.value for s in StepStatus]
        if status not in valid_statuses:
            raise ValueError(f"Invalid status: {status}. Must be one of: {valid_statuses}")
        return status

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STEP_STATUSES

    def is_overdue(self, now: datetime = None) -> bool:
        now = now or datetime.utcnow()
        return bool(self.due_date and self.is_live and now > self.due_date)

    def is_assigned_to_other(self, actor_id: int) -> bool:
        return self.assigned_to is not None and self.assigned_to != actor_id

    def can_complete(self, actor_id: int) -> bool:
        """Live and either unassigned or assigned to ``actor_id``."""
        return self.is_live and not self.is_assigned_to_other(actor_id)

    def record_escalation(self, level: int, escalated_to: Optional[int], reason: str,
                          at: datetime = None):
        self.escalated = True
        self.escalation_level = level
        self.escalation_history = list(self.escalation_history or []) + [{
            'level': level,
            'escalated_to': escalated_to,
            'at': (at or datetime.utcnow()).isoformat(),
            'reason': reason,
        }]

    def __repr__(self):
        return f'<StepInstance {self.step_id} ({self.status}) - {self.name}>'


class ProcessHistory(Model):
    """
    Append-only audit log.

    Keyed by plain references to instances and steps; rows are only ever
    removed by the retention cleanup sweep.
    """

    __tablename__ = 'wf_process_history'
    __table_args__ = (
        Index('ix_wf_history_instance_ts', 'process_instance_id', 'timestamp'),
        Index('ix_wf_history_step_ts', 'step_instance_id', 'timestamp'),
        Index('ix_wf_history_action_ts', 'action', 'timestamp'),
    )

    id = Column(Integer, primary_key=True)
    process_instance_id = Column(Integer, nullable=False)
    step_instance_id = Column(Integer)
    action = Column(String(50), nullable=False)
    performed_by = Column(Integer)
    from_status = Column(String(20))
    to_status = Column(String(20))
    comments = Column(Text)
    details = Column('metadata', JSONType, nullable=False, default=dict)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)

    @validates('action')
    def validate_action(self, key, action):
        valid_actions = [a.value for a in HistoryAction]
        if action not in valid_actions:
            raise ValueError(f"Invalid history action: {action}")
        return action

    def __repr__(self):
        return f'<ProcessHistory {self.action} ({self.process_instance_id}) - {self.timestamp}>'
