"""
User directory model.
"""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String
from sqlalchemy.orm import validates

from ..const import UserRole
from .sqla import Model


class User(Model):
    """Workflow participant: assignee, escalation target or digest recipient."""

    __tablename__ = 'wf_user'
    __table_args__ = (
        Index('ix_wf_user_role_active', 'role', 'is_active'),
        Index('ix_wf_user_department_active', 'department', 'is_active'),
    )

    id = Column(Integer, primary_key=True)
    username = Column(String(64), unique=True, nullable=False)
    email = Column(String(120), unique=True, nullable=False)
    first_name = Column(String(64))
    last_name = Column(String(64))
    role = Column(String(20), default=UserRole.USER.value, nullable=False)
    department = Column(String(100))
    is_active = Column(Boolean, default=True, nullable=False)
    email_notifications = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    @validates('role')
    def validate_role(self, key, role):
        valid_roles = [r.value for r in UserRole]
        if role not in valid_roles:
            raise ValueError(f"Invalid role: {role}. Must be one of: {valid_roles}")
        return role

    @property
    def full_name(self) -> str:
        name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return name or self.username

    def __repr__(self):
        return f'<User {self.username} ({self.role})>'
