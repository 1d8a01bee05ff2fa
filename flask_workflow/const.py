"""
Workflow constants.

Status, type and priority enumerations shared by the models, the
engine and the scheduler.
"""

from enum import Enum


class TemplateStatus(Enum):
    """Process template lifecycle status."""
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class ProcessStatus(Enum):
    """Process instance status."""
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"


class StepStatus(Enum):
    """Step instance status."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepType(Enum):
    """Template step types."""
    USER_TASK = "user_task"
    SERVICE_TASK = "service_task"
    DECISION = "decision"
    PARALLEL = "parallel"
    EXCLUSIVE = "exclusive"
    START = "start"
    END = "end"


class AssigneeType(Enum):
    """How a template step resolves its assignee."""
    USER = "user"
    ROLE = "role"
    DEPARTMENT = "department"
    SYSTEM = "system"


class ProcessPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class NotificationPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class NotificationType(Enum):
    TASK_ASSIGNED = "task_assigned"
    TASK_REASSIGNED = "task_reassigned"
    TASK_COMPLETED = "task_completed"
    TASK_OVERDUE = "task_overdue"
    TASK_ESCALATED = "task_escalated"
    PROCESS_STARTED = "process_started"
    PROCESS_COMPLETED = "process_completed"
    PROCESS_CANCELLED = "process_cancelled"
    COMMENT_ADDED = "comment_added"
    SYSTEM_NOTIFICATION = "system_notification"


class HistoryAction(Enum):
    """Audit actions recorded in the process history log."""
    PROCESS_CREATED = "process_created"
    PROCESS_STARTED = "process_started"
    PROCESS_COMPLETED = "process_completed"
    PROCESS_CANCELLED = "process_cancelled"
    PROCESS_SUSPENDED = "process_suspended"
    PROCESS_RESUMED = "process_resumed"
    STEP_CREATED = "step_created"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_ASSIGNED = "step_assigned"
    STEP_REASSIGNED = "step_reassigned"
    STEP_ESCALATED = "step_escalated"
    STEP_SKIPPED = "step_skipped"
    STEP_FAILED = "step_failed"
    COMMENT_ADDED = "comment_added"
    VARIABLE_UPDATED = "variable_updated"


class UserRole(Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    USER = "user"


class OutboxStatus(Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


# Step statuses that still represent work in flight
LIVE_STEP_STATUSES = (StepStatus.PENDING.value, StepStatus.IN_PROGRESS.value)

# Process statuses after which no step may be created
TERMINAL_PROCESS_STATUSES = (ProcessStatus.COMPLETED.value, ProcessStatus.CANCELLED.value)

MAX_ESCALATION_LEVEL = 3
