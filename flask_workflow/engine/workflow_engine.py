"""
Workflow Execution Engine.

Drives process instances through their template graph: starting a
process, creating and assigning step instances, completing steps,
routing to the next steps and completing the process, plus the
administrative step operations and overdue escalation.

Every public operation is one database transaction. Building blocks
(``create_step_instance``, ``process_step_completion``,
``complete_process``) take part in the caller's transaction and never
commit on their own.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from dateutil import parser as date_parser
from dateutil import tz
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..const import (
    LIVE_STEP_STATUSES, TERMINAL_PROCESS_STATUSES, HistoryAction, NotificationPriority,
    NotificationType, ProcessStatus, StepStatus, StepType, TemplateStatus, UserRole
)
from ..exceptions import (
    ConcurrentModificationError, ForbiddenError, InvalidInputError, InvalidStateError,
    NotFoundError, StepNotCompletableError, WorkflowError
)
from ..models import ProcessInstance, ProcessTemplate, StepInstance, db
from ..services.outbox import Outbox
from ..template import StepDefinition, TemplateGraph
from .assignment import (
    AssignmentStrategy, EscalationTargetStrategy, FirstAssigneeStrategy,
    FirstEscalationTargetStrategy
)
from .collaborators import (
    HistorySink, SQLAHistorySink, SQLATemplateRepository, SQLAUserDirectory,
    TemplateRepository, UserDirectory
)
from .routing import RoutingResolver
from .state_machine import ProcessStateMachine, StepStateMachine

log = logging.getLogger(__name__)

# Upper bound on consecutive steps finishing inline (service tasks,
# auto-complete) before the engine refuses to continue.
MAX_INLINE_STEPS = 100


class WorkflowEngine:
    """
    Main workflow engine.

    Collaborators and strategies are injected; the defaults are backed by
    the workflow SQLAlchemy models.
    """

    def __init__(self, templates: TemplateRepository = None, users: UserDirectory = None,
                 history: HistorySink = None, outbox: Outbox = None,
                 routing: RoutingResolver = None,
                 assignment_strategy: AssignmentStrategy = None,
                 escalation_strategy: EscalationTargetStrategy = None,
                 dispatcher=None, clock: Callable[[], datetime] = None):
        self.templates = templates or SQLATemplateRepository()
        self.users = users or SQLAUserDirectory()
        self.history = history or SQLAHistorySink()
        self.outbox = outbox or Outbox()
        self.routing = routing or RoutingResolver()
        self.assignment_strategy = assignment_strategy or FirstAssigneeStrategy()
        self.escalation_strategy = escalation_strategy or FirstEscalationTargetStrategy()
        self.dispatcher = dispatcher
        self.clock = clock or datetime.utcnow

        self.step_machine = StepStateMachine()
        self.process_machine = ProcessStateMachine()

    # ------------------------------------------------------------------
    # Transactions and lookups
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self, operation: str):
        """Commit on success, roll back and re-raise on any error."""
        try:
            yield
            db.session.commit()
        except StaleDataError as e:
            db.session.rollback()
            log.warning(f"{operation}: concurrent modification detected: {e}")
            raise ConcurrentModificationError(
                f"{operation} failed: the record was modified concurrently, reload and retry"
            )
        except WorkflowError as e:
            db.session.rollback()
            log.info(f"{operation} rejected: {e.message}")
            raise
        except SQLAlchemyError as e:
            db.session.rollback()
            log.error(f"{operation} failed with a database error: {e}")
            raise
        except Exception as e:
            db.session.rollback()
            log.error(f"{operation} failed: {e}")
            raise
        self._after_commit()

    def _after_commit(self):
        if self.dispatcher is None:
            return
        if not current_app.config.get('WORKFLOW_OUTBOX_EAGER', False):
            return
        try:
            self.dispatcher.drain()
        except Exception as e:
            log.error(f"Eager outbox drain failed: {e}")

    def _get_instance(self, instance_id: int) -> ProcessInstance:
        instance = db.session.get(ProcessInstance, instance_id)
        if instance is None:
            raise NotFoundError(f"Process instance {instance_id} not found",
                                process_instance_id=instance_id)
        return instance

    def _get_step(self, step_instance_id: int) -> StepInstance:
        step = db.session.get(StepInstance, step_instance_id)
        if step is None:
            raise NotFoundError(f"Step instance {step_instance_id} not found",
                                step_instance_id=step_instance_id)
        return step

    def _graph_for(self, instance: ProcessInstance) -> TemplateGraph:
        graph = self.templates.find_by_id(instance.template_id)
        if graph is None:
            raise NotFoundError(f"Process template {instance.template_id} not found",
                                process_instance_id=instance.id)
        return graph

    def _get_active_user(self, user_id: int, message: str = "Invalid or inactive user"):
        user = self.users.get(user_id)
        if user is None or not getattr(user, 'is_active', False):
            raise NotFoundError(f"{message}: {user_id}")
        return user

    def _require_active(self, instance: ProcessInstance):
        if instance.status != ProcessStatus.ACTIVE.value:
            raise InvalidStateError(
                f"Process {instance.id} is {instance.status}, not active",
                process_instance_id=instance.id,
            )

    def _record(self, action: HistoryAction, instance: ProcessInstance,
                step: StepInstance = None, performed_by: int = None,
                from_status: str = None, to_status: str = None,
                comments: str = None, metadata: Dict[str, Any] = None):
        self.history.append({
            'process_instance_id': instance.id,
            'step_instance_id': step.id if step is not None else None,
            'action': action.value,
            'performed_by': performed_by,
            'from_status': from_status,
            'to_status': to_status,
            'comments': comments,
            'metadata': metadata or {},
            'timestamp': self.clock(),
        })

    def _notify(self, user_id: Optional[int], type: NotificationType, title: str, message: str,
                instance: ProcessInstance = None, step: StepInstance = None,
                priority: NotificationPriority = NotificationPriority.MEDIUM):
        self.outbox.notify(
            user_id=user_id,
            type=type.value,
            title=title,
            message=message,
            related_process=instance.id if instance is not None else None,
            related_step=step.id if step is not None else None,
            priority=priority.value,
        )

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def evaluate_condition(self, condition: Optional[str], step_instance=None,
                           decision: Optional[str] = None) -> bool:
        return self.routing.evaluate_condition(condition, step_instance, decision)

    def determine_next_steps(self, step_def: StepDefinition, step_instance=None,
                             decision: Optional[str] = None) -> List[str]:
        return self.routing.determine_next_steps(step_def, step_instance, decision)

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    def create_process(self, template_id: int, initiated_by: int, name: str,
                       description: str = None, priority: str = "medium",
                       variables: Dict[str, Any] = None,
                       due_date: Union[str, datetime] = None) -> ProcessInstance:
        """Create a draft process instance from a published template."""
        with self._transaction('create_process'):
            template = db.session.get(ProcessTemplate, template_id)
            if template is None:
                raise NotFoundError(f"Process template {template_id} not found")
            if template.status != TemplateStatus.PUBLISHED.value:
                raise InvalidStateError(
                    f"Process template {template_id} is {template.status}, not published"
                )

            instance = ProcessInstance(
                template_id=template_id,
                name=name,
                description=description,
                status=ProcessStatus.DRAFT.value,
                priority=priority,
                initiated_by=initiated_by,
                current_steps=[],
                variables=dict(variables or {}),
                due_date=parse_due_date(due_date),
                completion_percentage=0,
            )
            db.session.add(instance)
            db.session.flush()
            self._record(HistoryAction.PROCESS_CREATED, instance, performed_by=initiated_by,
                         to_status=instance.status, metadata={'template_id': template_id})

        log.info(f"Process created: {instance.name} ({instance.id})")
        return instance

    def start_process(self, instance_id: int, actor_id: int) -> ProcessInstance:
        """
        Activate a draft process and create the step instance of its start step.

        Raises:
            NotFoundError: instance or template missing
            InvalidStateError: the process is not in draft
        """
        with self._transaction('start_process'):
            instance = self._get_instance(instance_id)
            if instance.status != ProcessStatus.DRAFT.value:
                raise InvalidStateError(
                    "Process can only be started from draft status",
                    process_instance_id=instance.id,
                )

            graph = self._graph_for(instance)
            start_def = graph.get_start_step()
            if start_def is None:
                raise NotFoundError(
                    f"Start step '{graph.start_step}' not found in template {graph.template_id}",
                    process_instance_id=instance.id,
                )

            from_status = self.process_machine.fire(instance, ProcessStateMachine.START)
            instance.start_date = self.clock()
            instance.current_steps = []
            self._record(HistoryAction.PROCESS_STARTED, instance, performed_by=actor_id,
                         from_status=from_status, to_status=instance.status)

            step = self.create_step_instance(instance, start_def, actor_id)
            instance.add_current_step(start_def.step_id)

            if step.status == StepStatus.COMPLETED.value:
                self.process_step_completion(step, actor_id, graph=graph)

        log.info(f"Process started: {instance.name} ({instance.id})")
        return instance

    def complete_process(self, instance: ProcessInstance, actor_id: int,
                         graph: TemplateGraph = None):
        """
        Mark ``instance`` completed and notify its initiator.

        Step instances still in flight are closed: end steps as completed,
        steps of other parallel branches as cancelled.
        """
        graph = graph or self._graph_for(instance)
        now = self.clock()

        from_status = self.process_machine.fire(instance, ProcessStateMachine.COMPLETE)

        for step in instance.live_steps():
            if graph.is_end_step(step.step_id) or step.step_type == StepType.END.value:
                self.step_machine.fire(step, StepStateMachine.COMPLETE)
                step.completed_by = actor_id
                step.start_date = step.start_date or now
            else:
                self.step_machine.fire(step, StepStateMachine.CANCEL)
                log.info(f"Cancelled parallel step {step.step_id} ({step.id}) "
                         f"on completion of process {instance.id}")
            step.end_date = now

        instance.end_date = now
        instance.completion_percentage = 100
        instance.current_steps = []

        self._record(HistoryAction.PROCESS_COMPLETED, instance, performed_by=actor_id,
                     from_status=from_status, to_status=instance.status)
        self._notify(
            instance.initiated_by,
            NotificationType.PROCESS_COMPLETED,
            "Process Completed",
            f'Process "{instance.name}" has been completed successfully.',
            instance=instance,
        )
        log.info(f"Process completed: {instance.name} ({instance.id})")

    def cancel_process(self, instance_id: int, actor_id: int, reason: str = None) -> ProcessInstance:
        """Cancel a process and every step instance still in flight."""
        with self._transaction('cancel_process'):
            instance = self._get_instance(instance_id)
            if not self._can_manage(instance, actor_id):
                raise ForbiddenError("Insufficient permissions to cancel this process",
                                     process_instance_id=instance.id)
            if instance.status in TERMINAL_PROCESS_STATUSES:
                raise InvalidStateError("Process is already completed or cancelled",
                                        process_instance_id=instance.id)

            now = self.clock()
            from_status = self.process_machine.fire(instance, ProcessStateMachine.CANCEL)
            instance.end_date = now

            cancelled = []
            for step in instance.live_steps():
                self.step_machine.fire(step, StepStateMachine.CANCEL)
                step.end_date = now
                cancelled.append(step)
            instance.current_steps = []

            self._record(HistoryAction.PROCESS_CANCELLED, instance, performed_by=actor_id,
                         from_status=from_status, to_status=instance.status, comments=reason,
                         metadata={'reason': reason,
                                   'cancelled_steps': [s.id for s in cancelled]})

            suffix = f" Reason: {reason}" if reason else ""
            recipients = {instance.initiated_by}
            recipients.update(s.assigned_to for s in cancelled if s.assigned_to is not None)
            recipients.discard(actor_id)
            for user_id in sorted(recipients):
                self._notify(user_id, NotificationType.PROCESS_CANCELLED, "Process Cancelled",
                             f'Process "{instance.name}" has been cancelled.{suffix}',
                             instance=instance)

        log.info(f"Process cancelled: {instance.name} ({instance.id}), "
                 f"{len(cancelled)} step(s) cancelled")
        return instance

    def suspend_process(self, instance_id: int, actor_id: int, reason: str = None) -> ProcessInstance:
        with self._transaction('suspend_process'):
            instance = self._get_instance(instance_id)
            if instance.status != ProcessStatus.ACTIVE.value:
                raise InvalidStateError("Only active processes can be suspended",
                                        process_instance_id=instance.id)
            from_status = self.process_machine.fire(instance, ProcessStateMachine.SUSPEND)
            self._record(HistoryAction.PROCESS_SUSPENDED, instance, performed_by=actor_id,
                         from_status=from_status, to_status=instance.status,
                         comments=reason, metadata={'reason': reason})
        log.info(f"Process suspended: {instance.name} ({instance.id})")
        return instance

    def resume_process(self, instance_id: int, actor_id: int) -> ProcessInstance:
        with self._transaction('resume_process'):
            instance = self._get_instance(instance_id)
            if instance.status != ProcessStatus.SUSPENDED.value:
                raise InvalidStateError("Only suspended processes can be resumed",
                                        process_instance_id=instance.id)
            from_status = self.process_machine.fire(instance, ProcessStateMachine.RESUME)
            self._record(HistoryAction.PROCESS_RESUMED, instance, performed_by=actor_id,
                         from_status=from_status, to_status=instance.status)
        log.info(f"Process resumed: {instance.name} ({instance.id})")
        return instance

    def update_variables(self, instance_id: int, actor_id: int,
                         variables: Dict[str, Any]) -> ProcessInstance:
        with self._transaction('update_variables'):
            instance = self._get_instance(instance_id)
            if instance.status in TERMINAL_PROCESS_STATUSES:
                raise InvalidStateError("Cannot update a completed or cancelled process",
                                        process_instance_id=instance.id)
            instance.variables = {**(instance.variables or {}), **variables}
            self._record(HistoryAction.VARIABLE_UPDATED, instance, performed_by=actor_id,
                         metadata={'variables': sorted(variables)})
        return instance

    def _can_manage(self, instance: ProcessInstance, actor_id: int) -> bool:
        if instance.initiated_by == actor_id:
            return True
        user = self.users.get(actor_id)
        return user is not None and getattr(user, 'role', None) in (
            UserRole.ADMIN.value, UserRole.MANAGER.value
        )

    # ------------------------------------------------------------------
    # Step creation and completion
    # ------------------------------------------------------------------

    def create_step_instance(self, instance: ProcessInstance, step_def: StepDefinition,
                             actor_id: int) -> StepInstance:
        """
        Create the step instance for ``step_def``.

        Assignment comes from the assignment strategy; the due date from
        ``time_limit_hours``. Service tasks and auto-complete steps are
        created already completed by ``actor_id``.
        """
        if instance.status in TERMINAL_PROCESS_STATUSES:
            raise InvalidStateError(
                f"Cannot create steps in a {instance.status} process",
                process_instance_id=instance.id,
            )

        now = self.clock()
        assignment = self.assignment_strategy.assign(step_def, instance)

        step = StepInstance(
            process_instance=instance,
            step_id=step_def.step_id,
            name=step_def.name,
            description=step_def.description,
            step_type=step_def.type,
            assignee_type=step_def.assignee_type,
            status=StepStatus.PENDING.value,
            assigned_to=assignment.assigned_to,
            assigned_role=assignment.assigned_role,
            assigned_department=assignment.assigned_department,
            form_data={},
            variables={},
            comments=[],
            escalated=False,
            escalation_level=0,
            escalation_history=[],
        )

        if step_def.time_limit_hours:
            step.due_date = now + timedelta(hours=step_def.time_limit_hours)

        if step_def.runs_inline:
            self.step_machine.fire(step, StepStateMachine.AUTO_COMPLETE)
            step.start_date = now
            step.end_date = now
            step.completed_by = actor_id

        db.session.add(step)
        db.session.flush()

        self._record(HistoryAction.STEP_CREATED, instance, step, performed_by=actor_id,
                     to_status=step.status,
                     metadata={'step_type': step_def.type,
                               'assignee_type': step_def.assignee_type})

        if step_def.type == StepType.USER_TASK.value and step.assigned_to is not None:
            self._notify(step.assigned_to, NotificationType.TASK_ASSIGNED, "New Task Assigned",
                         f"You have been assigned a new task: {step.name}",
                         instance=instance, step=step)

        log.debug(f"Step instance created: {step.step_id} ({step.id}) in process {instance.id}")
        return step

    def complete_step(self, step_instance_id: int, actor_id: int,
                      form_data: Dict[str, Any] = None, decision: Optional[str] = None) -> StepInstance:
        """
        Complete a step and route the process onward.

        Raises:
            NotFoundError: step, instance or template missing
            InvalidStateError: the process is not active
            StepNotCompletableError: the step is no longer in flight
            ForbiddenError: the step is assigned to someone else
        """
        with self._transaction('complete_step'):
            step = self._get_step(step_instance_id)
            instance = step.process_instance
            self._require_active(instance)
            graph = self._graph_for(instance)

            if not step.can_complete(actor_id):
                if not step.is_live:
                    raise StepNotCompletableError(
                        f"Step {step.id} is {step.status} and cannot be completed",
                        step_instance_id=step.id,
                    )
                raise ForbiddenError("You are not authorized to complete this step",
                                     step_instance_id=step.id)

            now = self.clock()
            from_status = self.step_machine.fire(step, StepStateMachine.COMPLETE)
            step.start_date = step.start_date or now
            step.end_date = now
            step.completed_by = actor_id
            step.form_data = {**(step.form_data or {}), **(form_data or {})}
            if decision is not None:
                step.variables = {**(step.variables or {}), 'decision': decision}

            self._record(HistoryAction.STEP_COMPLETED, instance, step, performed_by=actor_id,
                         from_status=from_status, to_status=step.status,
                         metadata={'form_data': form_data or {}, 'decision': decision})

            self.process_step_completion(step, actor_id, graph=graph)

        log.info(f"Step completed: {step.name} ({step.id})")
        return step

    def process_step_completion(self, step: StepInstance, actor_id: int,
                                graph: TemplateGraph = None, _depth: int = 0) -> List[StepInstance]:
        """
        Route onward from a finished step.

        Creates the next step instances, or completes the process when
        nothing follows or only end steps follow. Steps that finish inline
        are routed onward in turn.
        """
        if _depth > MAX_INLINE_STEPS:
            raise InvalidStateError(
                f"More than {MAX_INLINE_STEPS} consecutive automatic steps, "
                f"the template probably loops",
                process_instance_id=step.process_instance_id,
            )

        instance = step.process_instance
        graph = graph or self._graph_for(instance)
        step_def = graph.get_step(step.step_id)
        if step_def is None:
            raise NotFoundError(
                f"Template step '{step.step_id}' not found in template {graph.template_id}",
                step_instance_id=step.id,
            )

        instance.remove_current_step(step.step_id)

        decision = (step.variables or {}).get('decision')
        next_ids = self.determine_next_steps(step_def, step, decision)

        created = []
        for next_id in next_ids:
            next_def = graph.get_step(next_id)
            if next_def is None:
                log.warning(f"Next step '{next_id}' of '{step.step_id}' is not in the template")
                continue
            if next_id in (instance.current_steps or []):
                log.info(f"Step '{next_id}' is already in flight in process {instance.id}, "
                         f"not creating a second instance")
                continue
            created.append(self.create_step_instance(instance, next_def, actor_id))
            instance.add_current_step(next_id)

        if not next_ids or all(graph.is_end_step(next_id) for next_id in next_ids):
            self.complete_process(instance, actor_id, graph=graph)
            return created

        self.update_completion_percentage(instance)

        for new_step in created:
            if instance.status != ProcessStatus.ACTIVE.value:
                break
            if new_step.status == StepStatus.COMPLETED.value:
                self.process_step_completion(new_step, actor_id, graph=graph, _depth=_depth + 1)

        return created

    def update_completion_percentage(self, instance: ProcessInstance) -> int:
        """Completed step instances over all step instances, rounded half up."""
        steps = list(instance.steps)
        total = len(steps)
        completed = sum(1 for s in steps if s.status == StepStatus.COMPLETED.value)
        instance.completion_percentage = int(100.0 * completed / total + 0.5) if total else 0
        return instance.completion_percentage

    # ------------------------------------------------------------------
    # Administrative step operations
    # ------------------------------------------------------------------

    def start_step(self, step_instance_id: int, actor_id: int) -> StepInstance:
        """Move a pending step to in progress, binding the actor if unassigned."""
        with self._transaction('start_step'):
            step = self._get_step(step_instance_id)
            instance = step.process_instance
            self._require_active(instance)
            if step.is_assigned_to_other(actor_id):
                raise ForbiddenError("You are not assigned to this step", step_instance_id=step.id)
            if step.status != StepStatus.PENDING.value:
                raise InvalidStateError("Only pending steps can be started",
                                        step_instance_id=step.id)

            from_status = self.step_machine.fire(step, StepStateMachine.START)
            step.start_date = self.clock()
            if step.assigned_to is None:
                step.assigned_to = actor_id

            self._record(HistoryAction.STEP_STARTED, instance, step, performed_by=actor_id,
                         from_status=from_status, to_status=step.status)
        log.info(f"Step started: {step.name} ({step.id}) by {actor_id}")
        return step

    def claim_step(self, step_instance_id: int, actor_id: int) -> StepInstance:
        """Bind a role or department assigned step to a matching user and start it."""
        with self._transaction('claim_step'):
            step = self._get_step(step_instance_id)
            instance = step.process_instance
            self._require_active(instance)
            if step.status != StepStatus.PENDING.value:
                raise InvalidStateError("Only pending steps can be claimed",
                                        step_instance_id=step.id)
            if step.assigned_to is not None:
                raise ForbiddenError("Step is already assigned", step_instance_id=step.id)

            user = self._get_active_user(actor_id)
            if step.assigned_role and getattr(user, 'role', None) != step.assigned_role:
                raise ForbiddenError(f"Step requires role '{step.assigned_role}'",
                                     step_instance_id=step.id)
            if step.assigned_department and \
                    getattr(user, 'department', None) != step.assigned_department:
                raise ForbiddenError(f"Step requires department '{step.assigned_department}'",
                                     step_instance_id=step.id)

            from_status = self.step_machine.fire(step, StepStateMachine.START)
            step.assigned_to = actor_id
            step.start_date = self.clock()

            self._record(HistoryAction.STEP_STARTED, instance, step, performed_by=actor_id,
                         from_status=from_status, to_status=step.status,
                         metadata={'claimed': True,
                                   'assigned_role': step.assigned_role,
                                   'assigned_department': step.assigned_department})
        log.info(f"Step claimed: {step.name} ({step.id}) by {actor_id}")
        return step

    def assign_step(self, step_instance_id: int, actor_id: int, assigned_to: int = None,
                    assigned_role: str = None, assigned_department: str = None,
                    due_date: Union[str, datetime] = None, comment: str = None) -> StepInstance:
        with self._transaction('assign_step'):
            step = self._get_step(step_instance_id)
            if step.status != StepStatus.PENDING.value:
                raise InvalidStateError("Only pending steps can be assigned",
                                        step_instance_id=step.id)
            if assigned_to is not None:
                self._get_active_user(assigned_to)

            old_assignee = step.assigned_to
            step.assigned_to = assigned_to
            step.assigned_role = assigned_role
            step.assigned_department = assigned_department
            if due_date is not None:
                step.due_date = parse_due_date(due_date)

            instance = step.process_instance
            self._record(HistoryAction.STEP_ASSIGNED, instance, step, performed_by=actor_id,
                         comments=comment,
                         metadata={'old_assignee': old_assignee,
                                   'new_assignee': assigned_to,
                                   'assigned_role': assigned_role,
                                   'assigned_department': assigned_department})
            if assigned_to is not None:
                self._notify(assigned_to, NotificationType.TASK_ASSIGNED, "New Task Assigned",
                             f"You have been assigned a new task: {step.name}",
                             instance=instance, step=step)
        log.info(f"Step assigned: {step.name} ({step.id}) to {assigned_to}")
        return step

    def reassign_step(self, step_instance_id: int, actor_id: int, assigned_to: int,
                      reason: str = None) -> StepInstance:
        """Hand a live step to another user; in-progress work goes back to pending."""
        with self._transaction('reassign_step'):
            step = self._get_step(step_instance_id)
            if not step.is_live:
                raise InvalidStateError("Only pending or in-progress steps can be reassigned",
                                        step_instance_id=step.id)
            self._get_active_user(assigned_to)

            old_assignee = step.assigned_to
            step.assigned_to = assigned_to
            step.assigned_role = None
            step.assigned_department = None

            from_status = step.status
            if step.status == StepStatus.IN_PROGRESS.value:
                self.step_machine.fire(step, StepStateMachine.RELEASE)
                step.start_date = None

            instance = step.process_instance
            self._record(HistoryAction.STEP_REASSIGNED, instance, step, performed_by=actor_id,
                         from_status=from_status, to_status=step.status, comments=reason,
                         metadata={'old_assignee': old_assignee,
                                   'new_assignee': assigned_to,
                                   'reason': reason})

            suffix = f" Reason: {reason}" if reason else ""
            self._notify(assigned_to, NotificationType.TASK_ASSIGNED, "Task Reassigned to You",
                         f'Task "{step.name}" has been reassigned to you.{suffix}',
                         instance=instance, step=step)
            if old_assignee is not None and old_assignee != assigned_to:
                self._notify(old_assignee, NotificationType.TASK_REASSIGNED, "Task Reassigned",
                             f'Task "{step.name}" has been reassigned to another user.{suffix}',
                             instance=instance, step=step)
        log.info(f"Step reassigned: {step.name} ({step.id}) from {old_assignee} to {assigned_to}")
        return step

    def escalate_step(self, step_instance_id: int, actor_id: int, escalate_to: int,
                      reason: str = None) -> StepInstance:
        """Manual escalation; raises the level by one up to the configured cap."""
        with self._transaction('escalate_step'):
            step = self._get_step(step_instance_id)
            if not step.is_live:
                raise InvalidStateError("Only pending or in-progress steps can be escalated",
                                        step_instance_id=step.id)
            self._get_active_user(escalate_to, "Invalid escalation target")

            max_level = current_app.config.get('WORKFLOW_MAX_ESCALATION_LEVEL', 3)
            if (step.escalation_level or 0) >= max_level:
                raise InvalidStateError(
                    f"Step {step.id} is already at the maximum escalation level {max_level}",
                    step_instance_id=step.id,
                )

            level = (step.escalation_level or 0) + 1
            step.record_escalation(level, escalate_to, reason, at=self.clock())

            instance = step.process_instance
            self._record(HistoryAction.STEP_ESCALATED, instance, step, performed_by=actor_id,
                         comments=reason,
                         metadata={'escalated_to': escalate_to,
                                   'escalation_level': level,
                                   'reason': reason})
            suffix = f" Reason: {reason}" if reason else ""
            self._notify(escalate_to, NotificationType.TASK_ESCALATED, "Task Escalated to You",
                         f'Task "{step.name}" has been escalated to you.{suffix}',
                         instance=instance, step=step, priority=NotificationPriority.HIGH)
        log.info(f"Step escalated: {step.name} ({step.id}) to {escalate_to}, level {level}")
        return step

    def skip_step(self, step_instance_id: int, actor_id: int, reason: str = None) -> StepInstance:
        """Skip a live step and continue the workflow along its default path."""
        with self._transaction('skip_step'):
            step = self._get_step(step_instance_id)
            instance = step.process_instance
            self._require_active(instance)
            if not step.is_live:
                raise InvalidStateError("Only pending or in-progress steps can be skipped",
                                        step_instance_id=step.id)
            graph = self._graph_for(instance)

            from_status = self.step_machine.fire(step, StepStateMachine.SKIP)
            step.end_date = self.clock()

            self._record(HistoryAction.STEP_SKIPPED, instance, step, performed_by=actor_id,
                         from_status=from_status, to_status=step.status, comments=reason,
                         metadata={'reason': reason})

            self.process_step_completion(step, actor_id, graph=graph)
        log.info(f"Step skipped: {step.name} ({step.id})")
        return step

    def add_comment(self, step_instance_id: int, actor_id: int, comment: str,
                    is_internal: bool = False) -> StepInstance:
        with self._transaction('add_comment'):
            step = self._get_step(step_instance_id)
            step.comments = list(step.comments or []) + [{
                'user_id': actor_id,
                'comment': comment,
                'is_internal': is_internal,
                'timestamp': self.clock().isoformat(),
            }]
            instance = step.process_instance
            self._record(HistoryAction.COMMENT_ADDED, instance, step, performed_by=actor_id,
                         metadata={'is_internal': is_internal})
            if not is_internal and step.is_assigned_to_other(actor_id):
                self._notify(step.assigned_to, NotificationType.COMMENT_ADDED,
                             "New Comment on Task",
                             f'A new comment has been added to task "{step.name}"',
                             instance=instance, step=step, priority=NotificationPriority.LOW)
        return step

    # ------------------------------------------------------------------
    # Escalation
    # ------------------------------------------------------------------

    def find_overdue_steps(self, now: datetime, escalated: bool = False) -> List[StepInstance]:
        return (
            db.session.query(StepInstance)
            .filter(
                StepInstance.status.in_(LIVE_STEP_STATUSES),
                StepInstance.due_date.isnot(None),
                StepInstance.due_date < now,
                StepInstance.escalated.is_(escalated),
            )
            .order_by(StepInstance.due_date, StepInstance.id)
            .all()
        )

    def escalate_overdue_tasks(self, now: datetime = None) -> int:
        """
        Escalate overdue steps that have not been escalated yet.

        Each step goes to the target picked by the escalation strategy and
        is flagged, so a second run does nothing until the flag is reset.

        Returns:
            number of steps escalated
        """
        now = now or self.clock()
        escalated = 0
        with self._transaction('escalate_overdue_tasks'):
            overdue = self.find_overdue_steps(now)
            if not overdue:
                log.debug("No overdue tasks to escalate")
                return 0

            roles = current_app.config.get('WORKFLOW_ESCALATION_ROLES', ('manager', 'admin'))
            candidates = self.users.find_active_by_role(*roles)
            reason = "Task overdue - automatic escalation"

            for step in overdue:
                targets = self.escalation_strategy.select(step, candidates)
                if not targets:
                    log.warning(f"No escalation target available for step {step.id}")
                    continue
                target = targets[0]
                level = 1
                step.record_escalation(level, target.id, reason, at=now)

                instance = step.process_instance
                self._record(HistoryAction.STEP_ESCALATED, instance, step, performed_by=None,
                             metadata={'escalated_to': target.id,
                                       'escalation_level': level,
                                       'reason': 'Automatic escalation due to overdue task'})
                self._notify(target.id, NotificationType.TASK_ESCALATED, "Overdue Task Escalated",
                             f'Task "{step.name}" is overdue and has been escalated to you.',
                             instance=instance, step=step, priority=NotificationPriority.HIGH)
                escalated += 1
                log.info(f"Task escalated: {step.name} ({step.id}) to {target.id}")

        log.info(f"Escalated {escalated} of {len(overdue)} overdue tasks")
        return escalated


def parse_due_date(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Accept a datetime or an ISO-8601 string; aware values become naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = date_parser.isoparse(value)
        except (ValueError, OverflowError):
            raise InvalidInputError(f"Invalid due date: {value!r}")
    if value.tzinfo is not None:
        value = value.astimezone(tz.UTC).replace(tzinfo=None)
    return value
