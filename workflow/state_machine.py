"""Transition authority for tasks.

Every task mutation goes through ``TaskStateMachine``. Each public operation
runs as one atomic unit: lock the task row, validate against the locked
state, write the new state, append the history record(s), and schedule the
realtime notification for after commit. Workflow errors come back as a
rejected ``TransitionResult``; the database is left untouched in that case.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.utils import timezone

from . import conf
from .attachments import AttachmentStore
from .completion import CompletionAggregator
from .exceptions import ConcurrencyError, NotFoundError, PermissionDenied, ValidationError, WorkflowError
from .history import TRACKED_FIELDS, HistoryRecorder
from .models import (
    AssigneeStatus,
    HistoryAction,
    Priority,
    RevisionHistory,
    Stage,
    StageKind,
    Task,
    TaskAssignee,
    TaskComment,
    TaskHistory,
)
from .signals import publish_task_updated
from .stage_graph import StageGraph

logger = logging.getLogger(__name__)

REDO_TAG = 'Redo'

# Columns written back on every accepted operation.
PERSISTED_FIELDS = (
    'stage_id', 'title', 'description', 'priority', 'due_date', 'start_date', 'start_stage_id',
    'assignee', 'tags', 'parent_id', 'status', 'completed_at', 'has_auto_started', 'deleted_at',
    'previous_stage_id', 'original_assignee_id',
)


@dataclass
class CompletionPayload:
    """Closing note required when a task enters a completed or archived stage."""

    comment: str = ''
    links: List[str] = field(default_factory=list)
    files: list = field(default_factory=list)


@dataclass
class TransitionResult:
    task: Task
    history: List[TaskHistory] = field(default_factory=list)
    error: Optional[WorkflowError] = None

    @property
    def accepted(self):
        return self.error is None

    @property
    def noop(self):
        return self.accepted and not self.history

    @property
    def actions(self):
        return [entry.action for entry in self.history]

    def raise_for_error(self):
        if self.error is not None:
            raise self.error
        return self


def organization_time(value):
    """Interpret naive datetimes in the organization's time zone."""
    if isinstance(value, datetime) and timezone.is_naive(value):
        return timezone.make_aware(value, conf.organization_tz())
    return value


class TaskStateMachine:
    def __init__(self, attachment_store=None, aggregator=None):
        self.attachments = attachment_store or AttachmentStore()
        self.aggregator = aggregator or CompletionAggregator()

    # ------------------------------------------------------------------
    # Stage transitions
    # ------------------------------------------------------------------

    def move_to(self, task, target_stage_id, actor, completion_payload=None, from_stage_id=None):
        return self._run(task, 'move_to', self._move, target_stage_id, actor, completion_payload, from_stage_id)

    def enter_review(self, task, actor, review_stage_id=None):
        return self._run(task, 'enter_review', self._enter_review, actor, review_stage_id)

    def approve_review(self, task, actor, completion_payload=None):
        return self._run(task, 'approve_review', self._approve_review, actor, completion_payload)

    def reject_review(self, task, actor, comment):
        return self._run(task, 'reject_review', self._reject_review, actor, comment)

    def advance(self, task, actor, completion_payload=None, handoff=False):
        return self._run(task, 'advance', self._advance, actor, completion_payload, handoff)

    def archive(self, task, actor, completion_payload):
        return self._run(task, 'archive', self._archive, actor, completion_payload)

    def restore(self, task, actor, target_stage_id=None):
        return self._run(task, 'restore', self._restore, actor, target_stage_id)

    # ------------------------------------------------------------------
    # Assignees and completion
    # ------------------------------------------------------------------

    def assign(self, task, user_ids, actor):
        return self._run(task, 'assign', self._assign, user_ids, actor)

    def unassign(self, task, user_id, actor):
        return self._run(task, 'unassign', self._unassign, user_id, actor)

    def set_assignee_status(self, task, user_id, status, actor):
        return self._run(task, 'set_assignee_status', self._set_assignee_status, user_id, status, actor)

    # ------------------------------------------------------------------
    # Attributes and attachments
    # ------------------------------------------------------------------

    def update_task(self, task, changes, actor):
        return self._run(task, 'update_task', self._update, changes, actor)

    def add_attachment(self, task, actor, file=None, name=None, url=None):
        return self._run(task, 'add_attachment', self._add_attachment, actor, file, name, url)

    def remove_attachment(self, attachment, actor):
        return self._run(attachment.task, 'remove_attachment', self._remove_attachment, attachment.pk, actor)

    def create_task(self, project, title, user_ids, actor, stage_id=None, **fields):
        try:
            with transaction.atomic():
                task, history = self._create(project, title, user_ids, actor, stage_id, fields)
                publish_task_updated(task)
        except WorkflowError as exc:
            logger.warning("create_task rejected in project %s: %s", project.pk, exc)
            return TransitionResult(task=None, error=exc)
        logger.info("Task %s created in project %s", task.pk, project.pk)
        return TransitionResult(task=task, history=history)

    # ------------------------------------------------------------------
    # Atomic unit
    # ------------------------------------------------------------------

    def _run(self, task, name, operation, *args, check_version=True):
        try:
            with transaction.atomic():
                current = self._lock(task, check_version)
                history = operation(current, *args)
                if history:
                    self._commit(current)
                    publish_task_updated(current)
        except WorkflowError as exc:
            logger.warning("Task %s: %s rejected: %s", task.pk, name, exc)
            return TransitionResult(task=task, error=exc)

        if not history:
            logger.debug("Task %s: %s was a no-op", task.pk, name)
            return TransitionResult(task=task)
        task.refresh_from_db()
        logger.info("Task %s: %s accepted (%s)", task.pk, name, ', '.join(e.action for e in history))
        return TransitionResult(task=task, history=history)

    @staticmethod
    def _lock(task, check_version):
        try:
            current = Task.objects.select_for_update().get(pk=task.pk, deleted_at__isnull=True)
        except Task.DoesNotExist:
            raise NotFoundError(f"Task {task.pk} does not exist")
        if check_version and current.version != task.version:
            raise ConcurrencyError(f"Task {task.pk} was changed by someone else; refetch and retry")
        return current

    @staticmethod
    def _commit(current):
        values = {name: getattr(current, name) for name in PERSISTED_FIELDS}
        values['version'] = current.version + 1
        values['updated_at'] = timezone.now()
        updated = Task.objects.filter(pk=current.pk, version=current.version).update(**values)
        if updated != 1:
            raise ConcurrencyError(f"Task {current.pk} was changed by someone else; refetch and retry")
        current.version += 1
        current.updated_at = values['updated_at']

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    @staticmethod
    def _require_actor(actor):
        if actor is None or not actor.is_active:
            raise PermissionDenied('An active user is required')

    @staticmethod
    def _require_reviewer(stage, actor):
        TaskStateMachine._require_actor(actor)
        if not (actor.is_privileged or actor.pk in stage.responsible_ids()):
            raise PermissionDenied(f"User {actor.pk} may not review tasks in '{stage.title}'")

    @staticmethod
    def _project_stage(task, stage_id):
        try:
            return Stage.objects.get(pk=stage_id, project_id=task.project_id)
        except (Stage.DoesNotExist, DjangoValidationError, ValueError, TypeError):
            raise NotFoundError(f"Stage {stage_id} does not exist in this project")

    @staticmethod
    def _users(user_ids):
        if not user_ids:
            raise ValidationError('A task needs at least one assignee')
        if len(set(user_ids)) != len(user_ids):
            raise ValidationError('Assignees must be unique')
        users = get_user_model().objects.filter(is_active=True, deleted_at__isnull=True).in_bulk(user_ids)
        missing = [uid for uid in user_ids if uid not in users]
        if missing:
            raise NotFoundError(f"Unknown or inactive users: {', '.join(str(m) for m in missing)}")
        return [users[uid] for uid in user_ids]

    # ------------------------------------------------------------------
    # Operations, called with the locked task inside the atomic block
    # ------------------------------------------------------------------

    def _move(self, task, target_stage_id, actor, payload=None, from_stage_id=None, via_approval=False):
        self._require_actor(actor)
        current = task.stage
        if from_stage_id is not None and str(from_stage_id) != str(current.pk):
            raise ConcurrencyError(f"Task {task.pk} is no longer in the stage it was moved from")
        target = self._project_stage(task, target_stage_id)
        if target.pk == current.pk:
            return []
        if target.is_closing and payload is None:
            raise ValidationError('completion payload required')
        if target.kind == StageKind.SUGGESTED:
            raise ValidationError('Tasks cannot be moved back to the suggested intake stage')
        if current.is_review_stage and not via_approval and target.order > current.order:
            raise ValidationError(f"Task in review stage '{current.title}' must be approved to move forward")

        note = self._apply_payload(task, actor, payload) if payload is not None else None
        task.stage = target
        returning_to = self._track_review_return(task, current, target)

        snapshot = {}
        action = HistoryAction.STAGE_CHANGED
        if target.is_review_stage:
            action = HistoryAction.MOVED_TO_REVIEW_STAGE
        elif target.kind == StageKind.ARCHIVED:
            action = HistoryAction.ARCHIVED
        elif current.kind == StageKind.ARCHIVED:
            action = HistoryAction.RESTORED

        if target.kind == StageKind.COMPLETED:
            closed = self.aggregator.close_assignees(task)
            if closed:
                snapshot['assignee_statuses'] = closed
            result = self.aggregator.recompute(task)
            if result.changed:
                snapshot['status'] = result.previous
                if self.aggregator.history_action(task, result) == HistoryAction.COMPLETED:
                    action = HistoryAction.COMPLETED

        entry = HistoryRecorder.record_stage_change(
            task, actor, current, target, action=action, extra_snapshot=snapshot, note=note
        )
        history = [entry]
        if returning_to is not None:
            history += self._restore_original_assignee(task, returning_to, actor)
        return history

    @staticmethod
    def _track_review_return(task, current, target):
        """Remember who worked the task before review; return them when it comes back.

        Returns the original assignee when the move goes back to the stage the
        task entered review from, else ``None``.
        """
        if target.is_review_stage and not current.is_review_stage:
            rows = task.ordered_assignees()
            task.previous_stage = current
            task.original_assignee = rows[0].user if rows else None
            return None
        if task.previous_stage_id is None or target.is_review_stage:
            return None
        original = task.original_assignee if target.pk == task.previous_stage_id else None
        task.previous_stage = None
        task.original_assignee = None
        return original

    def _restore_original_assignee(self, task, original, actor):
        if not original.is_active or original.deleted_at is not None:
            logger.info("Task %s: original assignee %s is no longer active", task.pk, original.pk)
            return []
        ids = [row.user_id for row in task.ordered_assignees()]
        if ids[:1] == [original.pk]:
            return []
        # The original assignee takes the primary slot back; co-assignees stay.
        others = [uid for uid in ids if uid != original.pk] if original.pk in ids else ids[1:]
        return self._assign(task, [original.pk] + others, actor)

    def _apply_payload(self, task, actor, payload):
        added = []
        if payload.comment:
            TaskComment.objects.create(task=task, user=actor, comment=payload.comment)
        for link in payload.links:
            added.append(self.attachments.add_link(task, link, link))
        for file in payload.files:
            added.append(self.attachments.add_file(task, file))
        parts = []
        if payload.comment:
            parts.append(f'Note: {payload.comment}')
        if added:
            parts.append(f"Attached: {', '.join(a.name for a in added)}")
        return '. '.join(parts) or None

    def _enter_review(self, task, actor, review_stage_id=None):
        if review_stage_id is None:
            review_stage_id = task.stage.linked_next_stage_id
            if review_stage_id is None:
                raise ValidationError(f"Stage '{task.stage.title}' has no linked review stage")
        target = self._project_stage(task, review_stage_id)
        if not target.is_review_stage:
            raise ValidationError(f"Stage '{target.title}' is not a review stage")
        return self._move(task, target.pk, actor)

    def _approve_review(self, task, actor, payload=None):
        stage = task.stage
        if not stage.is_review_stage:
            raise ValidationError("Task is not in a review stage")
        if stage.approved_target_stage_id is None:
            raise ValidationError(f"Review stage '{stage.title}' has no approved target stage")
        self._require_reviewer(stage, actor)
        history = self._move(task, stage.approved_target_stage_id, actor, payload, via_approval=True)
        RevisionHistory.objects.filter(task=task, resolved_at__isnull=True).update(resolved_at=timezone.now())
        return history

    def _reject_review(self, task, actor, comment):
        stage = task.stage
        if not stage.is_review_stage:
            raise ValidationError("Task is not in a review stage")
        if not comment or not comment.strip():
            raise ValidationError('A revision comment is required')
        self._require_reviewer(stage, actor)

        old_tags = list(task.tags or [])
        RevisionHistory.objects.create(
            task=task, comment=comment, requested_by=actor, requested_at=timezone.now()
        )
        snapshot = {}
        if REDO_TAG not in old_tags:
            task.tags = old_tags + [REDO_TAG]
            snapshot['tags'] = old_tags
        entry = HistoryRecorder.record(
            task, HistoryAction.UPDATED, actor,
            details=f'Revision requested: {comment}',
            previous_snapshot=snapshot,
        )
        return [entry]

    def _advance(self, task, actor, payload=None, handoff=False):
        stages = list(task.project.stages.all())
        target = StageGraph.resolve_next(task.stage, stages)
        history = self._move(task, target.pk, actor, payload)
        if handoff and history and target.main_responsible_id:
            current_ids = [row.user_id for row in task.ordered_assignees()]
            if current_ids != [target.main_responsible_id]:
                history += self._assign(task, [target.main_responsible_id], actor)
        return history

    def _archive(self, task, actor, payload):
        archived = StageGraph.stage_of_kind(task.project, StageKind.ARCHIVED)
        return self._move(task, archived.pk, actor, payload)

    def _restore(self, task, actor, target_stage_id=None):
        if task.stage.kind != StageKind.ARCHIVED:
            raise ValidationError('Only archived tasks can be restored')
        if target_stage_id is None:
            target_stage_id = StageGraph.stage_of_kind(task.project, StageKind.COMPLETED).pk
        target = self._project_stage(task, target_stage_id)
        payload = CompletionPayload(comment='Restored from archive') if target.is_closing else None
        return self._move(task, target.pk, actor, payload)

    def _mirror_primary(self, task):
        rows = task.ordered_assignees()
        task.assignee = rows[0].user.display_name if rows else ''

    def _record_aggregate(self, task, actor):
        result = self.aggregator.recompute(task)
        if not result.changed:
            return []
        action = self.aggregator.history_action(task, result)
        return [HistoryRecorder.record_status_change(task, actor, result.previous, result.new_status, action)]

    def _assign(self, task, user_ids, actor):
        self._require_actor(actor)
        users = self._users(user_ids)
        rows = task.ordered_assignees()
        ids = [row.user_id for row in rows]
        wanted = {u.pk for u in users}
        removed = [row for row in rows if row.user_id not in wanted]
        added = [u for u in users if u.pk not in ids]

        history = []
        for old_row, new_user in zip(removed, added):
            previous = list(ids)
            ids[ids.index(old_row.user_id)] = new_user.pk
            old_row.delete()
            TaskAssignee.objects.create(task=task, user=new_user)
            history.append(HistoryRecorder.record_assignee_change(task, actor, old_row.user, new_user, previous))
        for new_user in added[len(removed):]:
            previous = list(ids)
            ids.append(new_user.pk)
            TaskAssignee.objects.create(task=task, user=new_user)
            history.append(HistoryRecorder.record_assignee_change(task, actor, None, new_user, previous))
        for old_row in removed[len(added):]:
            previous = list(ids)
            ids.remove(old_row.user_id)
            old_row.delete()
            history.append(HistoryRecorder.record_assignee_change(task, actor, old_row.user, None, previous))

        target_order = [u.pk for u in users]
        if not history and ids != target_order:
            history.append(HistoryRecorder.record(
                task, HistoryAction.UPDATED, actor,
                details='Assignee order changed',
                previous_snapshot={'assigned_users': list(ids)},
            ))
        for position, user_id in enumerate(target_order):
            TaskAssignee.objects.filter(task=task, user_id=user_id).update(position=position)
        if history:
            self._mirror_primary(task)
            history += self._record_aggregate(task, actor)
        return history

    def _unassign(self, task, user_id, actor):
        self._require_actor(actor)
        rows = task.ordered_assignees()
        row = next((r for r in rows if r.user_id == user_id), None)
        if row is None:
            raise NotFoundError(f"User {user_id} is not assigned to this task")
        if len(rows) == 1:
            raise ValidationError('A task needs at least one assignee')
        previous = [r.user_id for r in rows]
        row.delete()
        for position, remaining in enumerate(r for r in rows if r.pk != row.pk):
            if remaining.position != position:
                remaining.position = position
                remaining.save(update_fields=['position', 'updated_at'])
        history = [HistoryRecorder.record_assignee_change(task, actor, row.user, None, previous)]
        self._mirror_primary(task)
        return history + self._record_aggregate(task, actor)

    def _set_assignee_status(self, task, user_id, status, actor):
        self._require_actor(actor)
        if status not in AssigneeStatus.values:
            raise ValidationError(f"Unknown assignee status {status!r}")
        try:
            row = task.assignees.select_related('user').get(user_id=user_id)
        except TaskAssignee.DoesNotExist:
            raise NotFoundError(f"User {user_id} is not assigned to this task")
        if actor.pk != user_id and not actor.is_privileged:
            raise PermissionDenied(f"User {actor.pk} may not change another assignee's status")
        if row.status == status:
            return []

        old = row.status
        row.status = status
        row.save(update_fields=['status', 'updated_at'])
        result = self.aggregator.recompute(task)
        action = self.aggregator.history_action(task, result)
        entry = HistoryRecorder.record_status_change(
            task, actor, result.previous, result.new_status, action,
            extra_snapshot={'assignee_id': user_id, 'assignee_status': old},
            details=None if result.changed else f'{row.user.display_name} marked {status}',
        )
        return [entry]

    # Attribute edits

    def _clean_changes(self, task, changes):
        unknown = set(changes) - set(TRACKED_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update {', '.join(sorted(unknown))}")
        cleaned = {}
        for name, value in changes.items():
            if name in ('due_date', 'start_date'):
                value = organization_time(value)
            elif name == 'title':
                if not value or not str(value).strip():
                    raise ValidationError('Title is required')
            elif name == 'priority' and value not in Priority.values:
                raise ValidationError(f"Unknown priority {value!r}")
            elif name == 'tags':
                value = list(value or [])
            elif name == 'start_stage_id' and value is not None:
                stage = self._project_stage(task, value)
                if stage.is_closing or stage.kind == StageKind.SUGGESTED:
                    raise ValidationError(f"Stage '{stage.title}' cannot be a start stage")
                value = stage.pk
            elif name == 'parent_id' and value is not None:
                try:
                    parent = Task.objects.filter(pk=value, project_id=task.project_id).first()
                except DjangoValidationError:
                    parent = None
                if parent is None:
                    raise NotFoundError(f"Parent task {value} does not exist in this project")
                if parent.pk == task.pk:
                    raise ValidationError('A task cannot be its own parent')
                value = parent.pk
            cleaned[name] = value
        return cleaned

    def _update(self, task, changes, actor):
        self._require_actor(actor)
        cleaned = self._clean_changes(task, changes)
        before = HistoryRecorder.snapshot(task)
        for name, value in cleaned.items():
            setattr(task, name, value)
        if cleaned.get('start_date', before['start_date']) != before['start_date']:
            task.has_auto_started = False
        entry = HistoryRecorder.record_update(task, actor, before, HistoryRecorder.snapshot(task))
        return [entry] if entry else []

    def _add_attachment(self, task, actor, file=None, name=None, url=None):
        self._require_actor(actor)
        if file is not None:
            attachment = self.attachments.add_file(task, file)
        elif url:
            attachment = self.attachments.add_link(task, name, url)
        else:
            raise ValidationError('An attachment needs a file or a url')
        return [HistoryRecorder.record_attachment(task, actor, attachment, added=True)]

    def _remove_attachment(self, task, attachment_id, actor):
        self._require_actor(actor)
        attachment = task.attachments.filter(pk=attachment_id).first()
        if attachment is None:
            raise NotFoundError(f"Attachment {attachment_id} does not exist")
        attachment.delete()
        return [HistoryRecorder.record_attachment(task, actor, attachment, added=False)]

    def _create(self, project, title, user_ids, actor, stage_id, fields):
        self._require_actor(actor)
        if stage_id is None:
            stage = StageGraph.stage_of_kind(project, StageKind.BACKLOG)
        else:
            try:
                stage = project.stages.get(pk=stage_id)
            except (Stage.DoesNotExist, DjangoValidationError, ValueError):
                raise NotFoundError(f"Stage {stage_id} does not exist in this project")
        if stage.is_closing:
            raise ValidationError(f"Tasks cannot be created in '{stage.title}'")
        users = self._users(user_ids)

        task = Task(project=project, stage=stage, title=title)
        cleaned = self._clean_changes(task, dict(fields, title=title))
        for name, value in cleaned.items():
            setattr(task, name, value)
        task.assignee = users[0].display_name
        task.save()
        TaskAssignee.objects.bulk_create(
            [TaskAssignee(task=task, user=user, position=i) for i, user in enumerate(users)]
        )
        return task, [HistoryRecorder.record_created(task, actor)]
