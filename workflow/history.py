"""Append-only audit trail for tasks.

Every accepted mutation produces exactly one ``TaskHistory`` row. Rows are
written by the state machine inside the same atomic block as the state change
they describe, and are never updated or deleted afterwards.
"""
import logging

from django.db import connection

from .models import HistoryAction, TaskHistory

logger = logging.getLogger(__name__)

# Fields that change as a side effect of other operations and never show up
# in an ``updated`` snapshot.
BOOKKEEPING_FIELDS = frozenset({
    'created_at', 'updated_at', 'deleted_at', 'has_auto_started', 'version', 'completed_at',
})

TRACKED_FIELDS = (
    'title', 'description', 'priority', 'due_date', 'start_date', 'start_stage_id', 'tags', 'parent_id',
)


def _label(field):
    name = field[:-3] if field.endswith('_id') else field
    return name.replace('_', ' ').capitalize()


def _title(stage):
    return stage.title if stage is not None else 'Unknown'


def _name(user):
    return user.display_name if user is not None else 'Unknown'


class HistoryRecorder:
    @staticmethod
    def record(task, action, actor=None, details='', previous_snapshot=None,
               incoming_stage=None, outgoing_stage=None, incoming_user=None, outgoing_user=None):
        if not connection.in_atomic_block:
            raise RuntimeError('History must be recorded inside the transition transaction')
        entry = TaskHistory.objects.create(
            task=task,
            actor=actor,
            action=action,
            details=details,
            previous_snapshot=previous_snapshot or {},
            incoming_stage=incoming_stage,
            outgoing_stage=outgoing_stage,
            incoming_user=incoming_user,
            outgoing_user=outgoing_user,
        )
        logger.info("TaskHistory: %s recorded for task %s", action, task.pk)
        return entry

    @staticmethod
    def snapshot(task, fields=TRACKED_FIELDS):
        return {field: getattr(task, field) for field in fields}

    @classmethod
    def record_update(cls, task, actor, before, after):
        """Record one ``updated`` row listing only the attributes that changed.

        ``before`` and ``after`` map field names to values. Returns ``None``
        without writing anything when nothing changed.
        """
        changed = {
            field: before.get(field)
            for field, value in after.items()
            if field not in BOOKKEEPING_FIELDS and before.get(field) != value
        }
        if not changed:
            return None
        details = ', '.join(f'{_label(field)} changed' for field in changed)
        return cls.record(task, HistoryAction.UPDATED, actor, details=details, previous_snapshot=changed)

    @classmethod
    def record_stage_change(cls, task, actor, old_stage, new_stage, action=HistoryAction.STAGE_CHANGED,
                            extra_snapshot=None, note=None):
        details = f'Stage changed from "{_title(old_stage)}" to "{_title(new_stage)}"'
        if note:
            details = f'{details}. {note}'
        snapshot = {'stage_id': old_stage.pk if old_stage is not None else None}
        snapshot.update(extra_snapshot or {})
        return cls.record(
            task, action, actor,
            details=details,
            previous_snapshot=snapshot,
            incoming_stage=old_stage,
            outgoing_stage=new_stage,
        )

    @classmethod
    def record_assignee_change(cls, task, actor, old_user, new_user, previous_user_ids):
        if old_user is None:
            action = HistoryAction.ASSIGNED
            details = f'Task assigned to {_name(new_user)}'
        elif new_user is None:
            action = HistoryAction.UNASSIGNED
            details = f'Task unassigned from {_name(old_user)}'
        else:
            action = HistoryAction.REASSIGNED
            details = f'Task reassigned from {_name(old_user)} to {_name(new_user)}'
        return cls.record(
            task, action, actor,
            details=details,
            previous_snapshot={'assigned_users': list(previous_user_ids)},
            incoming_user=old_user,
            outgoing_user=new_user,
        )

    @classmethod
    def record_status_change(cls, task, actor, old_status, new_status, action=HistoryAction.STATUS_CHANGED,
                             extra_snapshot=None, details=None):
        if details is None and action == HistoryAction.COMPLETED:
            details = 'Task marked as complete'
        elif details is None:
            details = f'Status changed from "{old_status}" to "{new_status}"'
        snapshot = {'status': old_status}
        snapshot.update(extra_snapshot or {})
        return cls.record(task, action, actor, details=details, previous_snapshot=snapshot)

    @classmethod
    def record_attachment(cls, task, actor, attachment, added=True):
        action = HistoryAction.ATTACHMENT_ADDED if added else HistoryAction.ATTACHMENT_REMOVED
        verb = 'added' if added else 'removed'
        return cls.record(
            task, action, actor,
            details=f'Attachment "{attachment.name}" {verb}',
            previous_snapshot={'attachment_name': attachment.name, 'attachment_url': attachment.url},
        )

    @classmethod
    def record_created(cls, task, actor):
        return cls.record(task, HistoryAction.CREATED, actor, details='Task created', outgoing_stage=task.stage)

    @staticmethod
    def for_task(task):
        return TaskHistory.objects.filter(task=task).order_by('id')

    @staticmethod
    def since(timestamp):
        return TaskHistory.objects.filter(created_at__gt=timestamp).order_by('id')
