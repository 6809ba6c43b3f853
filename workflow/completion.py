"""Roll-up of per-assignee completion flags into a task's status."""
import logging
from dataclasses import dataclass

from django.utils import timezone

from . import conf
from .models import AssigneeStatus, HistoryAction, TaskHistory, TaskStatus

logger = logging.getLogger(__name__)


@dataclass
class AggregateResult:
    changed: bool
    previous: str
    new_status: str

    @property
    def became_complete(self):
        return self.changed and self.new_status == TaskStatus.COMPLETE


class CompletionAggregator:
    @staticmethod
    def compute(statuses):
        statuses = list(statuses)
        if statuses and all(s == AssigneeStatus.COMPLETE for s in statuses):
            return TaskStatus.COMPLETE
        if any(s != AssigneeStatus.PENDING for s in statuses):
            return TaskStatus.IN_PROGRESS
        return TaskStatus.PENDING

    @classmethod
    def recompute(cls, task, now=None):
        """Refresh ``task.status`` from its assignees.

        Only the in-memory task is changed; the caller persists it together
        with the history record. Running it twice is harmless: the second
        run reports ``changed=False``.
        """
        previous = task.status
        new_status = cls.compute(task.assignees.values_list('status', flat=True))
        if new_status == previous:
            return AggregateResult(False, previous, new_status)
        task.status = new_status
        if new_status == TaskStatus.COMPLETE:
            task.completed_at = now or timezone.now()
        logger.debug("Task %s status %s -> %s", task.pk, previous, new_status)
        return AggregateResult(True, previous, new_status)

    @staticmethod
    def history_action(task, result):
        """Pick the history action for an aggregate change.

        ``completed`` is written once per task, the first time it becomes
        complete; later re-completions are plain status changes.
        """
        if result.became_complete and not TaskHistory.objects.filter(
            task=task, action=HistoryAction.COMPLETED
        ).exists():
            return HistoryAction.COMPLETED
        return HistoryAction.STATUS_CHANGED

    @staticmethod
    def close_assignees(task, policy=None):
        """Mark assignees complete for a move into a completed stage.

        With the ``primary`` policy only the first assignee is marked, with
        ``all`` every assignee is. Returns the prior statuses of the rows that
        changed, keyed by user id.
        """
        policy = policy or conf.completion_policy()
        rows = task.ordered_assignees()
        if policy == 'primary':
            rows = rows[:1]
        previous = {}
        for row in rows:
            if row.status != AssigneeStatus.COMPLETE:
                previous[str(row.user_id)] = row.status
                row.status = AssigneeStatus.COMPLETE
                row.save(update_fields=['status', 'updated_at'])
        return previous
