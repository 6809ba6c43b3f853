"""Realtime invalidation.

Receivers get ``event``, ``project_id`` and ``task_id`` only and are expected
to refetch whatever they display. The signal is sent after the surrounding
transaction commits, so a rolled back transition never reaches them.
"""
from django.db import transaction
from django.dispatch import Signal

task_updated = Signal()

TASK_UPDATED = 'task-updated'


def publish_task_updated(task):
    project_id, task_id = task.project_id, task.pk
    sender = type(task)
    transaction.on_commit(
        lambda: task_updated.send(sender=sender, event=TASK_UPDATED, project_id=project_id, task_id=task_id)
    )
