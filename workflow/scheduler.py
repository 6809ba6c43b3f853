"""Time-triggered "auto-start" transitions out of the backlog.

Several scheduler processes (or ticks) may look at the same due task at once.
Only the caller whose conditional update flips ``has_auto_started`` from
false to true performs the transition; everyone else sees zero updated rows
and does nothing. The flag flip and the transition share one transaction, so
a rejected transition leaves the flag unset for the next tick.
"""
import logging
import time

from django.contrib.auth import get_user_model
from django.db import transaction
from django.utils import timezone

from . import conf
from .exceptions import PermissionDenied, WorkflowError
from .models import StageKind, Task
from .state_machine import TaskStateMachine, TransitionResult

logger = logging.getLogger(__name__)


class AutoStartScheduler:
    def __init__(self, machine=None, actor=None, clock=None):
        self.machine = machine or TaskStateMachine()
        self.actor = actor
        self.clock = clock or timezone.now

    def now(self):
        return self.clock().astimezone(conf.organization_tz())

    def resolve_actor(self):
        actor = self.actor or get_user_model().objects.system_actor()
        if not actor.is_active or not actor.is_privileged:
            raise PermissionDenied(f"User {actor.pk} may not run scheduled transitions")
        return actor

    def due_tasks(self, now=None):
        now = now or self.now()
        return Task.objects.filter(
            stage__kind=StageKind.BACKLOG,
            start_date__isnull=False,
            start_date__lte=now,
            has_auto_started=False,
            deleted_at__isnull=True,
        ).order_by('start_date', 'id')

    def fire(self, task, now=None, actor=None):
        """Start one task if this caller wins the flag flip.

        Returns ``None`` when another caller already started the task or it
        is no longer due.
        """
        now = now or self.now()
        try:
            actor = actor or self.resolve_actor()
            with transaction.atomic():
                won = Task.objects.filter(
                    pk=task.pk,
                    has_auto_started=False,
                    start_date__lte=now,
                    stage__kind=StageKind.BACKLOG,
                    deleted_at__isnull=True,
                ).update(has_auto_started=True)
                if not won:
                    logger.debug("Task %s already auto-started elsewhere", task.pk)
                    return None
                fresh = Task.objects.get(pk=task.pk)
                result = self.machine.move_to(fresh, fresh.start_stage_id or fresh.stage_id, actor)
                result.raise_for_error()
        except WorkflowError as exc:
            logger.warning("Auto-start of task %s failed: %s", task.pk, exc)
            return TransitionResult(task=task, error=exc)

        task.refresh_from_db()
        logger.info(
            "Auto-started task %s at %s (%s)",
            task.pk, now.strftime('%Y-%m-%d %H:%M:%S %Z'), 'moved' if result.history else 'no start stage',
        )
        return result

    def tick(self, now=None):
        now = now or self.now()
        try:
            actor = self.resolve_actor()
        except PermissionDenied as exc:
            logger.warning("Auto-start tick refused: %s", exc)
            return [TransitionResult(task=None, error=exc)]
        results = []
        for task in list(self.due_tasks(now)):
            result = self.fire(task, now, actor)
            if result is not None:
                results.append(result)
        logger.debug("Auto-start tick at %s handled %d task(s)", now.isoformat(), len(results))
        return results

    def run(self, interval=None, iterations=None, sleep=time.sleep):
        interval = interval or conf.get('AUTOSTART_INTERVAL')
        count = 0
        while iterations is None or count < iterations:
            try:
                self.tick()
            except Exception:
                logger.exception("Auto-start tick failed")
            count += 1
            if iterations is None or count < iterations:
                sleep(interval)
