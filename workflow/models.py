import uuid
from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.db import models

from .exceptions import ImmutableHistoryError


class StageKind(models.TextChoices):
    SUGGESTED = 'suggested', 'Suggested intake'
    BACKLOG = 'backlog', 'Backlog'
    CUSTOM = 'custom', 'Custom'
    REVIEW = 'review', 'Review'
    COMPLETED = 'completed', 'Completed'
    ARCHIVED = 'archived', 'Archived'


RESERVED_KINDS = (StageKind.SUGGESTED, StageKind.BACKLOG, StageKind.COMPLETED, StageKind.ARCHIVED)
CLOSING_KINDS = (StageKind.COMPLETED, StageKind.ARCHIVED)


class TaskStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    IN_PROGRESS = 'in-progress', 'In progress'
    COMPLETE = 'complete', 'Complete'


class AssigneeStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    COMPLETE = 'complete', 'Complete'


class Priority(models.TextChoices):
    LOW = 'low', 'Low'
    MEDIUM = 'medium', 'Medium'
    HIGH = 'high', 'High'


class HistoryAction(models.TextChoices):
    CREATED = 'created', 'Created'
    STAGE_CHANGED = 'stage_changed', 'Stage changed'
    MOVED_TO_REVIEW_STAGE = 'moved_to_review_stage', 'Moved to review stage'
    ASSIGNED = 'assigned', 'Assigned'
    REASSIGNED = 'reassigned', 'Reassigned'
    UNASSIGNED = 'unassigned', 'Unassigned'
    STATUS_CHANGED = 'status_changed', 'Status changed'
    COMPLETED = 'completed', 'Completed'
    ATTACHMENT_ADDED = 'attachment_added', 'Attachment added'
    ATTACHMENT_REMOVED = 'attachment_removed', 'Attachment removed'
    ARCHIVED = 'archived', 'Archived'
    RESTORED = 'restored', 'Restored'
    UPDATED = 'updated', 'Updated'


class ProjectManager(models.Manager):
    def create_with_stages(self, **fields):
        from .stage_graph import StageGraph  # local import to avoid cycle
        project = self.create(**fields)
        StageGraph.ensure_reserved_stages(project)
        return project


class Project(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4)
    name = models.CharField(max_length=100)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    deleted_at = models.DateTimeField(null=True, blank=True)  # Soft deletes

    objects = ProjectManager()

    class Meta:
        ordering = ['created_at']

    def __str__(self):
        return self.name


class StageGroup(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4)
    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name='stage_groups')
    name = models.CharField(max_length=100)

    class Meta:
        ordering = ['name']


class Stage(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4)
    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name='stages')
    title = models.CharField(max_length=255)
    order = models.IntegerField(default=0)
    kind = models.CharField(max_length=20, choices=StageKind.choices, default=StageKind.CUSTOM)
    is_review_stage = models.BooleanField(default=False)
    approved_target_stage = models.ForeignKey(
        'self', on_delete=models.PROTECT, null=True, blank=True, related_name='approving_stages'
    )
    linked_next_stage = models.ForeignKey(
        'self', on_delete=models.PROTECT, null=True, blank=True, related_name='linking_stages'
    )
    main_responsible = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name='+'
    )
    backup_responsible_1 = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name='+'
    )
    backup_responsible_2 = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name='+'
    )
    stage_group = models.ForeignKey(
        StageGroup, on_delete=models.SET_NULL, null=True, blank=True, related_name='stages'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['order', 'id']

    def __str__(self):
        return self.title

    @property
    def is_reserved(self):
        return self.kind in RESERVED_KINDS

    @property
    def is_closing(self):
        return self.kind in CLOSING_KINDS

    def responsible_ids(self):
        ids = (self.main_responsible_id, self.backup_responsible_1_id, self.backup_responsible_2_id)
        return {i for i in ids if i is not None}


class Task(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4)
    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name='tasks')
    stage = models.ForeignKey(Stage, on_delete=models.PROTECT, related_name='tasks')
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    priority = models.CharField(max_length=10, choices=Priority.choices, default=Priority.MEDIUM)
    due_date = models.DateTimeField(null=True, blank=True)
    start_date = models.DateTimeField(null=True, blank=True)
    start_stage = models.ForeignKey(
        Stage, on_delete=models.PROTECT, null=True, blank=True, related_name='starting_tasks'
    )
    # Display name of the primary assignee, kept for older clients.
    assignee = models.CharField(max_length=150, blank=True)
    tags = models.JSONField(default=list, blank=True)
    parent = models.ForeignKey(
        'self', on_delete=models.SET_NULL, null=True, blank=True, related_name='subtasks'
    )
    status = models.CharField(max_length=20, choices=TaskStatus.choices, default=TaskStatus.PENDING)
    completed_at = models.DateTimeField(null=True, blank=True)
    has_auto_started = models.BooleanField(default=False)
    # Set while the task sits in a review stage; a move back to previous_stage
    # hands the task to original_assignee again.
    previous_stage = models.ForeignKey(Stage, on_delete=models.SET_NULL, null=True, blank=True, related_name='+')
    original_assignee = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name='+'
    )
    version = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    deleted_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['created_at']

    def __str__(self):
        return self.title

    def ordered_assignees(self):
        return list(self.assignees.select_related('user').order_by('position'))


class TaskAssignee(models.Model):
    task = models.ForeignKey(Task, on_delete=models.CASCADE, related_name='assignees')
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name='task_assignments')
    status = models.CharField(max_length=20, choices=AssigneeStatus.choices, default=AssigneeStatus.PENDING)
    position = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['position']
        constraints = [
            models.UniqueConstraint(fields=['task', 'user'], name='unique_task_assignee'),
        ]


class Attachment(models.Model):
    FILE = 'file'
    LINK = 'link'
    TYPE_CHOICES = [(FILE, 'File'), (LINK, 'Link')]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4)
    task = models.ForeignKey(Task, on_delete=models.CASCADE, related_name='attachments')
    name = models.CharField(max_length=255)
    url = models.CharField(max_length=1024)
    type = models.CharField(max_length=10, choices=TYPE_CHOICES, default=LINK)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['created_at']


class TaskComment(models.Model):
    task = models.ForeignKey(Task, on_delete=models.CASCADE, related_name='comments')
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, related_name='+')
    comment = models.TextField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['created_at']


class RevisionHistory(models.Model):
    task = models.ForeignKey(Task, on_delete=models.CASCADE, related_name='revision_history')
    comment = models.TextField()
    requested_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, related_name='+'
    )
    requested_at = models.DateTimeField()
    resolved_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['requested_at', 'id']


class TaskHistoryQuerySet(models.QuerySet):
    def update(self, **kwargs):
        raise ImmutableHistoryError('Task history records cannot be updated')

    def delete(self):
        raise ImmutableHistoryError('Task history records cannot be deleted')


class TaskHistory(models.Model):
    task = models.ForeignKey(Task, on_delete=models.PROTECT, related_name='history')
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.DO_NOTHING, db_constraint=False,
        null=True, blank=True, related_name='+'
    )
    action = models.CharField(max_length=32, choices=HistoryAction.choices)
    # Audit references outlive the rows they point at, hence no constraints.
    incoming_stage = models.ForeignKey(
        Stage, on_delete=models.DO_NOTHING, db_constraint=False, null=True, blank=True, related_name='+'
    )
    outgoing_stage = models.ForeignKey(
        Stage, on_delete=models.DO_NOTHING, db_constraint=False, null=True, blank=True, related_name='+'
    )
    incoming_user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.DO_NOTHING, db_constraint=False,
        null=True, blank=True, related_name='+'
    )
    outgoing_user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.DO_NOTHING, db_constraint=False,
        null=True, blank=True, related_name='+'
    )
    previous_snapshot = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)
    details = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    objects = TaskHistoryQuerySet.as_manager()

    class Meta:
        ordering = ['id']
        verbose_name_plural = 'task histories'

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableHistoryError('Task history records cannot be updated')
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableHistoryError('Task history records cannot be deleted')
