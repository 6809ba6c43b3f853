"""Shared fixtures for the workflow tests."""
from accounts.models import Role, User
from workflow.models import Project, StageKind, Task, TaskAssignee
from workflow.stage_graph import StageGraph


def make_user(username, role=Role.USER, **fields):
    return User.objects.create_user(username=username, password='secret', role=role, **fields)


def make_task(project, stage, users, **fields):
    """Create a task directly, bypassing the state machine (no history row)."""
    task = Task.objects.create(
        project=project, stage=stage, title=fields.pop('title', 'Write release notes'),
        assignee=users[0].display_name if users else '', **fields
    )
    for position, user in enumerate(users):
        TaskAssignee.objects.create(task=task, user=user, position=position)
    return task


class PipelineMixin:
    """
    Builds one project with the pipeline

        Suggested Task(0) -> Pending(1) -> Design(2, linked to Review)
            -> Review(3, approves into Completed) -> Completed(998) -> Archive(999)

    plus a team lead, three stage owners (alice, bob, carol) and an outsider.
    """

    def setUp(self):
        super().setUp()
        self.lead = make_user('lead', role=Role.TEAM_LEAD)
        self.alice = make_user('alice')
        self.bob = make_user('bob')
        self.carol = make_user('carol')
        self.outsider = make_user('mallory')

        self.project = Project.objects.create_with_stages(name='Website relaunch')
        self.suggested = self.project.stages.get(kind=StageKind.SUGGESTED)
        self.backlog = self.project.stages.get(kind=StageKind.BACKLOG)
        self.completed = self.project.stages.get(kind=StageKind.COMPLETED)
        self.archived = self.project.stages.get(kind=StageKind.ARCHIVED)

        self.review = StageGraph.create_stage(
            self.project, title='Review', order=3, is_review_stage=True,
            approved_target_stage=self.completed, **self.owners()
        )
        self.design = StageGraph.create_stage(
            self.project, title='Design', order=2, linked_next_stage=self.review, **self.owners()
        )

    def owners(self):
        return {
            'main_responsible': self.alice,
            'backup_responsible_1': self.bob,
            'backup_responsible_2': self.carol,
        }

    def reload(self, task):
        return Task.objects.get(pk=task.pk)

    def actions(self, task):
        return list(task.history.order_by('id').values_list('action', flat=True))
