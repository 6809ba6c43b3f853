from django.test import TestCase
from django.utils import timezone

from workflow.exceptions import ConcurrencyError, NotFoundError, PermissionDenied, ValidationError
from workflow.models import (
    Attachment,
    HistoryAction,
    Project,
    RevisionHistory,
    Stage,
    StageKind,
    TaskComment,
    TaskHistory,
    TaskStatus,
)
from workflow.signals import TASK_UPDATED, task_updated
from workflow.state_machine import REDO_TAG, CompletionPayload, TaskStateMachine

from .factories import PipelineMixin, make_task


class ReviewFlowTests(PipelineMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.machine = TaskStateMachine()
        self.task = make_task(self.project, self.backlog, [self.alice])

    def test_design_review_approve_writes_three_rows(self):
        first = self.machine.move_to(self.task, self.design.pk, self.alice)
        second = self.machine.move_to(self.task, self.review.pk, self.alice)
        third = self.machine.approve_review(
            self.task, self.lead, completion_payload=CompletionPayload(comment='Ship it')
        )

        self.assertEqual(first.actions, [HistoryAction.STAGE_CHANGED])
        self.assertEqual(second.actions, [HistoryAction.MOVED_TO_REVIEW_STAGE])
        self.assertEqual(third.actions, [HistoryAction.COMPLETED])
        self.assertEqual(
            self.actions(self.task),
            ['stage_changed', 'moved_to_review_stage', 'completed'],
        )
        task = self.reload(self.task)
        self.assertEqual(task.stage, self.completed)
        self.assertEqual(task.status, TaskStatus.COMPLETE)
        self.assertIsNotNone(task.completed_at)
        self.assertEqual(task.version, 3)

    def test_move_records_incoming_and_outgoing_stage(self):
        result = self.machine.move_to(self.task, self.design.pk, self.alice)
        entry = result.history[0]
        self.assertEqual(entry.incoming_stage_id, self.backlog.pk)
        self.assertEqual(entry.outgoing_stage_id, self.design.pk)
        self.assertEqual(entry.actor, self.alice)
        self.assertEqual(entry.details, 'Stage changed from "Pending" to "Design"')
        self.assertEqual(
            TaskHistory.objects.get(pk=entry.pk).previous_snapshot, {'stage_id': str(self.backlog.pk)}
        )

    def test_move_to_current_stage_is_a_noop(self):
        result = self.machine.move_to(self.task, self.backlog.pk, self.alice)
        self.assertTrue(result.accepted)
        self.assertTrue(result.noop)
        self.assertEqual(self.actions(self.task), [])
        self.assertEqual(self.reload(self.task).version, 0)

    def test_stale_drag_is_rejected(self):
        result = self.machine.move_to(self.task, self.review.pk, self.alice, from_stage_id=self.design.pk)
        self.assertIsInstance(result.error, ConcurrencyError)
        self.assertEqual(result.error.status_code, 409)
        self.assertEqual(self.reload(self.task).stage, self.backlog)

    def test_stale_snapshot_loses_to_earlier_writer(self):
        stale = self.reload(self.task)
        self.machine.move_to(self.task, self.design.pk, self.alice).raise_for_error()

        result = self.machine.move_to(stale, self.review.pk, self.bob)

        self.assertIsInstance(result.error, ConcurrencyError)
        self.assertEqual(self.reload(self.task).stage, self.design)
        self.assertEqual(self.actions(self.task), ['stage_changed'])

    def test_closing_stage_requires_completion_payload(self):
        for stage in (self.completed, self.archived):
            result = self.machine.move_to(self.task, stage.pk, self.alice)
            self.assertIsInstance(result.error, ValidationError)
            self.assertEqual(result.error.messages, ['completion payload required'])
        self.assertEqual(self.reload(self.task).stage, self.backlog)
        self.assertEqual(TaskHistory.objects.count(), 0)

    def test_completion_payload_is_stored(self):
        payload = CompletionPayload(comment='Done and dusted', links=['https://example.com/release'])
        result = self.machine.move_to(self.task, self.completed.pk, self.alice, completion_payload=payload)

        self.assertTrue(result.accepted)
        self.assertEqual(TaskComment.objects.get(task=self.task).comment, 'Done and dusted')
        link = Attachment.objects.get(task=self.task)
        self.assertEqual((link.type, link.url), (Attachment.LINK, 'https://example.com/release'))
        self.assertIn('Note: Done and dusted', result.history[0].details)

    def test_unknown_stage_is_not_found(self):
        other = Stage.objects.create(project=Project.objects.create(name='Other'), title='X')
        result = self.machine.move_to(self.task, other.pk, self.alice)
        self.assertIsInstance(result.error, NotFoundError)
        result = self.machine.move_to(self.task, 'not-a-uuid', self.alice)
        self.assertIsInstance(result.error, NotFoundError)

    def test_suggested_stage_is_not_a_target(self):
        result = self.machine.move_to(self.task, self.suggested.pk, self.alice)
        self.assertIsInstance(result.error, ValidationError)

    def test_inactive_actor_is_refused(self):
        self.alice.is_active = False
        self.alice.save()
        result = self.machine.move_to(self.task, self.design.pk, self.alice)
        self.assertIsInstance(result.error, PermissionDenied)

    def test_review_stage_cannot_be_skipped_forward(self):
        self.machine.move_to(self.task, self.review.pk, self.alice).raise_for_error()
        result = self.machine.move_to(
            self.task, self.completed.pk, self.alice, completion_payload=CompletionPayload(comment='x')
        )
        self.assertIsInstance(result.error, ValidationError)

        back = self.machine.move_to(self.task, self.design.pk, self.alice)
        self.assertEqual(back.actions, [HistoryAction.STAGE_CHANGED])

    def test_approve_without_target_fails(self):
        qa = Stage.objects.create(
            project=self.project, title='QA', order=5, kind=StageKind.REVIEW, is_review_stage=True
        )
        task = make_task(self.project, qa, [self.alice], title='Check copy')
        result = self.machine.approve_review(task, self.lead)
        self.assertIsInstance(result.error, ValidationError)
        self.assertEqual(result.error.messages, ["Review stage 'QA' has no approved target stage"])

    def test_approve_outside_review_fails(self):
        result = self.machine.approve_review(self.task, self.lead)
        self.assertIsInstance(result.error, ValidationError)

    def test_only_reviewers_may_approve(self):
        self.machine.move_to(self.task, self.design.pk, self.alice)
        self.machine.enter_review(self.task, self.alice)
        payload = CompletionPayload(comment='ok')

        refused = self.machine.approve_review(self.task, self.outsider, completion_payload=payload)
        self.assertIsInstance(refused.error, PermissionDenied)

        accepted = self.machine.approve_review(self.task, self.carol, completion_payload=payload)
        self.assertTrue(accepted.accepted)

    def test_enter_review_follows_linked_stage(self):
        self.machine.move_to(self.task, self.design.pk, self.alice)
        result = self.machine.enter_review(self.task, self.alice)
        self.assertEqual(result.actions, [HistoryAction.MOVED_TO_REVIEW_STAGE])
        self.assertEqual(self.reload(self.task).stage, self.review)

    def test_enter_review_needs_a_review_stage(self):
        result = self.machine.enter_review(self.task, self.alice)
        self.assertIsInstance(result.error, ValidationError)
        result = self.machine.enter_review(self.task, self.alice, review_stage_id=self.design.pk)
        self.assertIsInstance(result.error, ValidationError)

    def test_reject_tags_redo_and_keeps_stage(self):
        self.machine.move_to(self.task, self.review.pk, self.alice)

        result = self.machine.reject_review(self.task, self.bob, 'Fix the typos')

        self.assertEqual(result.actions, [HistoryAction.UPDATED])
        task = self.reload(self.task)
        self.assertEqual(task.stage, self.review)
        self.assertEqual(task.tags, [REDO_TAG])
        revision = RevisionHistory.objects.get(task=task)
        self.assertEqual((revision.comment, revision.requested_by), ('Fix the typos', self.bob))
        self.assertIsNone(revision.resolved_at)
        self.assertEqual(result.history[0].previous_snapshot, {'tags': []})

        self.machine.approve_review(task, self.lead, completion_payload=CompletionPayload(comment='ok'))
        revision.refresh_from_db()
        self.assertIsNotNone(revision.resolved_at)

    def test_reject_requires_comment(self):
        self.machine.move_to(self.task, self.review.pk, self.alice)
        result = self.machine.reject_review(self.task, self.bob, '   ')
        self.assertIsInstance(result.error, ValidationError)
        self.assertEqual(RevisionHistory.objects.count(), 0)

    def test_second_rejection_leaves_tags_out_of_snapshot(self):
        self.machine.move_to(self.task, self.review.pk, self.alice)
        self.machine.reject_review(self.task, self.bob, 'Fix the typos').raise_for_error()

        result = self.machine.reject_review(self.task, self.bob, 'Still a typo in the footer')

        self.assertEqual(result.actions, [HistoryAction.UPDATED])
        self.assertEqual(TaskHistory.objects.get(pk=result.history[0].pk).previous_snapshot, {})
        self.assertEqual(self.reload(self.task).tags, [REDO_TAG])
        self.assertEqual(RevisionHistory.objects.filter(task=self.task).count(), 2)

    def test_return_from_review_restores_original_assignee(self):
        self.machine.move_to(self.task, self.design.pk, self.alice).raise_for_error()
        self.machine.move_to(self.task, self.review.pk, self.alice).raise_for_error()
        task = self.reload(self.task)
        self.assertEqual((task.previous_stage, task.original_assignee), (self.design, self.alice))

        self.machine.assign(self.task, [self.carol.pk], self.lead).raise_for_error()
        result = self.machine.move_to(self.task, self.design.pk, self.carol)

        self.assertEqual(result.actions, [HistoryAction.STAGE_CHANGED, HistoryAction.REASSIGNED])
        entry = result.history[1]
        self.assertEqual((entry.incoming_user, entry.outgoing_user), (self.carol, self.alice))
        task = self.reload(self.task)
        self.assertEqual(task.stage, self.design)
        self.assertEqual([row.user for row in task.ordered_assignees()], [self.alice])
        self.assertEqual(task.assignee, 'alice')
        self.assertIsNone(task.previous_stage)
        self.assertIsNone(task.original_assignee)
        self.assertEqual(
            self.actions(self.task),
            ['stage_changed', 'moved_to_review_stage', 'reassigned', 'stage_changed', 'reassigned'],
        )

    def test_return_from_review_keeps_unchanged_assignee(self):
        self.machine.move_to(self.task, self.design.pk, self.alice)
        self.machine.enter_review(self.task, self.alice)

        result = self.machine.move_to(self.task, self.design.pk, self.alice)

        self.assertEqual(result.actions, [HistoryAction.STAGE_CHANGED])
        self.assertIsNone(self.reload(self.task).previous_stage)

    def test_leaving_review_elsewhere_clears_return_point(self):
        self.machine.move_to(self.task, self.design.pk, self.alice)
        self.machine.enter_review(self.task, self.alice)
        self.machine.assign(self.task, [self.carol.pk], self.lead)

        result = self.machine.approve_review(self.task, self.lead, completion_payload=CompletionPayload(comment='ok'))

        self.assertEqual(result.actions, [HistoryAction.COMPLETED])
        task = self.reload(self.task)
        self.assertEqual((task.previous_stage, task.original_assignee), (None, None))
        self.assertEqual([row.user for row in task.ordered_assignees()], [self.carol])


class AdvanceArchiveTests(PipelineMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.machine = TaskStateMachine()
        self.task = make_task(self.project, self.backlog, [self.bob])

    def test_advance_follows_order_then_link(self):
        self.assertEqual(self.machine.advance(self.task, self.bob).task.stage, self.design)
        self.assertEqual(self.machine.advance(self.task, self.bob).task.stage, self.review)
        self.assertIsInstance(self.machine.advance(self.task, self.bob).error, ValidationError)

    def test_advance_with_handoff_assigns_stage_owner(self):
        result = self.machine.advance(self.task, self.lead, handoff=True)
        self.assertEqual(result.actions, [HistoryAction.STAGE_CHANGED, HistoryAction.REASSIGNED])
        task = self.reload(self.task)
        self.assertEqual([row.user for row in task.ordered_assignees()], [self.alice])
        self.assertEqual(task.assignee, 'alice')

    def test_archive_and_restore(self):
        archived = self.machine.archive(self.task, self.bob, CompletionPayload(comment='Out of scope'))
        self.assertEqual(archived.actions, [HistoryAction.ARCHIVED])
        self.assertEqual(archived.task.stage, self.archived)

        restored = self.machine.restore(self.task, self.bob, target_stage_id=self.design.pk)
        self.assertEqual(restored.actions, [HistoryAction.RESTORED])
        self.assertEqual(restored.task.stage, self.design)

    def test_restore_defaults_to_completed(self):
        self.machine.archive(self.task, self.bob, CompletionPayload(comment='Done elsewhere'))
        result = self.machine.restore(self.task, self.bob)
        self.assertEqual(result.task.stage, self.completed)
        self.assertEqual(result.actions, [HistoryAction.COMPLETED])
        self.assertIn('Restored from archive', result.history[0].details)

    def test_only_archived_tasks_restore(self):
        result = self.machine.restore(self.task, self.bob)
        self.assertIsInstance(result.error, ValidationError)

    def test_completed_and_archived_are_interchangeable(self):
        payload = CompletionPayload(comment='done')
        self.machine.move_to(self.task, self.completed.pk, self.bob, completion_payload=payload)
        result = self.machine.archive(self.task, self.bob, payload)
        self.assertEqual(result.actions, [HistoryAction.ARCHIVED])


class AssignmentTests(PipelineMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.machine = TaskStateMachine()
        self.task = make_task(self.project, self.backlog, [self.alice])

    def assignees(self):
        return [row.user_id for row in self.reload(self.task).ordered_assignees()]

    def test_each_assignee_change_gets_its_own_row(self):
        added = self.machine.assign(self.task, [self.alice.pk, self.bob.pk], self.lead)
        self.assertEqual(added.actions, [HistoryAction.ASSIGNED])
        self.assertEqual(added.history[0].outgoing_user, self.bob)
        self.assertEqual(added.history[0].previous_snapshot, {'assigned_users': [self.alice.pk]})

        swapped = self.machine.assign(self.task, [self.carol.pk, self.bob.pk], self.lead)
        self.assertEqual(swapped.actions, [HistoryAction.REASSIGNED])
        entry = swapped.history[0]
        self.assertEqual((entry.incoming_user, entry.outgoing_user), (self.alice, self.carol))
        self.assertEqual(self.reload(self.task).assignee, 'carol')

        reordered = self.machine.assign(self.task, [self.bob.pk, self.carol.pk], self.lead)
        self.assertEqual(reordered.actions, [HistoryAction.UPDATED])
        self.assertEqual(self.assignees(), [self.bob.pk, self.carol.pk])
        self.assertEqual(self.reload(self.task).assignee, 'bob')

        removed = self.machine.assign(self.task, [self.bob.pk], self.lead)
        self.assertEqual(removed.actions, [HistoryAction.UNASSIGNED])

        self.assertTrue(self.machine.assign(self.task, [self.bob.pk], self.lead).noop)

    def test_assign_validates_users(self):
        self.assertIsInstance(self.machine.assign(self.task, [], self.lead).error, ValidationError)
        self.assertIsInstance(
            self.machine.assign(self.task, [self.bob.pk, self.bob.pk], self.lead).error, ValidationError
        )
        self.assertIsInstance(self.machine.assign(self.task, [424242], self.lead).error, NotFoundError)
        self.assertEqual(self.assignees(), [self.alice.pk])

    def test_inactive_and_deleted_users_cannot_be_assigned(self):
        self.bob.is_active = False
        self.bob.save()
        self.carol.deleted_at = timezone.now()
        self.carol.save()

        for user in (self.bob, self.carol):
            result = self.machine.assign(self.task, [self.alice.pk, user.pk], self.lead)
            self.assertIsInstance(result.error, NotFoundError)
        created = self.machine.create_task(self.project, 'Draft copy', [self.carol.pk], self.lead)
        self.assertIsInstance(created.error, NotFoundError)
        self.assertEqual(self.assignees(), [self.alice.pk])

    def test_unassign(self):
        self.machine.assign(self.task, [self.alice.pk, self.bob.pk], self.lead)

        result = self.machine.unassign(self.task, self.alice.pk, self.lead)

        self.assertEqual(result.actions, [HistoryAction.UNASSIGNED])
        self.assertEqual(self.assignees(), [self.bob.pk])
        self.assertEqual(self.reload(self.task).assignee, 'bob')

    def test_last_assignee_stays(self):
        result = self.machine.unassign(self.task, self.alice.pk, self.lead)
        self.assertIsInstance(result.error, ValidationError)
        result = self.machine.unassign(self.task, self.bob.pk, self.lead)
        self.assertIsInstance(result.error, NotFoundError)

    def test_new_assignee_reopens_completed_task(self):
        self.machine.set_assignee_status(self.task, self.alice.pk, 'complete', self.alice)
        result = self.machine.assign(self.task, [self.alice.pk, self.bob.pk], self.lead)
        self.assertEqual(result.actions, [HistoryAction.ASSIGNED, HistoryAction.STATUS_CHANGED])
        self.assertEqual(self.reload(self.task).status, TaskStatus.IN_PROGRESS)


class CreateAndUpdateTests(PipelineMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.machine = TaskStateMachine()

    def test_create_task_lands_in_backlog(self):
        result = self.machine.create_task(
            self.project, 'Draft copy', [self.bob.pk, self.alice.pk], self.lead, priority='high'
        )
        task = result.task
        self.assertEqual(result.actions, [HistoryAction.CREATED])
        self.assertEqual(task.stage, self.backlog)
        self.assertEqual(task.assignee, 'bob')
        self.assertEqual(task.priority, 'high')
        self.assertEqual([row.user for row in task.ordered_assignees()], [self.bob, self.alice])

    def test_create_task_rejections(self):
        closed = self.machine.create_task(self.project, 'X', [self.bob.pk], self.lead, stage_id=self.completed.pk)
        self.assertIsInstance(closed.error, ValidationError)
        self.assertIsNone(closed.task)
        self.assertIsInstance(self.machine.create_task(self.project, 'X', [], self.lead).error, ValidationError)
        self.assertIsInstance(
            self.machine.create_task(self.project, 'X', [self.bob.pk], self.lead, stage_id='nope').error,
            NotFoundError,
        )
        self.assertEqual(self.project.tasks.count(), 0)

    def test_update_records_changed_fields_only(self):
        task = make_task(self.project, self.backlog, [self.alice], title='Old title')

        result = self.machine.update_task(task, {'title': 'New title', 'priority': 'medium'}, self.alice)

        self.assertEqual(result.actions, [HistoryAction.UPDATED])
        self.assertEqual(result.history[0].previous_snapshot, {'title': 'Old title'})
        self.assertEqual(result.history[0].details, 'Title changed')
        self.assertTrue(self.machine.update_task(task, {'title': 'New title'}, self.alice).noop)

    def test_update_rejects_unknown_fields(self):
        task = make_task(self.project, self.backlog, [self.alice])
        for changes in ({'status': 'complete'}, {'priority': 'urgent'}, {'title': ''}):
            self.assertIsInstance(self.machine.update_task(task, changes, self.alice).error, ValidationError)

    def test_start_stage_must_be_open(self):
        task = make_task(self.project, self.backlog, [self.alice])
        result = self.machine.update_task(task, {'start_stage_id': self.completed.pk}, self.alice)
        self.assertIsInstance(result.error, ValidationError)
        self.machine.update_task(task, {'start_stage_id': self.design.pk}, self.alice)
        self.assertEqual(self.reload(task).start_stage, self.design)

    def test_subtask_completion_leaves_parent_alone(self):
        parent = make_task(self.project, self.backlog, [self.alice], title='Parent')
        child = make_task(self.project, self.backlog, [self.bob], title='Child')
        self.machine.update_task(child, {'parent_id': parent.pk}, self.lead).raise_for_error()

        self.machine.set_assignee_status(child, self.bob.pk, 'complete', self.bob).raise_for_error()

        self.assertEqual(self.reload(child).status, TaskStatus.COMPLETE)
        self.assertEqual(self.reload(parent).status, TaskStatus.PENDING)
        self.assertEqual(list(parent.subtasks.all()), [child])

    def test_task_cannot_parent_itself(self):
        task = make_task(self.project, self.backlog, [self.alice])
        result = self.machine.update_task(task, {'parent_id': task.pk}, self.alice)
        self.assertIsInstance(result.error, ValidationError)


class NotificationTests(PipelineMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.machine = TaskStateMachine()
        self.task = make_task(self.project, self.backlog, [self.alice])
        self.received = []
        task_updated.connect(self.receiver)
        self.addCleanup(task_updated.disconnect, self.receiver)

    def receiver(self, sender, **kwargs):
        self.received.append(kwargs)

    def test_accepted_transition_notifies_after_commit(self):
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            self.machine.move_to(self.task, self.design.pk, self.alice)
        self.assertEqual(len(callbacks), 1)
        self.assertEqual(
            self.received,
            [{'signal': task_updated, 'event': TASK_UPDATED, 'project_id': self.project.pk, 'task_id': self.task.pk}],
        )

    def test_rejected_and_noop_transitions_are_silent(self):
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            self.machine.move_to(self.task, self.completed.pk, self.alice)
            self.machine.move_to(self.task, self.backlog.pk, self.alice)
        self.assertEqual(callbacks, [])
        self.assertEqual(self.received, [])
