import datetime
import shutil
import tempfile

from django.core.files.uploadedfile import SimpleUploadedFile
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone

from workflow.exceptions import ImmutableHistoryError, ValidationError
from workflow.history import HistoryRecorder
from workflow.models import Attachment, HistoryAction, Task, TaskHistory
from workflow.state_machine import TaskStateMachine

from .factories import PipelineMixin, make_task


class ImmutabilityTests(PipelineMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.task = make_task(self.project, self.backlog, [self.alice])
        self.entry = TaskStateMachine().move_to(self.task, self.design.pk, self.alice).history[0]

    def test_rows_cannot_be_saved_again(self):
        self.entry.details = 'rewritten'
        with self.assertRaises(ImmutableHistoryError):
            self.entry.save()

    def test_rows_cannot_be_deleted(self):
        with self.assertRaises(ImmutableHistoryError):
            self.entry.delete()
        with self.assertRaises(ImmutableHistoryError):
            TaskHistory.objects.filter(task=self.task).delete()

    def test_bulk_update_is_refused(self):
        with self.assertRaises(ImmutableHistoryError):
            TaskHistory.objects.filter(task=self.task).update(details='rewritten')
        self.assertEqual(TaskHistory.objects.get(pk=self.entry.pk).details, self.entry.details)


class RecordOutsideTransactionTests(SimpleTestCase):
    def test_history_needs_the_transition_transaction(self):
        with self.assertRaises(RuntimeError):
            HistoryRecorder.record(Task(), HistoryAction.UPDATED)


class RecordUpdateTests(PipelineMixin, TestCase):
    def test_bookkeeping_fields_are_ignored(self):
        task = make_task(self.project, self.backlog, [self.alice])
        before = {'title': 'A', 'updated_at': timezone.now(), 'version': 1}
        after = {'title': 'A', 'updated_at': timezone.now() + datetime.timedelta(seconds=5), 'version': 2}
        self.assertIsNone(HistoryRecorder.record_update(task, self.alice, before, after))
        self.assertEqual(TaskHistory.objects.count(), 0)

    def test_dates_are_stored_as_text(self):
        task = make_task(self.project, self.backlog, [self.alice])
        due = datetime.datetime(2026, 5, 1, 12, 0, tzinfo=datetime.timezone.utc)
        machine = TaskStateMachine()
        machine.update_task(task, {'due_date': due}, self.alice).raise_for_error()

        result = machine.update_task(task, {'due_date': None, 'tags': ['launch']}, self.alice)

        entry = TaskHistory.objects.get(pk=result.history[0].pk)
        self.assertEqual(entry.previous_snapshot, {'due_date': '2026-05-01T12:00:00Z', 'tags': []})
        self.assertEqual(entry.details, 'Due date changed, Tags changed')

    def test_history_is_read_in_creation_order(self):
        task = make_task(self.project, self.backlog, [self.alice])
        machine = TaskStateMachine()
        machine.move_to(task, self.design.pk, self.alice)
        machine.move_to(task, self.backlog.pk, self.alice)
        self.assertEqual(
            [(e.incoming_stage_id, e.outgoing_stage_id) for e in HistoryRecorder.for_task(task)],
            [(self.backlog.pk, self.design.pk), (self.design.pk, self.backlog.pk)],
        )
        self.assertEqual(HistoryRecorder.since(timezone.now() + datetime.timedelta(minutes=1)).count(), 0)


class AttachmentTests(PipelineMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.media_root = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.media_root, ignore_errors=True)
        settings_override = override_settings(MEDIA_ROOT=self.media_root, MEDIA_URL='/media/')
        settings_override.enable()
        self.addCleanup(settings_override.disable)
        self.machine = TaskStateMachine()
        self.task = make_task(self.project, self.design, [self.alice])

    def test_file_upload_is_recorded(self):
        upload = SimpleUploadedFile('brief.txt', b'launch brief', content_type='text/plain')

        result = self.machine.add_attachment(self.task, self.alice, file=upload)

        self.assertEqual(result.actions, [HistoryAction.ATTACHMENT_ADDED])
        attachment = Attachment.objects.get(task=self.task)
        self.assertEqual(attachment.type, Attachment.FILE)
        self.assertEqual(attachment.name, 'brief.txt')
        self.assertTrue(attachment.url.startswith('/media/task-attachments/brief'))
        self.assertEqual(result.history[0].details, 'Attachment "brief.txt" added')

    def test_link_and_removal(self):
        added = self.machine.add_attachment(self.task, self.alice, name='Brief', url='https://example.com/brief')
        attachment = Attachment.objects.get(task=self.task)
        self.assertEqual((attachment.name, attachment.type), ('Brief', Attachment.LINK))

        removed = self.machine.remove_attachment(attachment, self.alice)

        self.assertEqual(added.actions + removed.actions,
                         [HistoryAction.ATTACHMENT_ADDED, HistoryAction.ATTACHMENT_REMOVED])
        self.assertFalse(Attachment.objects.filter(task=self.task).exists())
        self.assertEqual(removed.history[0].previous_snapshot['attachment_url'], 'https://example.com/brief')

    def test_empty_attachment_is_rejected(self):
        result = self.machine.add_attachment(self.task, self.alice)
        self.assertIsInstance(result.error, ValidationError)
