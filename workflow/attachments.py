"""File and link attachments backed by Django's storage API."""
import logging
import os

from django.core.files.storage import default_storage

from .models import Attachment

logger = logging.getLogger(__name__)


class AttachmentStore:
    def __init__(self, storage=None, prefix='task-attachments'):
        self.storage = storage or default_storage
        self.prefix = prefix

    def upload(self, file):
        name = os.path.basename(getattr(file, 'name', '') or 'attachment')
        path = self.storage.save(f'{self.prefix}/{name}', file)
        logger.info("Stored attachment %s at %s", name, path)
        return {'url': self.storage.url(path), 'name': name}

    def add_link(self, task, name, url):
        return Attachment.objects.create(task=task, name=name or url, url=url, type=Attachment.LINK)

    def add_file(self, task, file):
        uploaded = self.upload(file)
        return Attachment.objects.create(
            task=task, name=uploaded['name'], url=uploaded['url'], type=Attachment.FILE
        )
