from django.core.management.base import BaseCommand

from workflow.models import Project
from workflow.stage_graph import StageGraph


class Command(BaseCommand):
    help = 'Ensure all projects have the reserved stages (Suggested Task, Pending, Completed, Archive)'

    def handle(self, *args, **options):
        touched = 0
        for project in Project.objects.filter(deleted_at__isnull=True):
            touched += len(StageGraph.ensure_reserved_stages(project))
        self.stdout.write(f"Reserved stages ensured for all projects ({touched} created or adopted).")
