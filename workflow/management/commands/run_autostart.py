from django.core.management.base import BaseCommand

from workflow import conf
from workflow.scheduler import AutoStartScheduler


class Command(BaseCommand):
    help = 'Move backlog tasks to their start stage once their start time arrives'

    def add_arguments(self, parser):
        parser.add_argument('--once', action='store_true', help='Run a single tick and exit')
        parser.add_argument('--interval', type=int, default=None, help='Seconds between ticks')

    def handle(self, *args, **options):
        scheduler = AutoStartScheduler()
        if options['once']:
            results = scheduler.tick()
            started = [r for r in results if r.accepted]
            for result in results:
                if not result.accepted:
                    self.stderr.write(f"Failed: {result.error}")
            self.stdout.write(f"Auto-started {len(started)} task(s) at {scheduler.now():%Y-%m-%d %H:%M:%S %Z}")
            return
        interval = options['interval'] or conf.get('AUTOSTART_INTERVAL')
        self.stdout.write(f"Auto-start scheduler running every {interval}s")
        scheduler.run(interval=interval)
