import signal
import threading

from django.core.management.base import BaseCommand, CommandError

from apps.jobs.tasks import TASKS, build_scheduler


class Command(BaseCommand):
    help = "Run the periodic payment, order and idempotency jobs."

    def add_arguments(self, parser):
        parser.add_argument("--once", action="store_true", help="Run every selected task once and exit.")
        parser.add_argument(
            "--only",
            action="append",
            choices=sorted(TASKS),
            help="Restrict to this task; repeatable.",
        )

    def handle(self, *args, **options):
        only = options.get("only")
        unknown = set(only or ()) - set(TASKS)
        if unknown:
            raise CommandError(f"unknown tasks: {', '.join(sorted(unknown))}")
        scheduler = build_scheduler(only=only)

        if options["once"]:
            for name in scheduler.tasks:
                scheduler.run_task(name)
            for name, info in scheduler.snapshot().items():
                state = "FAILED" if info["last_error"] else "ok"
                self.stdout.write(f"{name}: {state}")
            return

        stop = threading.Event()
        signal.signal(signal.SIGTERM, lambda *_: stop.set())
        signal.signal(signal.SIGINT, lambda *_: stop.set())
        scheduler.run_forever(stop)
