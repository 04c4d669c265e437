from django.core.management.base import BaseCommand
from django.utils import timezone

from appointments.exceptions import SchedulingError
from group_sessions.models import GroupSession
from group_sessions.services import reconcile_participants


class Command(BaseCommand):
    help = "Recompute GroupSession.current_participants from live registrations"

    def add_arguments(self, parser):
        parser.add_argument(
            "--session",
            type=int,
            action="append",
            dest="session_ids",
            help="Only reconcile this session id (repeatable).",
        )
        parser.add_argument(
            "--include-past",
            action="store_true",
            help="Also reconcile sessions that have already started.",
        )

    def handle(self, *args, **options):
        sessions = GroupSession.objects.exclude(status=GroupSession.Status.CANCELLED)
        if options["session_ids"]:
            sessions = sessions.filter(pk__in=options["session_ids"])
        elif not options["include_past"]:
            sessions = sessions.filter(start_time__gte=timezone.now())

        repaired = 0
        failed = 0
        for session_id in sessions.values_list("pk", flat=True):
            try:
                old_count, new_count = reconcile_participants(session_id)
            except SchedulingError as e:
                failed += 1
                self.stdout.write(self.style.ERROR(f"Session {session_id}: {e.message}"))
                continue
            if old_count != new_count:
                repaired += 1
                self.stdout.write(
                    self.style.WARNING(f"Session {session_id}: {old_count} -> {new_count}")
                )

        self.stdout.write(
            self.style.SUCCESS(f"Reconciled {sessions.count()} sessions: {repaired} repaired, {failed} failed.")
        )
