"""Management command to replay stored webhook failures."""
from __future__ import annotations

from typing import Iterable, Optional

from django.core.management.base import BaseCommand

from credits.models import WebhookFailure
from credits.services import build_webhook_processor


class Command(BaseCommand):
    help = "Replay unresolved Stripe webhook failures through the normal processing pipeline."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--event-id",
            dest="event_ids",
            action="append",
            help="Replay only the specified Stripe event id. Can be supplied multiple times.",
        )
        parser.add_argument(
            "--limit",
            type=int,
            default=None,
            help="Maximum number of events to replay in this run.",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Preview events that would be replayed without performing any changes.",
        )

    def handle(self, *args, **options) -> None:
        event_ids: Optional[Iterable[str]] = options.get("event_ids")
        limit: Optional[int] = options.get("limit")
        dry_run: bool = options.get("dry_run")

        queryset = WebhookFailure.objects.filter(resolved_at__isnull=True).order_by("created_at")
        if event_ids:
            queryset = queryset.filter(event_id__in=list(event_ids))
        if limit is not None:
            queryset = queryset[:limit]

        failures = list(queryset)
        if not failures:
            self.stdout.write(self.style.WARNING("No webhook failures matched the requested filters."))
            return

        for failure in failures:
            self.stdout.write(f"Replaying Stripe event {failure.event_id} ({failure.event_type})")

        if dry_run:
            self.stdout.write(self.style.WARNING(f"Dry run complete. {len(failures)} events would be replayed."))
            return

        summary = build_webhook_processor().replay_failures(event_ids=[failure.event_id for failure in failures])
        message = f"Replayed {summary.total} events: {summary.succeeded} resolved, {summary.failed} still failing."
        if summary.failed:
            self.stdout.write(self.style.WARNING(message))
        else:
            self.stdout.write(self.style.SUCCESS(message))
