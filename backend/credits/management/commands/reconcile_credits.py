"""Report ledger drift and optionally run repairs."""
from __future__ import annotations

from django.core.management.base import BaseCommand, CommandError

from credits.services import build_reconciliation_service
from credits.services.ledger import BalanceIntegrityError


class Command(BaseCommand):
    help = "Report credit ledger drift. Repairs only run when explicitly requested."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--repair-orphans",
            action="store_true",
            help="Credit completed recharges that have no recharge transaction.",
        )
        parser.add_argument(
            "--recalculate",
            dest="recalculate_user_ids",
            action="append",
            type=int,
            metavar="USER_ID",
            help="Rebuild the balance snapshot of USER_ID from its transaction log. Can be repeated.",
        )

    def handle(self, *args, **options) -> None:
        service = build_reconciliation_service()

        snapshot = service.system_health_snapshot()
        self.stdout.write(
            f"Status: {snapshot.status} (recent={snapshot.recent_recharges}, "
            f"orphaned={snapshot.orphaned_recharges}, stale_pending={snapshot.stale_pending_recharges})"
        )
        for drift in service.detect_drift():
            target = drift.recharge_id or drift.user_id
            self.stdout.write(f"  [{drift.kind}] {target}: {drift.detail} -> {drift.repair_action}")

        if options.get("repair_orphans"):
            summary = service.repair_orphaned_recharges()
            self.stdout.write(
                self.style.SUCCESS(f"Repaired {len(summary.repaired)} of {summary.checked} orphaned recharges.")
            )
            for recharge_id, error in summary.failed:
                self.stdout.write(self.style.ERROR(f"  {recharge_id}: {error}"))

        for user_id in options.get("recalculate_user_ids") or []:
            try:
                result = service.recalculate_balance(user_id)
            except BalanceIntegrityError as exc:
                raise CommandError(str(exc)) from exc
            self.stdout.write(
                self.style.SUCCESS(
                    f"User {user_id}: balance {result.previous_balance} -> {result.balance} "
                    f"(recharged={result.total_recharged}, consumed={result.total_consumed})"
                )
            )
