from django.core.management.base import BaseCommand

from credits.apps import ensure_default_credit_catalog


class Command(BaseCommand):
    help = "Create or update credit packages, consumption costs and subscription tiers from CREDIT_CATALOG."

    def handle(self, *args, **options):
        result = ensure_default_credit_catalog()
        created = ", ".join(result["created"]) or "none"
        updated = ", ".join(result["updated"]) or "none"
        self.stdout.write(self.style.SUCCESS(f"Credit catalog ready. Created: {created}. Updated: {updated}."))
