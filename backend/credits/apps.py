import logging
from typing import Dict, List

from django.apps import AppConfig
from django.db.models.signals import post_migrate

logger = logging.getLogger(__name__)


def ensure_default_credit_catalog() -> Dict[str, List[str]]:
    """Create or update packages, consumption costs and subscription tiers from ``CREDIT_CATALOG``."""
    from django.conf import settings
    from django.db import OperationalError, ProgrammingError, transaction
    from .models import CreditConsumptionConfig, CreditPackage, SubscriptionCreditTier

    catalog = getattr(settings, "CREDIT_CATALOG", {}) or {}
    currency = getattr(settings, "STRIPE_CURRENCY", "usd").lower()
    created, updated = [], []

    def _apply(model, lookup, defaults, label):
        obj, was_created = model.objects.get_or_create(**lookup, defaults=defaults)
        if was_created:
            created.append(label)
            return
        fields_to_update = [field for field, expected in defaults.items() if getattr(obj, field) != expected]
        if fields_to_update:
            for field in fields_to_update:
                setattr(obj, field, defaults[field])
            obj.save(update_fields=fields_to_update)
            updated.append(label)

    try:
        with transaction.atomic():
            for package in catalog.get("packages", []):
                _apply(
                    CreditPackage,
                    {"slug": package["slug"]},
                    {
                        "name": package.get("name", package["slug"].title()),
                        "credits": int(package["credits"]),
                        "price": int(package["price"]),
                        "currency": package.get("currency", currency).lower(),
                        "sort_order": int(package.get("sort_order", 0)),
                    },
                    f"package:{package['slug']}",
                )

            for config in catalog.get("consumption", []):
                _apply(
                    CreditConsumptionConfig,
                    {"action_type": config["action_type"]},
                    {
                        "credits_required": int(config["credits_required"]),
                        "description": config.get("description", ""),
                    },
                    f"action:{config['action_type']}",
                )

            for tier in catalog.get("subscription_tiers", []):
                tier_currency = tier.get("currency", currency).lower()
                _apply(
                    SubscriptionCreditTier,
                    {"unit_amount": int(tier["unit_amount"]), "currency": tier_currency, "interval": tier["interval"]},
                    {
                        "name": tier.get("name", ""),
                        "stripe_price_id": tier.get("stripe_price_id") or "",
                        "credits": int(tier["credits"]),
                    },
                    f"tier:{tier.get('name') or tier['unit_amount']}",
                )
    except (OperationalError, ProgrammingError):
        logger.debug("Database not ready for credit catalog initialisation.")
        return {"created": [], "updated": []}

    if created or updated:
        logger.info("Credit catalog initialisation completed. created=%s updated=%s", created, updated)
    else:
        logger.info("Credit catalog initialisation completed. No changes required.")
    return {"created": created, "updated": updated}


def init_catalog_after_migrate(sender, **kwargs):
    """Seed the credit catalog after every migrate run."""
    ensure_default_credit_catalog()


class CreditsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'credits'
    verbose_name = 'Credits'

    def ready(self):
        post_migrate.connect(init_catalog_after_migrate, sender=self)
