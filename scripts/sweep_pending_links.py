"""Expire overdue payment links and poll providers for stale pending ones.

Meant for a cron job; webhooks remain the primary signal and this only closes
the gaps left by lost or never-sent notifications.
"""

import argparse
import json

from paylink.common.config import settings
from paylink.common.db import SessionLocal
from paylink.common.logging import configure_logging
from paylink.services.links.reconciliation import ReconciliationEngine
from paylink.services.links.store import PaymentLinkStore
from paylink.services.vault.crypto import CredentialVault
from paylink.services.vault.service import ProviderConfigService


def main() -> None:
    """CLI entrypoint for the pending-link sweep."""

    parser = argparse.ArgumentParser(description="Expire overdue links and reconcile stale pending links.")
    parser.add_argument("--limit", type=int, default=200)
    parser.add_argument("--skip-poll", action="store_true", help="only expire overdue links")
    args = parser.parse_args()

    configure_logging()
    configs = ProviderConfigService(SessionLocal, CredentialVault())
    engine = ReconciliationEngine(
        SessionLocal,
        PaymentLinkStore(SessionLocal),
        lambda link: configs.adapter_for(link.provider_config_id),
        service_name=settings.service_name,
    )
    report = {"expired": engine.expire_overdue_links(limit=args.limit)}
    if not args.skip_poll:
        report.update(engine.sweep_pending_links(limit=args.limit))
    print(json.dumps(report, indent=2))


if __name__ == "__main__":
    main()
