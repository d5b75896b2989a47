"""Storefront management CLI.

Schema management, catalogue seeding and the periodic jobs, so they can be
run from cron or a scheduler.

Usage:
    python src/manage.py setup-db              # Create all tables
    python src/manage.py drop-db               # Drop all tables
    python src/manage.py seed-product --name Widget --price 100.00 --quantity 10 [--variant Large ...]
    python src/manage.py retry-webhooks        # One sweep of the failed-webhook queue
    python src/manage.py reconcile-payments    # Settle captured-but-unconfirmed payments
    python src/manage.py check-stock           # Compare stock counters with the ledger
"""

import argparse
import json
import sys

from shared.logging import bind_context, configure_logging


def setup_database(domain):
    print(f"Creating {domain.name} database schema...")
    domain.setup_database()
    print("Done.")


def drop_database(domain):
    print(f"Dropping {domain.name} database schema...")
    domain.drop_database()
    print("Done.")


def seed_product(name, price, quantity, variants):
    """Register a product (and optional variants) with opening stock, as the CLI actor."""
    from inventory.stock.initialization import register_product, register_variant

    product = register_product(name=name, price=price, initial_quantity=quantity, created_by="manage")
    seeded = [
        register_variant(product_id=product.id, name=variant, initial_quantity=quantity, created_by="manage")
        for variant in variants
    ]
    print(
        json.dumps(
            {**product.serialize(), "variants": [variant.serialize(product) for variant in seeded]},
            indent=2,
        )
    )
    return 0


def retry_webhooks(batch_size):
    from payments.webhook.retry import WebhookRetryWorker

    stats = WebhookRetryWorker().run_once(batch_size=batch_size)
    print(json.dumps(stats.to_dict(), indent=2))
    return 0


def reconcile_payments():
    from payments.payment.reconciliation import PaymentReconciliationJob

    stats = PaymentReconciliationJob().run_once()
    print(json.dumps(stats.to_dict(), indent=2))
    return 1 if stats.errors else 0


def check_stock():
    from inventory.stock.reconciliation import StockReconciler

    report = StockReconciler().health()
    print(json.dumps(report, indent=2))
    return 0 if report["consistent"] else 1


def main():
    parser = argparse.ArgumentParser(description="Storefront management")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("setup-db", help="Create all database tables")
    subparsers.add_parser("drop-db", help="Drop all database tables")

    seed_parser = subparsers.add_parser("seed-product", help="Register a product with opening stock")
    seed_parser.add_argument("--name", required=True)
    seed_parser.add_argument("--price", required=True, help="Unit price, e.g. 100.00")
    seed_parser.add_argument("--quantity", type=int, default=0, help="Opening stock for the product and each variant")
    seed_parser.add_argument("--variant", action="append", default=[], help="Variant name; repeat for more")

    retry_parser = subparsers.add_parser("retry-webhooks", help="Retry failed webhook deliveries once")
    retry_parser.add_argument("--batch-size", type=int, default=50, help="Failures to pick up per sweep")

    subparsers.add_parser("reconcile-payments", help="Reconcile pending payments with the gateway")
    subparsers.add_parser("check-stock", help="Check stock counters against the ledger")

    args = parser.parse_args()
    configure_logging()
    bind_context(command=args.command)

    from shared.domain import init_domain

    domain = init_domain()
    with domain.domain_context():
        if args.command == "setup-db":
            setup_database(domain)
        elif args.command == "drop-db":
            drop_database(domain)
        elif args.command == "seed-product":
            sys.exit(seed_product(args.name, args.price, args.quantity, args.variant))
        elif args.command == "retry-webhooks":
            sys.exit(retry_webhooks(args.batch_size))
        elif args.command == "reconcile-payments":
            sys.exit(reconcile_payments())
        elif args.command == "check-stock":
            sys.exit(check_stock())
        else:
            parser.print_help()
            sys.exit(1)


if __name__ == "__main__":
    main()
