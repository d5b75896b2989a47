"""Payments bounded context: payment capture, refunds and gateway webhooks.

Handles the payment lifecycle against the gateway, idempotent webhook
ingestion with a failed-event retry queue, and the reconciliation job that
settles payments whose webhooks never arrived.
"""

from shared.domain import storefront as payments
