"""Ordering bounded context: carts, checkout and the order lifecycle.

Carts convert to orders at checkout, reserving stock in the same unit of
work. Order status changes follow the order state machine and restock the
lines on cancellation or return.
"""

from shared.domain import storefront as ordering
