"""Inventory bounded context: stock counters and the append-only stock ledger.

Stock-holding products and variants, the movements recorded against them,
and the admin operations that adjust, receive and audit stock. Elements
register on the shared storefront domain.
"""

from shared.domain import storefront as inventory
