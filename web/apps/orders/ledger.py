"""Authoritative stock ledger for product variants.

Every stock movement made by the order pipeline goes through here, and each
one is a single UPDATE statement. A reservation only matches the row while
enough stock is left, so two checkouts racing for the last unit cannot both
succeed and stock never goes below zero, without any lock held by this
process. Callers that need several movements to commit together wrap them in
``transaction.atomic``.
"""

from typing import Dict, Iterable
import uuid

from django.db.models import F

from .domain import InventoryPort
from .models import ProductVariant


class InventoryLedger(InventoryPort):
    def try_reserve(self, variant_id: uuid.UUID, quantity: int) -> bool:
        """Debit ``quantity`` units if the variant still has them.

        Returns:
            bool: True when the stock was debited, False when the variant is
            short (or unknown); nothing is written in that case.
        """
        if quantity <= 0:
            raise ValueError("quantity must be positive")
        updated = (
            ProductVariant.objects.filter(pk=variant_id, stock__gte=quantity)
            .update(stock=F("stock") - quantity)
        )
        return updated == 1

    def release(self, variant_id: uuid.UUID, quantity: int) -> None:
        """Credit ``quantity`` units back, e.g. when an order is cancelled."""
        if quantity <= 0:
            raise ValueError("quantity must be positive")
        ProductVariant.objects.filter(pk=variant_id).update(stock=F("stock") + quantity)

    def snapshot(self, variant_ids: Iterable) -> Dict[str, int]:
        """Current stock per variant id, for refreshing carts. Read only."""
        ids = [str(v) for v in variant_ids]
        if not ids:
            return {}
        rows = ProductVariant.objects.filter(pk__in=ids).values_list("id", "stock")
        return {str(vid): stock for vid, stock in rows}
