"""Per-user cart merged with current product data."""
import logging
from typing import Any, Dict, Optional

from errors import NotFound, ValidationFailed
from repositories import Store

logger = logging.getLogger(__name__)


def _same_color(a: Optional[str], b: Optional[str]) -> bool:
    # "no color" matches "no color"
    return (a or None) == (b or None)


class CartService:
    def __init__(self, store: Store):
        self.store = store

    def get_cart(self, user_id: str) -> Dict[str, Any]:
        items = self.store.cart.for_user(user_id)
        if items and "product" not in items[0]:
            products: Dict[str, Any] = {}
            for item in items:
                pid = item["product_id"]
                if pid not in products:
                    products[pid] = self.store.products.find_by_id(pid)
                item["product"] = products[pid]

        total = 0.0
        for item in items:
            price = float((item.get("product") or {}).get("price", 0))
            item["subtotal"] = round(price * item["quantity"], 2)
            total += item["subtotal"]
        return {"user_id": user_id, "items": items, "total": round(total, 2)}

    def add_to_cart(self, user_id: str, product_id: str, quantity: int = 1, color: Optional[str] = None) -> Dict[str, Any]:
        if quantity < 1:
            raise ValidationFailed("Quantity must be at least 1")
        product = self.store.products.find_by_id(product_id)
        if not product:
            raise NotFound("Product not found")

        existing = self._find_line(user_id, product["id"], color, match_color=True)
        if existing:
            self.store.cart.increment(existing["id"], quantity)
        else:
            self.store.cart.create(
                {"user_id": user_id, "product_id": product["id"], "quantity": quantity, "selected_color": color or None}
            )
        return self.get_cart(user_id)

    def update_cart_item(self, user_id: str, product_id: str, quantity: int, color: Optional[str] = None) -> Dict[str, Any]:
        line = self._find_line(user_id, product_id, color, match_color=color is not None)
        if not line:
            raise NotFound("Item not found in cart")
        if quantity <= 0:
            self.store.cart.delete(line["id"])
        else:
            self.store.cart.update(line["id"], {"quantity": quantity})
        return self.get_cart(user_id)

    def remove_from_cart(self, user_id: str, product_id: str, color: Optional[str] = None) -> Dict[str, Any]:
        line = self._find_line(user_id, product_id, color, match_color=color is not None)
        if not line:
            raise NotFound("Item not found in cart")
        self.store.cart.delete(line["id"])
        return self.get_cart(user_id)

    def clear_cart(self, user_id: str) -> int:
        removed = self.store.cart.clear(user_id)
        logger.info("Cleared %s cart lines for %s", removed, user_id)
        return removed

    def _find_line(self, user_id: str, product_id: str, color: Optional[str], match_color: bool) -> Optional[Dict[str, Any]]:
        for line in self.store.cart.for_user(user_id):
            if line["product_id"] != product_id:
                continue
            if match_color and not _same_color(line.get("selected_color"), color):
                continue
            return line
        return None
