"""
Coupon validation and administration.

Validation is read-only: uses are only counted when an order that
references the coupon is actually placed (see ``orders``).
"""
from datetime import datetime
import logging
from typing import Any, Dict, List, Optional

from errors import InvalidState, NotFound, ValidationFailed
from repositories import Store, as_utc, utcnow

logger = logging.getLogger(__name__)


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


class CouponService:
    def __init__(self, store: Store):
        self.store = store

    def validate(self, code: str, order_total: float, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Quote the discount for ``order_total``. Fails when the code is unknown,
        expired or used up, and also when the total is below the coupon's
        ``min_order_amount`` (coupons without one accept any total).
        """
        code = normalize_code(code)
        if not code:
            raise ValidationFailed("Coupon code is required")
        coupon = self.store.coupons.find_by_code(code)
        if not coupon:
            raise NotFound("Coupon code not found")

        now = now or utcnow()
        if now > as_utc(coupon["expiry_date"]):
            raise InvalidState("Coupon has expired")
        max_uses = coupon.get("max_uses")
        if max_uses is not None and coupon.get("current_uses", 0) >= max_uses:
            raise InvalidState("Coupon usage limit reached")
        minimum = coupon.get("min_order_amount")
        if minimum is not None and order_total < minimum:
            raise InvalidState(f"Minimum order amount for this coupon is {minimum:.2f}")

        discount = round(order_total * coupon["discount_percent"] / 100, 2)
        return {
            "coupon_id": coupon["id"],
            "code": coupon["code"],
            "discount_percent": coupon["discount_percent"],
            "discount_amount": discount,
            "final_total": round(order_total - discount, 2),
        }

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def list_coupons(self) -> List[Dict[str, Any]]:
        return self.store.coupons.find({}, sort=[("created_at", -1)])

    def create_coupon(self, data: Dict[str, Any]) -> Dict[str, Any]:
        fields = self._clean(data)
        if self.store.coupons.find_by_code(fields["code"]):
            raise InvalidState("Coupon code already exists")
        coupon = self.store.coupons.create({**fields, "current_uses": 0})
        logger.info("Coupon %s created", coupon["code"])
        return coupon

    def update_coupon(self, coupon_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        if not self.store.coupons.find_by_id(coupon_id):
            raise NotFound("Coupon not found")
        fields = self._clean(data)
        clash = self.store.coupons.find_by_code(fields["code"])
        if clash and clash["id"] != coupon_id:
            raise InvalidState("Coupon code already exists")
        return self.store.coupons.update(coupon_id, fields)

    def delete_coupon(self, coupon_id: str) -> None:
        if not self.store.coupons.delete(coupon_id):
            raise NotFound("Coupon not found")

    @staticmethod
    def _clean(data: Dict[str, Any]) -> Dict[str, Any]:
        code = normalize_code(data.get("code"))
        percent = data.get("discount_percent")
        expiry = data.get("expiry_date")
        if not code or percent is None or not expiry:
            raise ValidationFailed("Code, discount percent, and expiry date are required")
        if not 0 <= percent <= 100:
            raise ValidationFailed("Discount percent must be between 0 and 100")
        return {
            "code": code,
            "discount_percent": percent,
            "expiry_date": expiry,
            # 0 / empty means unlimited
            "max_uses": data.get("max_uses") or None,
            "min_order_amount": data.get("min_order_amount"),
            "description": data.get("description"),
        }
