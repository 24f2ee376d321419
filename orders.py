"""
Order lifecycle: checkout, status changes, cancellation, returns and tracking.

Stock, order and order-line writes must all succeed for an order to exist;
anything after them (cart clearing, coupon redemption, notifications) is
best-effort and only logged when it fails.
"""
from datetime import timedelta
import hashlib
import logging
from typing import Any, Callable, Dict, List, Optional

from errors import Forbidden, InsufficientStock, InvalidState, NotFound, ValidationFailed
from notifications import Notifier
from repositories import ProductRepository, Store, as_utc, utcnow
from schemas import TrackingUpdate
import settings

logger = logging.getLogger(__name__)

PENDING = "pending"
SHIPPED = "shipped"
OUT_FOR_DELIVERY = "out-for-delivery"
DELIVERED = "delivered"
RETURN_REQUESTED = "return-requested"
RETURNED = "returned"
CANCELLED = "cancelled"

# a customer may not cancel once the parcel has left
NOT_CANCELLABLE = (SHIPPED, OUT_FOR_DELIVERY, DELIVERED, RETURN_REQUESTED, RETURNED)


def tracking_number(order_id: str) -> str:
    digest = hashlib.blake2b(order_id.encode(), digest_size=4).hexdigest().upper()
    return f"TRACK{digest}"


def enrich_order_with_tracking(order: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Attach a ``tracking`` block to the order. Stored tracking fields win;
    anything missing is synthesized from the order id and creation time, so
    the same unmodified order always yields the same block.
    """
    if not order:
        return None
    created_at = as_utc(order.get("created_at"))
    estimated = as_utc(order.get("estimated_delivery"))
    if estimated is None and created_at is not None:
        estimated = created_at + timedelta(days=settings.DELIVERY_ESTIMATE_DAYS)
    updates = order.get("tracking_updates") or [
        {
            "status": "Order Confirmed",
            "location": "Warehouse",
            "timestamp": created_at,
            "message": "Your order has been confirmed",
        }
    ]
    tracking = {
        "trackingNumber": order.get("tracking_number") or tracking_number(order["id"]),
        "carrier": order.get("carrier") or settings.DEFAULT_CARRIER,
        "estimatedDelivery": estimated,
        "currentLocation": order.get("current_location") or "Processing",
        "updates": updates,
    }
    return {**order, "tracking": tracking}


class StockReservation:
    """
    Unit of work for stock decrements. Each ``take`` is an atomic
    conditional decrement; leaving the block with an exception gives every
    taken quantity back.
    """

    def __init__(self, products: ProductRepository):
        self.products = products
        self.taken: List[tuple] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.release()
        return False

    def take(self, product: Dict[str, Any], quantity: int) -> Dict[str, Any]:
        if quantity > product.get("stock", 0):
            raise InsufficientStock(product["name"])
        updated = self.products.take_stock(product["id"], quantity)
        if updated is None:
            # someone else took it between our read and the write
            raise InsufficientStock(product["name"])
        self.taken.append((product["id"], quantity))
        return updated

    def release(self) -> None:
        while self.taken:
            product_id, quantity = self.taken.pop()
            try:
                self.products.restore_stock(product_id, quantity)
            except Exception:
                logger.exception("Could not give back %s units of product %s", quantity, product_id)


def _call_now(fn: Callable, *args, **kwargs) -> None:
    fn(*args, **kwargs)


class OrderWorkflow:
    def __init__(self, store: Store, notifier: Notifier, dispatch: Optional[Callable] = None):
        self.store = store
        self.notifier = notifier
        # BackgroundTasks.add_task in the HTTP layer
        self.dispatch = dispatch or _call_now

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def create_order(
        self,
        user_id: str,
        shipping_address: Optional[Dict[str, Any]],
        items: Optional[List[Dict[str, Any]]] = None,
        total_amount: Optional[float] = None,
        shipping_cost: Optional[float] = None,
        coupon_code: Optional[str] = None,
        discount_amount: Optional[float] = None,
    ) -> Dict[str, Any]:
        user = self.store.users.find_by_id(user_id)
        if not user:
            raise NotFound("User not found")
        if user.get("role") == "admin":
            raise Forbidden("Admins cannot place orders. Please use a customer account to place orders.")

        lines = list(items or [])
        if not lines:
            lines = self.store.cart.for_user(user_id)
            if not lines:
                raise InvalidState("Cart is empty")
        for line in lines:
            if int(line.get("quantity") or 0) < 1:
                raise ValidationFailed("Quantity must be at least 1")

        running_total = 0.0
        with StockReservation(self.store.products) as reservation:
            priced = []
            for line in lines:
                product = self.store.products.find_by_id(line["product_id"])
                if not product:
                    raise NotFound("Product not found")
                quantity = int(line["quantity"])
                reservation.take(product, quantity)
                running_total += product["price"] * quantity
                priced.append((line, product, quantity))

            order = self.store.orders.create(
                {
                    "user_id": user_id,
                    "total_amount": total_amount if total_amount is not None else round(running_total, 2),
                    "status": PENDING,
                    "shipping_address": shipping_address,
                    "shipping_cost": shipping_cost,
                    "coupon_code": coupon_code.strip().upper() if coupon_code else None,
                    "discount_amount": discount_amount,
                }
            )
            try:
                for line, product, quantity in priced:
                    self.store.order_lines.create(
                        {
                            "order_id": order["id"],
                            "product_id": product["id"],
                            "quantity": quantity,
                            "price": product["price"],
                            "selected_color": line.get("selected_color"),
                        }
                    )
            except Exception:
                self.store.order_lines.delete_many({"order_id": order["id"]})
                self.store.orders.delete(order["id"])
                raise

        logger.info("Order %s placed by %s for %.2f", order["id"], user_id, order["total_amount"])

        try:
            self.store.cart.clear(user_id)
        except Exception as e:
            logger.warning("Order %s placed but clearing the cart of %s failed: %s", order["id"], user_id, e)

        if coupon_code:
            code = coupon_code.strip().upper()
            try:
                if self.store.coupons.redeem(code) is None:
                    logger.warning("Coupon %s was not redeemed for order %s", code, order["id"])
            except Exception as e:
                logger.warning("Redeeming coupon %s for order %s failed: %s", code, order["id"], e)

        complete = enrich_order_with_tracking(self._joined(order))
        self._notify(self.notifier.order_confirmed, user, complete)
        return complete

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_order(self, order_id: str, user_id: str) -> Dict[str, Any]:
        order = self._owned(order_id, user_id)
        return enrich_order_with_tracking(self._joined(order))

    def get_orders(self, user_id: str) -> List[Dict[str, Any]]:
        return [enrich_order_with_tracking(self._joined(o)) for o in self.store.orders.for_user(user_id)]

    def get_all_orders(self) -> List[Dict[str, Any]]:
        users: Dict[str, Optional[Dict[str, Any]]] = {}
        result = []
        for order in self.store.orders.all():
            uid = order["user_id"]
            if uid not in users:
                user = self.store.users.find_by_id(uid)
                users[uid] = {k: user.get(k) for k in ("name", "email", "phone")} if user else None
            result.append(enrich_order_with_tracking({**self._joined(order), "user": users[uid]}))
        return result

    def track_order(self, order_id: str, user_id: str) -> Dict[str, Any]:
        order = enrich_order_with_tracking(self._owned(order_id, user_id))
        return {
            "order_number": order["id"],
            "order_status": order["status"],
            "tracking": order["tracking"],
            "total_amount": order["total_amount"],
            "created_at": order.get("created_at"),
        }

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    def update_order_status(self, order_id: str, status: str) -> Dict[str, Any]:
        """
        Admin status change. Any status is accepted (lower-cased); entering
        ``cancelled`` gives the stock back. Customers are notified only when
        the status actually changes.
        """
        status = (status or "").strip().lower()
        if not status:
            raise ValidationFailed("Status is required")
        order = self.store.orders.find_by_id(order_id)
        if not order:
            raise NotFound("Order not found")

        changed = order["status"] != status
        if status == CANCELLED:
            updated = self.store.orders.transition(order_id, CANCELLED, blocked=[CANCELLED])
            if updated is not None:
                self._restore_stock(order_id)
            else:
                # already cancelled, possibly by a concurrent request
                changed = False
                updated = self.store.orders.find_by_id(order_id)
        else:
            updated = self.store.orders.update(order_id, {"status": status})
        logger.info("Order %s: %s -> %s", order_id, order["status"], status)

        enriched = enrich_order_with_tracking(self._joined(updated))
        hooks = {
            SHIPPED: self.notifier.order_shipped,
            OUT_FOR_DELIVERY: self.notifier.order_out_for_delivery,
            DELIVERED: self.notifier.order_delivered,
            CANCELLED: self.notifier.order_cancelled,
        }
        hook = hooks.get(status) if changed else None
        if hook is not None:
            user = self.store.users.find_by_id(order["user_id"])
            if user:
                self._notify(hook, user, enriched)
        return enriched

    def cancel_order(self, order_id: str, user_id: str) -> Dict[str, Any]:
        order = self._owned(order_id, user_id)
        if order["status"] == CANCELLED:
            raise InvalidState("Order is already cancelled")
        if order["status"] in NOT_CANCELLABLE:
            raise InvalidState("Cannot cancel order at this stage")

        updated = self.store.orders.transition(order_id, CANCELLED, blocked=NOT_CANCELLABLE + (CANCELLED,))
        if updated is None:
            raise InvalidState("Cannot cancel order at this stage")
        self._restore_stock(order_id)
        logger.info("Order %s cancelled by its owner", order_id)

        enriched = enrich_order_with_tracking(self._joined(updated))
        user = self.store.users.find_by_id(user_id)
        if user:
            self._notify(self.notifier.order_cancelled, user, enriched)
        return enriched

    def request_return(self, order_id: str, user_id: str) -> Dict[str, Any]:
        order = self._owned(order_id, user_id)
        if order["status"] != DELIVERED:
            raise InvalidState("Only delivered orders can be returned")
        updated = self.store.orders.transition(order_id, RETURN_REQUESTED, required=DELIVERED)
        if updated is None:
            raise InvalidState("Only delivered orders can be returned")
        logger.info("Return requested for order %s", order_id)
        return enrich_order_with_tracking(self._joined(updated))

    def save_tracking(
        self,
        order_id: str,
        carrier: Optional[str] = None,
        tracking_number: Optional[str] = None,
        current_location: Optional[str] = None,
        estimated_delivery=None,
        update: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        order = self.store.orders.find_by_id(order_id)
        if not order:
            raise NotFound("Order not found")
        changes: Dict[str, Any] = {
            k: v
            for k, v in {
                "carrier": carrier,
                "tracking_number": tracking_number,
                "current_location": current_location,
                "estimated_delivery": estimated_delivery,
            }.items()
            if v is not None
        }
        if update:
            history = enrich_order_with_tracking(order)["tracking"]["updates"]
            entry = TrackingUpdate(timestamp=utcnow(), **update).model_dump()
            changes["tracking_updates"] = list(history) + [entry]
        if changes:
            order = self.store.orders.update(order_id, changes)
        return enrich_order_with_tracking(self._joined(order))

    def delete_order(self, order_id: str) -> None:
        order = self.store.orders.find_by_id(order_id)
        if not order:
            raise NotFound("Order not found")
        # lines first: nothing cascades in the store
        self.store.order_lines.delete_many({"order_id": order["id"]})
        self.store.orders.delete(order["id"])
        logger.info("Order %s deleted", order_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _owned(self, order_id: str, user_id: str) -> Dict[str, Any]:
        order = self.store.orders.find_by_id(order_id)
        if not order:
            raise NotFound("Order not found")
        if order["user_id"] != user_id:
            raise Forbidden("Unauthorized")
        return order

    def _joined(self, order: Dict[str, Any]) -> Dict[str, Any]:
        lines = self.store.order_lines.for_order(order["id"])
        products: Dict[str, Any] = {}
        for line in lines:
            pid = line["product_id"]
            if pid not in products:
                products[pid] = self.store.products.find_by_id(pid)
            line["product"] = products[pid]
        return {**order, "items": lines}

    def _restore_stock(self, order_id: str) -> None:
        for line in self.store.order_lines.for_order(order_id):
            if self.store.products.restore_stock(line["product_id"], line["quantity"]) is None:
                logger.warning("Product %s of order %s no longer exists, stock not restored", line["product_id"], order_id)
        logger.info("Stock restored for order %s", order_id)

    def _notify(self, hook: Callable, user: Dict[str, Any], order: Dict[str, Any]) -> None:
        try:
            self.dispatch(hook, user, order)
        except Exception as e:
            logger.warning("Could not dispatch %s for order %s: %s", getattr(hook, "__name__", hook), order.get("id"), e)
