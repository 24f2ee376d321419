import pytest
from bson import ObjectId

from coupons import CouponService
from errors import Forbidden, InsufficientStock, InvalidState, NotFound
from orders import OrderWorkflow, tracking_number


@pytest.fixture
def workflow(store, notifier):
    return OrderWorkflow(store, notifier)


@pytest.fixture
def customer(make_user):
    return make_user(phone="98765 43210")


def stock_of(store, product):
    return store.products.find_by_id(product["id"])["stock"]


def test_create_order_from_cart_takes_stock_and_clears_cart(store, workflow, customer, make_product, email):
    shirt = make_product(price=10.0, stock=5)
    store.cart.create({"user_id": customer["id"], "product_id": shirt["id"], "quantity": 2})

    order = workflow.create_order(customer["id"], {"city": "Pune"})

    assert order["status"] == "pending"
    assert order["total_amount"] == 20.0
    assert len(order["items"]) == 1
    assert order["items"][0]["price"] == 10.0
    assert order["items"][0]["product"]["name"] == "Shirt"
    assert order["tracking"]["trackingNumber"] == tracking_number(order["id"])
    assert stock_of(store, shirt) == 3
    assert store.cart.for_user(customer["id"]) == []
    assert "Order Confirmation - Your Order Has Been Placed" in email.subjects


def test_explicit_items_and_client_total_are_used(store, workflow, customer, make_product):
    shirt = make_product(price=10.0, stock=5)
    order = workflow.create_order(
        customer["id"],
        {"city": "Pune"},
        items=[{"product_id": shirt["id"], "quantity": 1, "selected_color": "red"}],
        total_amount=15.0,
        shipping_cost=5.0,
    )
    assert order["total_amount"] == 15.0
    assert order["shipping_cost"] == 5.0
    assert order["items"][0]["selected_color"] == "red"
    assert stock_of(store, shirt) == 4


def test_admin_cannot_place_orders(store, workflow, make_user, make_product):
    admin = make_user(name="Root", email="root@example.com", role="admin")
    shirt = make_product(stock=5)
    with pytest.raises(Forbidden):
        workflow.create_order(admin["id"], {}, items=[{"product_id": shirt["id"], "quantity": 1}])
    assert stock_of(store, shirt) == 5
    assert store.orders.count() == 0


def test_empty_cart_is_rejected(workflow, customer):
    with pytest.raises(InvalidState, match="Cart is empty"):
        workflow.create_order(customer["id"], {})


def test_insufficient_stock_names_the_product(store, workflow, customer, make_product):
    shirt = make_product(name="Shirt", stock=1)
    with pytest.raises(InsufficientStock) as excinfo:
        workflow.create_order(customer["id"], {}, items=[{"product_id": shirt["id"], "quantity": 2}])
    assert excinfo.value.message == "Insufficient stock for Shirt"
    assert excinfo.value.status_code == 400
    assert stock_of(store, shirt) == 1
    assert store.orders.count() == 0


def test_failed_line_gives_back_stock_already_taken(store, workflow, customer, make_product):
    shirt = make_product(name="Shirt", stock=5)
    mug = make_product(name="Mug", stock=1)
    store.cart.create({"user_id": customer["id"], "product_id": shirt["id"], "quantity": 2})
    items = [{"product_id": shirt["id"], "quantity": 2}, {"product_id": mug["id"], "quantity": 3}]

    with pytest.raises(InsufficientStock, match="Mug"):
        workflow.create_order(customer["id"], {}, items=items)

    assert stock_of(store, shirt) == 5
    assert stock_of(store, mug) == 1
    assert store.orders.count() == 0
    assert store.order_lines.count() == 0
    assert len(store.cart.for_user(customer["id"])) == 1


def test_missing_product_fails_the_order(store, workflow, customer):
    with pytest.raises(NotFound, match="Product not found"):
        workflow.create_order(customer["id"], {}, items=[{"product_id": "5f0000000000000000000000", "quantity": 1}])


def test_cancel_restores_stock_once(store, workflow, customer, make_product):
    shirt = make_product(stock=5)
    order = workflow.create_order(customer["id"], {}, items=[{"product_id": shirt["id"], "quantity": 2}])

    cancelled = workflow.cancel_order(order["id"], customer["id"])
    assert cancelled["status"] == "cancelled"
    assert stock_of(store, shirt) == 5

    with pytest.raises(InvalidState, match="Order is already cancelled"):
        workflow.cancel_order(order["id"], customer["id"])
    workflow.update_order_status(order["id"], "cancelled")
    assert stock_of(store, shirt) == 5


def test_admin_cancel_restores_stock_once(store, workflow, customer, make_product):
    shirt = make_product(stock=5)
    order = workflow.create_order(customer["id"], {}, items=[{"product_id": shirt["id"], "quantity": 3}])

    workflow.update_order_status(order["id"], "cancelled")
    workflow.update_order_status(order["id"], "cancelled")

    assert stock_of(store, shirt) == 5


def test_shipped_order_cannot_be_cancelled(store, workflow, customer, make_product, email, sms):
    shirt = make_product(stock=5)
    order = workflow.create_order(customer["id"], {}, items=[{"product_id": shirt["id"], "quantity": 1}])

    shipped = workflow.update_order_status(order["id"], "shipped")
    assert shipped["status"] == "shipped"
    assert "Your Order Has Been Shipped!" in email.subjects
    assert any(order["tracking"]["trackingNumber"] in body for _, body in sms.sent)
    assert sms.sent[0][0] == "+919876543210"

    with pytest.raises(InvalidState, match="Cannot cancel order at this stage"):
        workflow.cancel_order(order["id"], customer["id"])
    assert stock_of(store, shirt) == 4


def test_status_update_accepts_any_status(workflow, customer, make_product):
    shirt = make_product(stock=5)
    order = workflow.create_order(customer["id"], {}, items=[{"product_id": shirt["id"], "quantity": 1}])
    assert workflow.update_order_status(order["id"], "confirmed")["status"] == "confirmed"
    assert workflow.update_order_status(order["id"], "pending")["status"] == "pending"


def test_return_only_after_delivery(workflow, customer, make_product, email):
    shirt = make_product(stock=5)
    order = workflow.create_order(customer["id"], {}, items=[{"product_id": shirt["id"], "quantity": 1}])

    with pytest.raises(InvalidState, match="Only delivered orders can be returned"):
        workflow.request_return(order["id"], customer["id"])

    workflow.update_order_status(order["id"], "delivered")
    assert "Your Order Has Been Delivered!" in email.subjects
    returned = workflow.request_return(order["id"], customer["id"])
    assert returned["status"] == "return-requested"

    with pytest.raises(InvalidState):
        workflow.cancel_order(order["id"], customer["id"])


def test_orders_are_private_to_their_owner(workflow, customer, make_user, make_product):
    other = make_user(name="Bob", email="bob@example.com")
    shirt = make_product(stock=5)
    order = workflow.create_order(customer["id"], {}, items=[{"product_id": shirt["id"], "quantity": 1}])

    with pytest.raises(Forbidden):
        workflow.get_order(order["id"], other["id"])
    with pytest.raises(Forbidden):
        workflow.cancel_order(order["id"], other["id"])
    assert workflow.get_orders(other["id"]) == []
    assert [o["id"] for o in workflow.get_orders(customer["id"])] == [order["id"]]


def test_track_order_summary(workflow, customer, make_product):
    shirt = make_product(stock=5)
    order = workflow.create_order(customer["id"], {}, items=[{"product_id": shirt["id"], "quantity": 2}])

    summary = workflow.track_order(order["id"], customer["id"])

    assert summary["order_number"] == order["id"]
    assert summary["order_status"] == "pending"
    assert summary["total_amount"] == 20.0
    assert summary["tracking"]["currentLocation"] == "Processing"


def test_coupon_use_is_counted_on_checkout(store, workflow, customer, make_product, make_coupon):
    coupon = make_coupon(code="SAVE10", max_uses=5)
    shirt = make_product(stock=5)

    order = workflow.create_order(
        customer["id"],
        {},
        items=[{"product_id": shirt["id"], "quantity": 1}],
        total_amount=9.0,
        coupon_code="save10",
        discount_amount=1.0,
    )

    assert order["coupon_code"] == "SAVE10"
    assert store.coupons.find_by_id(coupon["id"])["current_uses"] == 1


def test_exhausted_coupon_does_not_block_checkout(store, workflow, customer, make_product, make_coupon):
    coupon = make_coupon(code="ONCE", max_uses=1, current_uses=1)
    shirt = make_product(stock=5)

    order = workflow.create_order(
        customer["id"], {}, items=[{"product_id": shirt["id"], "quantity": 1}], coupon_code="ONCE"
    )

    assert order["status"] == "pending"
    assert store.coupons.find_by_id(coupon["id"])["current_uses"] == 1


def test_save_tracking_appends_to_history(workflow, customer, make_product):
    shirt = make_product(stock=5)
    order = workflow.create_order(customer["id"], {}, items=[{"product_id": shirt["id"], "quantity": 1}])

    tracked = workflow.save_tracking(
        order["id"],
        carrier="BlueDart",
        current_location="Mumbai Hub",
        update={"status": "In Transit", "location": "Mumbai Hub"},
    )

    assert tracked["tracking"]["carrier"] == "BlueDart"
    assert tracked["tracking"]["currentLocation"] == "Mumbai Hub"
    assert tracked["tracking"]["trackingNumber"] == tracking_number(order["id"])
    assert [u["status"] for u in tracked["tracking"]["updates"]] == ["Order Confirmed", "In Transit"]


def test_admin_listing_embeds_customer(workflow, customer, make_product):
    shirt = make_product(stock=5)
    workflow.create_order(customer["id"], {}, items=[{"product_id": shirt["id"], "quantity": 1}])

    orders = workflow.get_all_orders()

    assert len(orders) == 1
    assert orders[0]["user"] == {"name": "Alice", "email": "alice@example.com", "phone": "98765 43210"}


def test_delete_order_removes_its_lines(store, workflow, customer, make_product):
    shirt = make_product(stock=5)
    order = workflow.create_order(customer["id"], {}, items=[{"product_id": shirt["id"], "quantity": 1}])

    workflow.delete_order(order["id"])

    assert store.orders.find_by_id(order["id"]) is None
    assert store.order_lines.for_order(order["id"]) == []
    with pytest.raises(NotFound):
        workflow.delete_order(order["id"])


def test_notification_failures_do_not_fail_the_order(store, customer, make_product, notifier):
    def broken_dispatch(fn, *args):
        raise RuntimeError("queue down")

    workflow = OrderWorkflow(store, notifier, dispatch=broken_dispatch)
    shirt = make_product(stock=5)

    order = workflow.create_order(customer["id"], {}, items=[{"product_id": shirt["id"], "quantity": 1}])

    assert store.orders.find_by_id(order["id"]) is not None


def test_single_use_coupon_is_spent_by_checkout(store, workflow, customer, make_product, make_coupon):
    coupon = make_coupon(code="SAVE10", percent=10, max_uses=1)
    coupons = CouponService(store)
    tv = make_product(name="TV", price=1000.0, stock=5)

    quote = coupons.validate("SAVE10", 1000)
    assert quote["discount_amount"] == 100.0
    assert quote["final_total"] == 900.0

    workflow.create_order(
        customer["id"],
        {},
        items=[{"product_id": tv["id"], "quantity": 1}],
        total_amount=quote["final_total"],
        coupon_code="SAVE10",
        discount_amount=quote["discount_amount"],
    )

    assert store.coupons.find_by_id(coupon["id"])["current_uses"] == 1
    with pytest.raises(InvalidState, match="Coupon usage limit reached"):
        coupons.validate("SAVE10", 1000)


@pytest.mark.parametrize("status", ["out-for-delivery", "delivered"])
def test_late_orders_cannot_be_cancelled(store, workflow, customer, make_product, status):
    shirt = make_product(stock=5)
    order = workflow.create_order(customer["id"], {}, items=[{"product_id": shirt["id"], "quantity": 1}])
    workflow.update_order_status(order["id"], status)

    with pytest.raises(InvalidState, match="Cannot cancel order at this stage"):
        workflow.cancel_order(order["id"], customer["id"])

    assert store.orders.find_by_id(order["id"])["status"] == status
    assert stock_of(store, shirt) == 4


def test_stock_sold_elsewhere_mid_checkout(store, workflow, customer, make_product, monkeypatch):
    shirt = make_product(name="Shirt", stock=5)
    mug = make_product(name="Mug", stock=2)
    take_stock = store.products.take_stock

    def sold_out_meanwhile(id_, quantity):
        if id_ == mug["id"]:
            store.products.collection.update_one({"_id": ObjectId(id_)}, {"$set": {"stock": 0}})
        return take_stock(id_, quantity)

    monkeypatch.setattr(store.products, "take_stock", sold_out_meanwhile)
    items = [{"product_id": shirt["id"], "quantity": 2}, {"product_id": mug["id"], "quantity": 1}]

    with pytest.raises(InsufficientStock, match="Mug"):
        workflow.create_order(customer["id"], {}, items=items)

    assert stock_of(store, shirt) == 5
    assert stock_of(store, mug) == 0
    assert store.orders.count() == 0
    assert store.order_lines.count() == 0


def cancelled_meanwhile(store, monkeypatch):
    """Make the next status transition lose to a cancellation that lands first."""
    transition = store.orders.transition

    def _transition(id_, status, **guard):
        store.orders.collection.update_one({"_id": ObjectId(id_)}, {"$set": {"status": "cancelled"}})
        return transition(id_, status, **guard)

    monkeypatch.setattr(store.orders, "transition", _transition)


def test_owner_cancel_losing_a_race_does_not_restore_stock(store, workflow, customer, make_product, monkeypatch, sms):
    shirt = make_product(stock=5)
    order = workflow.create_order(customer["id"], {}, items=[{"product_id": shirt["id"], "quantity": 1}])
    cancelled_meanwhile(store, monkeypatch)

    with pytest.raises(InvalidState, match="Cannot cancel order at this stage"):
        workflow.cancel_order(order["id"], customer["id"])

    assert stock_of(store, shirt) == 4
    assert not [body for _, body in sms.sent if "has been cancelled" in body]


def test_admin_cancel_losing_a_race_does_not_restore_stock(store, workflow, customer, make_product, monkeypatch, sms):
    shirt = make_product(stock=5)
    order = workflow.create_order(customer["id"], {}, items=[{"product_id": shirt["id"], "quantity": 1}])
    cancelled_meanwhile(store, monkeypatch)

    result = workflow.update_order_status(order["id"], "cancelled")

    assert result["status"] == "cancelled"
    assert stock_of(store, shirt) == 4
    assert not [body for _, body in sms.sent if "has been cancelled" in body]


def test_status_is_lower_cased_before_cancelling(store, workflow, customer, make_product, sms):
    shirt = make_product(stock=5)
    order = workflow.create_order(customer["id"], {}, items=[{"product_id": shirt["id"], "quantity": 2}])

    result = workflow.update_order_status(order["id"], " Cancelled ")

    assert result["status"] == "cancelled"
    assert stock_of(store, shirt) == 5
    assert len([body for _, body in sms.sent if "has been cancelled" in body]) == 1


def test_repeated_status_sends_one_notification(workflow, customer, make_product, sms, email):
    shirt = make_product(stock=5)
    order = workflow.create_order(customer["id"], {}, items=[{"product_id": shirt["id"], "quantity": 1}])

    workflow.update_order_status(order["id"], "cancelled")
    workflow.update_order_status(order["id"], "cancelled")
    workflow.update_order_status(order["id"], "delivered")
    workflow.update_order_status(order["id"], "delivered")

    assert len([body for _, body in sms.sent if "has been cancelled" in body]) == 1
    assert email.subjects.count("Your Order Has Been Delivered!") == 1
