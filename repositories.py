"""
Per-collection data access.

Repositories take snake_case column names (request models rename client
fields before they get here), validate new records through the collection
schema and return plain dicts with a string ``id``. They hold no business rules.
"""
from datetime import datetime, timezone
import re
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ReturnDocument

from schemas import CartLine, Coupon, Order, OrderLine, Product, User


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Mongo hands back naive datetimes that are already UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def oid(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def doc_to_public(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc


def _plain_values(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v.model_dump() if isinstance(v, BaseModel) else v for k, v in data.items()}


class Repository:
    collection_name: str = ""
    schema = None

    def __init__(self, db):
        self.collection = db[self.collection_name]

    def find_by_id(self, id_) -> Optional[Dict[str, Any]]:
        _id = oid(id_)
        if _id is None:
            return None
        return doc_to_public(self.collection.find_one({"_id": _id}))

    def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return doc_to_public(self.collection.find_one(query))

    def find(self, query: Optional[Dict[str, Any]] = None, sort=None, limit: int = 0) -> List[Dict[str, Any]]:
        cursor = self.collection.find(query or {})
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return [doc_to_public(d) for d in cursor]

    def count(self, query: Optional[Dict[str, Any]] = None) -> int:
        return self.collection.count_documents(query or {})

    def create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        record = self.schema(**_plain_values(data))
        now = utcnow()
        inserted = self.collection.insert_one({**record.model_dump(), "created_at": now, "updated_at": now})
        return self.find_by_id(inserted.inserted_id)

    def update(self, id_, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        _id = oid(id_)
        if _id is None:
            return None
        changes = {**_plain_values(data), "updated_at": utcnow()}
        doc = self.collection.find_one_and_update(
            {"_id": _id}, {"$set": changes}, return_document=ReturnDocument.AFTER
        )
        return doc_to_public(doc)

    def delete(self, id_) -> bool:
        _id = oid(id_)
        if _id is None:
            return False
        return self.collection.delete_one({"_id": _id}).deleted_count > 0

    def delete_many(self, query: Dict[str, Any]) -> int:
        return self.collection.delete_many(query).deleted_count


class UserRepository(Repository):
    collection_name = "user"
    schema = User

    def find_by_email(self, email: str):
        return self.find_one({"email": email})

    def find_by_phone(self, phone: str):
        return self.find_one({"phone": phone})

    def admins(self) -> List[Dict[str, Any]]:
        return self.find({"role": "admin"})

    def promote(self, id_):
        """
        Make the user the admin unless an admin already exists; returns None in
        that case. Raises DuplicateKeyError when another promotion wins the
        race on the single-admin index.
        """
        if self.count({"role": "admin"}):
            return None
        return self.update(id_, {"role": "admin"})


class ProductRepository(Repository):
    collection_name = "product"
    schema = Product

    SORTS = {
        "price_asc": [("price", 1)],
        "price_desc": [("price", -1)],
        "newest": [("created_at", -1)],
    }

    def search(
        self,
        name: Optional[str] = None,
        category: Optional[str] = None,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        sort: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if name:
            query["name"] = {"$regex": re.escape(name), "$options": "i"}
        if category:
            query["category"] = category
        price: Dict[str, float] = {}
        if min_price is not None:
            price["$gte"] = min_price
        if max_price is not None:
            price["$lte"] = max_price
        if price:
            query["price"] = price
        return self.find(query, sort=self.SORTS.get(sort))

    def take_stock(self, id_, quantity: int):
        """Decrement stock by ``quantity`` only if that much is available. Returns the updated product or None."""
        doc = self.collection.find_one_and_update(
            {"_id": oid(id_), "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return doc_to_public(doc)

    def restore_stock(self, id_, quantity: int):
        doc = self.collection.find_one_and_update(
            {"_id": oid(id_)},
            {"$inc": {"stock": quantity}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return doc_to_public(doc)


class CartRepository(Repository):
    collection_name = "cart"
    schema = CartLine

    def for_user(self, user_id: str) -> List[Dict[str, Any]]:
        return self.find({"user_id": user_id}, sort=[("created_at", 1)])

    def increment(self, line_id, quantity: int):
        doc = self.collection.find_one_and_update(
            {"_id": oid(line_id)},
            {"$inc": {"quantity": quantity}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return doc_to_public(doc)

    def clear(self, user_id: str) -> int:
        return self.delete_many({"user_id": user_id})

    def remove_product(self, product_id: str) -> int:
        return self.delete_many({"product_id": product_id})


class OrderRepository(Repository):
    collection_name = "order"
    schema = Order

    def for_user(self, user_id: str) -> List[Dict[str, Any]]:
        return self.find({"user_id": user_id}, sort=[("created_at", -1)])

    def all(self) -> List[Dict[str, Any]]:
        return self.find({}, sort=[("created_at", -1)])

    def transition(self, id_, status: str, blocked: Iterable[str] = (), required: Optional[str] = None):
        """
        Set the status only if the stored status passes the guard: equal to
        ``required`` when given, otherwise not in ``blocked``. Returns the
        updated order, or None when the guard (or the id) does not match.
        """
        query: Dict[str, Any] = {"_id": oid(id_)}
        if required is not None:
            query["status"] = required
        elif blocked:
            query["status"] = {"$nin": list(blocked)}
        doc = self.collection.find_one_and_update(
            query,
            {"$set": {"status": status, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return doc_to_public(doc)


class OrderLineRepository(Repository):
    collection_name = "order_item"
    schema = OrderLine

    def for_order(self, order_id: str) -> List[Dict[str, Any]]:
        return self.find({"order_id": order_id}, sort=[("created_at", 1)])

    def delete_for_orders(self, order_ids: List[str]) -> int:
        return self.delete_many({"order_id": {"$in": list(order_ids)}})


class CouponRepository(Repository):
    collection_name = "coupon"
    schema = Coupon

    def find_by_code(self, code: str):
        return self.find_one({"code": code})

    def redeem(self, code: str):
        """Count one use of the coupon unless its ceiling is already reached. Returns the coupon or None."""
        coupon = self.collection.find_one({"code": code})
        if not coupon:
            return None
        query: Dict[str, Any] = {"_id": coupon["_id"]}
        if coupon.get("max_uses") is not None:
            query["current_uses"] = {"$lt": coupon["max_uses"]}
        doc = self.collection.find_one_and_update(
            query,
            {"$inc": {"current_uses": 1}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return doc_to_public(doc)


class Store:
    """All repositories over one database."""

    def __init__(self, db):
        self.db = db
        self.users = UserRepository(db)
        self.products = ProductRepository(db)
        self.cart = CartRepository(db)
        self.orders = OrderRepository(db)
        self.order_lines = OrderLineRepository(db)
        self.coupons = CouponRepository(db)
