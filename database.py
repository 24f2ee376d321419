"""
MongoDB connection for the storefront.

Collections: user, product, cart, order, order_item, coupon.
Product images live in the GridFS bucket configured in settings.
"""
import logging

from pymongo import ASCENDING, MongoClient
from pymongo.errors import PyMongoError

from settings import DATABASE_NAME, DATABASE_URL

logger = logging.getLogger(__name__)

client = MongoClient(DATABASE_URL)
db = client[DATABASE_NAME]


def get_db():
    return db


def ensure_indexes(database) -> None:
    database["user"].create_index("email", unique=True, partialFilterExpression={"email": {"$type": "string"}})
    # at most one admin account
    database["user"].create_index(
        "role", unique=True, name="single_admin", partialFilterExpression={"role": "admin"}
    )
    database["coupon"].create_index("code", unique=True)
    database["cart"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)])
    database["order"].create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
    database["order_item"].create_index("order_id")


def ping(database) -> dict:
    try:
        collections = database.list_collection_names()
        return {"db": "ok", "collections": collections[:10]}
    except PyMongoError as e:
        logger.warning("Database ping failed: %s", e)
        return {"db": f"error: {e}"}
