"""Product catalog: browsing for everyone, editing for the admin."""
import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from errors import NotFound, ValidationFailed
from repositories import Store
from storage import ImageStore

logger = logging.getLogger(__name__)

# (bytes, filename, content type)
Upload = Tuple[bytes, str, Optional[str]]


def parse_price(value) -> float:
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise ValidationFailed("Valid price is required")
    if price < 0 or math.isnan(price):
        raise ValidationFailed("Valid price is required")
    return price


def parse_stock(value) -> int:
    """Stock defaults to 0 and never goes negative."""
    try:
        stock = int(float(value))
    except (TypeError, ValueError):
        return 0
    return max(0, stock)


def _text(value, field: str, min_len: int = 0, max_len: Optional[int] = None) -> str:
    text = str(value or "").strip()
    if len(text) < max(min_len, 1):
        raise ValidationFailed(f"{field} is required" if not text else f"{field} must be at least {min_len} characters")
    if max_len is not None and len(text) > max_len:
        raise ValidationFailed(f"{field} must be at most {max_len} characters")
    return text


class Catalog:
    def __init__(self, store: Store, images: ImageStore):
        self.store = store
        self.images = images

    def list_products(
        self,
        category: Optional[str] = None,
        search: Optional[str] = None,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        sort: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        products = self.store.products.search(
            name=search, category=category, min_price=min_price, max_price=max_price, sort=sort
        )
        total = len(products)
        skip = max(0, (page - 1) * limit)
        return {
            "products": products[skip:skip + limit],
            "total": total,
            "pages": math.ceil(total / limit) if limit else 0,
            "current_page": page,
        }

    def search_products(self, query: str, category: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.store.products.search(name=query or "", category=category)

    def get_product(self, product_id: str) -> Dict[str, Any]:
        product = self.store.products.find_by_id(product_id)
        if not product:
            raise NotFound("Product not found")
        return product

    def create_product(self, fields: Dict[str, Any], upload: Optional[Upload] = None) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": _text(fields.get("name"), "Product name", 3, 100),
            "category": _text(fields.get("category"), "Category", max_len=50),
            "price": parse_price(fields.get("price")),
            "stock": parse_stock(fields.get("stock")),
        }
        description = (fields.get("description") or "").strip()
        if description:
            if len(description) > 1000:
                raise ValidationFailed("Description too long")
            data["description"] = description
        for key in ("images", "colors"):
            if fields.get(key):
                data[key] = list(fields[key])

        image = self.images.upload(*upload) if upload else fields.get("image")
        if not image:
            raise ValidationFailed("Image is required")
        data["image"] = image

        product = self.store.products.create(data)
        logger.info("Product %s created", product["id"])
        return product

    def update_product(self, product_id: str, fields: Dict[str, Any], upload: Optional[Upload] = None) -> Dict[str, Any]:
        current = self.get_product(product_id)
        changes: Dict[str, Any] = {}
        if fields.get("name") is not None:
            changes["name"] = _text(fields["name"], "Product name", 3, 100)
        if fields.get("category") is not None:
            changes["category"] = _text(fields["category"], "Category", max_len=50)
        if fields.get("price") not in (None, ""):
            changes["price"] = parse_price(fields["price"])
        if fields.get("stock") not in (None, ""):
            changes["stock"] = parse_stock(fields["stock"])
        if fields.get("description") is not None:
            if len(fields["description"]) > 1000:
                raise ValidationFailed("Description too long")
            changes["description"] = fields["description"].strip() or None
        for key in ("images", "colors"):
            if fields.get(key) is not None:
                changes[key] = list(fields[key])
        if upload:
            changes["image"] = self.images.upload(*upload)
        elif fields.get("image"):
            changes["image"] = fields["image"]

        product = self.store.products.update(product_id, changes)
        if not product:
            raise NotFound("Product not found")
        if "image" in changes and changes["image"] != current.get("image"):
            self._drop_image(current.get("image"))
        return product

    def delete_product(self, product_id: str) -> None:
        product = self.get_product(product_id)
        # order lines keep their snapshot; only carts forget the product
        self.store.cart.remove_product(product["id"])
        self._drop_image(product.get("image"))
        self.store.products.delete(product["id"])
        logger.info("Product %s deleted", product["id"])

    def _drop_image(self, url: Optional[str]) -> None:
        try:
            self.images.delete(url)
        except Exception as e:
            logger.warning("Could not delete image %s: %s", url, e)
