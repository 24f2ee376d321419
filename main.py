import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import jwt
from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import OAuth2PasswordBearer
from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

from accounts import AccountService
from auth import decode_access_token
from cart import CartService
from catalog import Catalog
from coupons import CouponService
from database import ensure_indexes, get_db, ping
from errors import StorefrontError
from notifications import Notifier
from orders import OrderWorkflow
from repositories import Store
from schemas import Address
import settings
from storage import ImageStore

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# ----------------------------------------------------------------------------
# App and Security Setup
# ----------------------------------------------------------------------------

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/users/login")

app = FastAPI(title="Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS or ([] if settings.IS_PRODUCTION else ["*"]),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

notifier = Notifier()


# ----------------------------------------------------------------------------
# Error rendering: every error body carries a "message"
# ----------------------------------------------------------------------------

@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code, content={"message": exc.detail}, headers=getattr(exc, "headers", None)
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err["loc"][1:]) or str(err["loc"][0]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"message": "Validation failed", "errors": errors})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    content = {"message": "Internal Server Error"}
    if not settings.IS_PRODUCTION:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# ----------------------------------------------------------------------------
# Dependencies
# ----------------------------------------------------------------------------

def get_store(database=Depends(get_db)) -> Store:
    return Store(database)


def get_notifier() -> Notifier:
    return notifier


def get_current_user(token: str = Depends(oauth2_scheme), store: Store = Depends(get_store)) -> Dict[str, Any]:
    try:
        payload = decode_access_token(token)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired. Please login again.")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")
    uid = payload.get("sub")
    if not uid:
        raise HTTPException(status_code=401, detail="Invalid token")
    user = store.users.find_by_id(uid)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def get_current_admin(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    # role is read from the stored user, not the token, so promotions apply at once
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Access denied. Admin role required.")
    return user


def get_accounts(store: Store = Depends(get_store), notifier: Notifier = Depends(get_notifier)) -> AccountService:
    return AccountService(store, notifier)


def get_catalog(store: Store = Depends(get_store)) -> Catalog:
    return Catalog(store, ImageStore(store.db))


def get_cart_service(store: Store = Depends(get_store)) -> CartService:
    return CartService(store)


def get_coupons(store: Store = Depends(get_store)) -> CouponService:
    return CouponService(store)


def get_workflow(
    background_tasks: BackgroundTasks,
    store: Store = Depends(get_store),
    notifier: Notifier = Depends(get_notifier),
) -> OrderWorkflow:
    return OrderWorkflow(store, notifier, dispatch=background_tasks.add_task)


# ----------------------------------------------------------------------------
# Models (request bodies)
# ----------------------------------------------------------------------------

class ApiModel(BaseModel):
    # accepts camelCase and snake_case keys alike
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterRequest(ApiModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None
    role: str = "customer"


class LoginRequest(ApiModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class PhoneLoginRequest(ApiModel):
    phone: str
    name: Optional[str] = None
    email: Optional[EmailStr] = None


class ProfileUpdateRequest(ApiModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Address] = None


class EmailRequest(ApiModel):
    email: EmailStr


class VerifyOtpRequest(ApiModel):
    email: EmailStr
    otp: str


class ResetPasswordRequest(ApiModel):
    email: EmailStr
    otp: str
    new_password: str


class CartItemRequest(ApiModel):
    product_id: str
    quantity: int = 1
    color: Optional[str] = Field(None, validation_alias=AliasChoices("color", "selectedColor", "selected_color"))


class CartRemoveRequest(ApiModel):
    product_id: str
    color: Optional[str] = Field(None, validation_alias=AliasChoices("color", "selectedColor", "selected_color"))


class OrderItemRequest(ApiModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    selected_color: Optional[str] = Field(
        None, validation_alias=AliasChoices("selectedColor", "selected_color", "color")
    )


class CreateOrderRequest(ApiModel):
    shipping_address: Optional[Dict[str, Any]] = None
    items: Optional[List[OrderItemRequest]] = None
    total_amount: Optional[float] = Field(None, ge=0)
    shipping_cost: Optional[float] = Field(None, ge=0)
    coupon_code: Optional[str] = None
    discount_amount: Optional[float] = Field(None, ge=0)


class StatusRequest(ApiModel):
    status: str


class TrackingEntryRequest(ApiModel):
    status: str
    location: Optional[str] = None
    message: Optional[str] = None


class TrackingRequest(ApiModel):
    carrier: Optional[str] = None
    tracking_number: Optional[str] = None
    current_location: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    update: Optional[TrackingEntryRequest] = None


class CouponValidateRequest(ApiModel):
    code: str = ""
    order_total: float = Field(0, ge=0, validation_alias=AliasChoices("orderTotal", "order_total", "orderAmount"))


class CouponRequest(ApiModel):
    code: Optional[str] = None
    discount_percent: Optional[float] = Field(
        None, validation_alias=AliasChoices("discountPercent", "discount_percent")
    )
    max_uses: Optional[int] = Field(
        None, ge=0, validation_alias=AliasChoices("maxUsageCount", "maxUses", "max_uses")
    )
    expiry_date: Optional[datetime] = Field(None, validation_alias=AliasChoices("expiryDate", "expiry_date"))
    min_order_amount: Optional[float] = Field(
        None, ge=0, validation_alias=AliasChoices("minOrderAmount", "min_order_amount")
    )
    description: Optional[str] = None


def _read_upload(file: Optional[UploadFile]):
    if file is None or not file.filename:
        return None
    return file.file.read(), file.filename, file.content_type


# ----------------------------------------------------------------------------
# User Endpoints
# ----------------------------------------------------------------------------

@app.post("/api/users/register", status_code=201)
def register(body: RegisterRequest, accounts: AccountService = Depends(get_accounts)):
    result = accounts.register(body.name, body.email, body.password, phone=body.phone, role=body.role)
    message = "Admin registered successfully" if result["user"]["role"] == "admin" else "User registered successfully"
    return {"message": message, **result}


@app.post("/api/users/login")
def login(body: LoginRequest, accounts: AccountService = Depends(get_accounts)):
    return {"message": "Login successful", **accounts.login(body.email, body.password)}


@app.post("/api/users/phone-login")
def phone_login(body: PhoneLoginRequest, accounts: AccountService = Depends(get_accounts)):
    return {"message": "Phone login successful", **accounts.phone_login(body.phone, body.name, body.email)}


@app.get("/api/users/check-admin-exists")
def check_admin_exists(accounts: AccountService = Depends(get_accounts)):
    return {"admin_exists": accounts.admin_exists()}


@app.get("/api/users/profile")
def get_profile(current=Depends(get_current_user), accounts: AccountService = Depends(get_accounts)):
    return accounts.profile(current["id"])


@app.put("/api/users/profile")
def update_profile(
    body: ProfileUpdateRequest, current=Depends(get_current_user), accounts: AccountService = Depends(get_accounts)
):
    user = accounts.update_profile(current["id"], name=body.name, phone=body.phone, address=body.address)
    return {"message": "Profile updated", "user": user}


@app.post("/api/users/password-reset/send-otp")
def send_reset_otp(body: EmailRequest, accounts: AccountService = Depends(get_accounts)):
    return accounts.send_reset_otp(body.email)


@app.post("/api/users/password-reset/verify-otp")
def verify_reset_otp(body: VerifyOtpRequest, accounts: AccountService = Depends(get_accounts)):
    return accounts.verify_reset_otp(body.email, body.otp)


@app.post("/api/users/password-reset/reset")
def reset_password(body: ResetPasswordRequest, accounts: AccountService = Depends(get_accounts)):
    return accounts.reset_password(body.email, body.otp, body.new_password)


# ----------------------------------------------------------------------------
# Admin: User Management
# ----------------------------------------------------------------------------

@app.post("/api/users/make-admin")
def make_admin(body: EmailRequest, admin=Depends(get_current_admin), accounts: AccountService = Depends(get_accounts)):
    return {"message": "User promoted to admin successfully", "user": accounts.make_admin(body.email)}


@app.get("/api/users")
def list_users(admin=Depends(get_current_admin), accounts: AccountService = Depends(get_accounts)):
    return accounts.list_users()


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, admin=Depends(get_current_admin), accounts: AccountService = Depends(get_accounts)):
    accounts.delete_user(user_id)
    return {"message": "User deleted successfully"}


# ----------------------------------------------------------------------------
# Product Endpoints
# ----------------------------------------------------------------------------

@app.get("/api/products")
def list_products(
    category: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    min_price: Optional[float] = Query(None, alias="minPrice"),
    max_price: Optional[float] = Query(None, alias="maxPrice"),
    sort: Optional[str] = Query(None, description="price_asc|price_desc|newest"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    catalog: Catalog = Depends(get_catalog),
):
    return catalog.list_products(category, search, min_price, max_price, sort, page, limit)


@app.get("/api/products/search")
def search_products(
    query: str = Query(""), category: Optional[str] = Query(None), catalog: Catalog = Depends(get_catalog)
):
    return catalog.search_products(query, category)


@app.get("/api/products/{product_id}")
def get_product(product_id: str, catalog: Catalog = Depends(get_catalog)):
    return catalog.get_product(product_id)


@app.get("/api/images/{key}")
def get_image(key: str, database=Depends(get_db)):
    grid_out = ImageStore(database).open(key)
    media_type = (grid_out.metadata or {}).get("content_type", "application/octet-stream")
    return StreamingResponse(grid_out, media_type=media_type, headers={"Cache-Control": "public, max-age=3600"})


# ----------------------------------------------------------------------------
# Admin: Product Management
# ----------------------------------------------------------------------------

@app.post("/api/products", status_code=201)
def admin_create_product(
    name: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    price: Optional[str] = Form(None),
    stock: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    image: Optional[str] = Form(None),
    colors: Optional[List[str]] = Form(None),
    images: Optional[List[str]] = Form(None),
    file: Optional[UploadFile] = File(None),
    admin=Depends(get_current_admin),
    catalog: Catalog = Depends(get_catalog),
):
    fields = {
        "name": name,
        "category": category,
        "price": price,
        "stock": stock,
        "description": description,
        "image": image,
        "colors": colors,
        "images": images,
    }
    product = catalog.create_product(fields, upload=_read_upload(file))
    return {"message": "Product created successfully", "product": product}


@app.put("/api/products/{product_id}")
def admin_update_product(
    product_id: str,
    name: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    price: Optional[str] = Form(None),
    stock: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    image: Optional[str] = Form(None),
    colors: Optional[List[str]] = Form(None),
    images: Optional[List[str]] = Form(None),
    file: Optional[UploadFile] = File(None),
    admin=Depends(get_current_admin),
    catalog: Catalog = Depends(get_catalog),
):
    fields = {
        "name": name,
        "category": category,
        "price": price,
        "stock": stock,
        "description": description,
        "image": image,
        "colors": colors,
        "images": images,
    }
    product = catalog.update_product(product_id, fields, upload=_read_upload(file))
    return {"message": "Product updated", "product": product}


@app.delete("/api/products/{product_id}")
def admin_delete_product(product_id: str, admin=Depends(get_current_admin), catalog: Catalog = Depends(get_catalog)):
    catalog.delete_product(product_id)
    return {"message": "Product deleted successfully"}


# ----------------------------------------------------------------------------
# Cart
# ----------------------------------------------------------------------------

@app.get("/api/cart")
def get_cart(current=Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    return carts.get_cart(current["id"])


@app.post("/api/cart")
@app.post("/api/cart/add")
def add_to_cart(body: CartItemRequest, current=Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    cart = carts.add_to_cart(current["id"], body.product_id, body.quantity, body.color)
    return {"message": "Item added to cart", "cart": cart}


@app.post("/api/cart/remove")
def remove_from_cart(
    body: CartRemoveRequest, current=Depends(get_current_user), carts: CartService = Depends(get_cart_service)
):
    cart = carts.remove_from_cart(current["id"], body.product_id, body.color)
    return {"message": "Item removed from cart", "cart": cart}


@app.post("/api/cart/update")
def update_cart_item(
    body: CartItemRequest, current=Depends(get_current_user), carts: CartService = Depends(get_cart_service)
):
    cart = carts.update_cart_item(current["id"], body.product_id, body.quantity, body.color)
    return {"message": "Cart updated", "cart": cart}


@app.post("/api/cart/clear")
def clear_cart(current=Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    carts.clear_cart(current["id"])
    return {"message": "Cart cleared successfully"}


# ----------------------------------------------------------------------------
# Orders (Checkout & Tracking)
# ----------------------------------------------------------------------------

@app.post("/api/orders/create", status_code=201)
def create_order(
    body: CreateOrderRequest, current=Depends(get_current_user), workflow: OrderWorkflow = Depends(get_workflow)
):
    order = workflow.create_order(
        current["id"],
        body.shipping_address,
        items=[item.model_dump() for item in body.items or []],
        total_amount=body.total_amount,
        shipping_cost=body.shipping_cost,
        coupon_code=body.coupon_code,
        discount_amount=body.discount_amount,
    )
    return {"message": "Order placed successfully", "order": order}


@app.get("/api/orders")
def list_orders(current=Depends(get_current_user), workflow: OrderWorkflow = Depends(get_workflow)):
    return workflow.get_orders(current["id"])


@app.get("/api/orders/admin/all")
def admin_orders(admin=Depends(get_current_admin), workflow: OrderWorkflow = Depends(get_workflow)):
    return workflow.get_all_orders()


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, current=Depends(get_current_user), workflow: OrderWorkflow = Depends(get_workflow)):
    return workflow.get_order(order_id, current["id"])


@app.get("/api/orders/{order_id}/track")
def track_order(order_id: str, current=Depends(get_current_user), workflow: OrderWorkflow = Depends(get_workflow)):
    return workflow.track_order(order_id, current["id"])


@app.put("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, current=Depends(get_current_user), workflow: OrderWorkflow = Depends(get_workflow)):
    return {"message": "Order cancelled successfully", "order": workflow.cancel_order(order_id, current["id"])}


@app.put("/api/orders/{order_id}/return")
def request_return(order_id: str, current=Depends(get_current_user), workflow: OrderWorkflow = Depends(get_workflow)):
    return {"message": "Return requested successfully", "order": workflow.request_return(order_id, current["id"])}


@app.put("/api/orders/{order_id}/status")
def update_order_status(
    order_id: str, body: StatusRequest, admin=Depends(get_current_admin), workflow: OrderWorkflow = Depends(get_workflow)
):
    return {"message": "Order status updated", "order": workflow.update_order_status(order_id, body.status)}


@app.put("/api/orders/{order_id}/tracking")
def update_order_tracking(
    order_id: str, body: TrackingRequest, admin=Depends(get_current_admin), workflow: OrderWorkflow = Depends(get_workflow)
):
    order = workflow.save_tracking(
        order_id,
        carrier=body.carrier,
        tracking_number=body.tracking_number,
        current_location=body.current_location,
        estimated_delivery=body.estimated_delivery,
        update=body.update.model_dump() if body.update else None,
    )
    return {"message": "Tracking updated", "order": order}


@app.delete("/api/orders/{order_id}")
def delete_order(order_id: str, admin=Depends(get_current_admin), workflow: OrderWorkflow = Depends(get_workflow)):
    workflow.delete_order(order_id)
    return {"message": "Order deleted successfully"}


# ----------------------------------------------------------------------------
# Coupons
# ----------------------------------------------------------------------------

@app.post("/api/coupons/validate")
def validate_coupon(body: CouponValidateRequest, coupons: CouponService = Depends(get_coupons)):
    return {"message": "Coupon is valid", "data": coupons.validate(body.code, body.order_total)}


@app.post("/api/coupons/create", status_code=201)
def create_coupon(body: CouponRequest, admin=Depends(get_current_admin), coupons: CouponService = Depends(get_coupons)):
    return {"message": "Coupon created successfully", "data": coupons.create_coupon(body.model_dump())}


@app.get("/api/coupons/all")
def list_coupons(admin=Depends(get_current_admin), coupons: CouponService = Depends(get_coupons)):
    data = coupons.list_coupons()
    return {"count": len(data), "data": data}


@app.put("/api/coupons/{coupon_id}")
def update_coupon(
    coupon_id: str, body: CouponRequest, admin=Depends(get_current_admin), coupons: CouponService = Depends(get_coupons)
):
    return {"message": "Coupon updated successfully", "data": coupons.update_coupon(coupon_id, body.model_dump())}


@app.delete("/api/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, admin=Depends(get_current_admin), coupons: CouponService = Depends(get_coupons)):
    coupons.delete_coupon(coupon_id)
    return {"message": "Coupon deleted successfully"}


# ----------------------------------------------------------------------------
# Health and Test
# ----------------------------------------------------------------------------

@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/api/health")
def health():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat(), "environment": settings.APP_ENV}


@app.get("/test")
def test_database(database=Depends(get_db)):
    return {"backend": "ok", **ping(database)}


# ----------------------------------------------------------------------------
# Startup Hook
# ----------------------------------------------------------------------------

@app.on_event("startup")
def on_startup():
    try:
        ensure_indexes(get_db())
    except PyMongoError as e:
        logger.warning("Could not create indexes on startup: %s", e)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
