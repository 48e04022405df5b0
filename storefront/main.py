from fastapi import FastAPI, Depends, HTTPException, status, Query, Request
from fastapi.responses import FileResponse, JSONResponse
from starlette.middleware.sessions import SessionMiddleware
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime
from typing import Optional, List
import json
import os

from shared.utils import (
    settings, SuccessResponse, ErrorResponse, HealthResponse,
    AppException, UnauthorizedException,
    verify_password, create_download_token, verify_download_token
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter

from storefront.cart import Cart, add_product, load_cart, save_cart
from storefront.checkout import CheckoutFinalizer
from storefront.database import get_db, get_engine, get_sessionmaker, init_db, seed_admin
from storefront.errors import NotFoundError
from storefront.models import Admin, Coupon, Order, OrderStatus, Product
from storefront.payments import get_payment_gateway
from storefront.pricing import apply_coupon, remove_coupon
from storefront.schemas import (
    ProductCreate, ProductUpdate, ProductResponse, ProductListResponse,
    CartItemAdd, CartItemUpdate, CouponApply, CartLineResponse, CartResponse,
    CheckoutRequest, CheckoutResponse, DownloadLink, OrderItemResponse, OrderResponse,
    OrderStatusUpdate, CouponCreate, CouponResponse, AdminLogin
)
from storefront.stores import CartStore, CatalogStore, CouponStore, OrderStore, normalize_code

# Setup Logging
logger = setup_logging("storefront")

app = FastAPI(title="Storefront")

# Security Setup
setup_rate_limiting(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name="storefront")

# Sessions hold the cart token and the admin login; added last so it wraps the logger
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.SESSION_SECRET,
    max_age=settings.SESSION_MAX_AGE,
    same_site="lax",
    https_only=settings.HTTPS_ONLY,
)

@app.on_event("startup")
async def startup_db_client():
    app.db_engine = get_engine()
    app.db_sessionmaker = get_sessionmaker(app.db_engine)
    await init_db(app.db_engine)
    await seed_admin(app.db_sessionmaker)
    async with app.db_sessionmaker() as db:
        purged = await CartStore(db).purge_expired(settings.SESSION_MAX_AGE)
    if purged:
        logger.info(f"Purged {purged} expired carts")

@app.on_event("shutdown")
async def shutdown_db_client():
    await app.db_engine.dispose()

@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.detail, details={"type": type(exc).__name__}).model_dump(),
        headers=exc.headers,
    )

# --- Dependencies ---
def get_catalog(db: AsyncSession = Depends(get_db)) -> CatalogStore:
    return CatalogStore(db)

def get_coupons(db: AsyncSession = Depends(get_db)) -> CouponStore:
    return CouponStore(db)

def get_carts(db: AsyncSession = Depends(get_db)) -> CartStore:
    return CartStore(db)

def get_orders(db: AsyncSession = Depends(get_db)) -> OrderStore:
    return OrderStore(db)

def get_finalizer(db: AsyncSession = Depends(get_db), gateway=Depends(get_payment_gateway)) -> CheckoutFinalizer:
    return CheckoutFinalizer(
        CatalogStore(db), CouponStore(db), OrderStore(db), gateway, currency=settings.CURRENCY
    )

async def require_admin(request: Request) -> str:
    username = request.session.get("admin")
    if not username:
        raise UnauthorizedException("Admin login required")
    return username

# --- Helpers ---
def cart_response(cart: Cart) -> CartResponse:
    return CartResponse(
        items=[
            CartLineResponse(
                product_id=line.product_id,
                name=line.name,
                unit_price=line.unit_price,
                quantity=line.quantity,
                line_total=line.line_total,
                is_digital=line.is_digital,
            )
            for line in cart.items.values()
        ],
        total_quantity=cart.total_quantity,
        subtotal=cart.subtotal,
        coupon_code=cart.coupon.code if cart.coupon else None,
        discount=cart.discount,
        final_price=cart.final_price,
    )

def order_response(order: Order) -> OrderResponse:
    try:
        items = json.loads(order.products_ordered)
    except (json.JSONDecodeError, TypeError):
        items = []
    return OrderResponse(
        id=order.id,
        customer_email=order.customer_email,
        customer_name=order.customer_name,
        items=[OrderItemResponse(**item) for item in items],
        subtotal=order.subtotal,
        coupon_code=order.coupon_code,
        discount_amount=order.discount_amount,
        total_amount=order.total_amount,
        status=order.status,
        payment_reference=order.payment_reference,
        ordered_at=order.ordered_at,
        updated_at=order.updated_at,
    )

def resolve_digital_file(relative_path: str) -> Optional[str]:
    base = os.path.realpath(settings.DIGITAL_FILES_DIR)
    path = os.path.realpath(os.path.join(base, relative_path))
    if os.path.commonpath([base, path]) != base or not os.path.isfile(path):
        return None
    return path

# --- Endpoints ---

# Catalog
@app.get("/products", response_model=SuccessResponse[ProductListResponse])
@limiter.limit("60/minute")
async def list_products(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = None,
    catalog: CatalogStore = Depends(get_catalog)
):
    skip = (page - 1) * limit
    products = await catalog.list_products(skip=skip, limit=limit, search=search)
    return SuccessResponse(data=ProductListResponse(
        products=[ProductResponse.model_validate(p) for p in products],
        page=page,
        limit=limit
    ))

@app.get("/products/{product_id}", response_model=SuccessResponse[ProductResponse])
async def get_product(product_id: int, catalog: CatalogStore = Depends(get_catalog)):
    product = await catalog.get_product(product_id)
    if not product:
        raise NotFoundError("Product not found")
    return SuccessResponse(data=ProductResponse.model_validate(product))

# Cart
@app.get("/cart", response_model=SuccessResponse[CartResponse])
async def get_cart(request: Request, carts: CartStore = Depends(get_carts)):
    return SuccessResponse(data=cart_response(await load_cart(request.session, carts)))

@app.post("/cart/items", response_model=SuccessResponse[CartResponse])
@limiter.limit("60/minute")
async def add_to_cart(
    item: CartItemAdd,
    request: Request,
    catalog: CatalogStore = Depends(get_catalog),
    carts: CartStore = Depends(get_carts)
):
    cart = await load_cart(request.session, carts)
    await add_product(cart, catalog, item.product_id, item.quantity)
    await save_cart(request.session, carts, cart)
    return SuccessResponse(data=cart_response(cart), message="Item added to cart")

@app.put("/cart/items/{product_id}", response_model=SuccessResponse[CartResponse])
async def update_cart_item(
    product_id: int,
    update: CartItemUpdate,
    request: Request,
    carts: CartStore = Depends(get_carts)
):
    cart = await load_cart(request.session, carts)
    cart.update_quantity(product_id, update.quantity)
    await save_cart(request.session, carts, cart)
    return SuccessResponse(data=cart_response(cart))

@app.delete("/cart/items/{product_id}", response_model=SuccessResponse[CartResponse])
async def remove_cart_item(product_id: int, request: Request, carts: CartStore = Depends(get_carts)):
    cart = await load_cart(request.session, carts)
    cart.remove_item(product_id)
    await save_cart(request.session, carts, cart)
    return SuccessResponse(data=cart_response(cart))

@app.delete("/cart", response_model=SuccessResponse[CartResponse])
async def clear_cart(request: Request, carts: CartStore = Depends(get_carts)):
    cart = await load_cart(request.session, carts)
    cart.clear()
    await save_cart(request.session, carts, cart)
    return SuccessResponse(data=cart_response(cart), message="Cart cleared")

@app.post("/cart/coupon", response_model=SuccessResponse[CartResponse])
@limiter.limit("20/minute")
async def apply_cart_coupon(
    coupon: CouponApply,
    request: Request,
    coupons: CouponStore = Depends(get_coupons),
    carts: CartStore = Depends(get_carts)
):
    cart = await load_cart(request.session, carts)
    await apply_coupon(cart, coupons, coupon.code)
    await save_cart(request.session, carts, cart)
    return SuccessResponse(data=cart_response(cart), message=f"Coupon {cart.coupon.code} applied")

@app.delete("/cart/coupon", response_model=SuccessResponse[CartResponse])
async def remove_cart_coupon(request: Request, carts: CartStore = Depends(get_carts)):
    cart = await load_cart(request.session, carts)
    remove_coupon(cart)
    await save_cart(request.session, carts, cart)
    return SuccessResponse(data=cart_response(cart), message="Coupon removed")

# Checkout
@app.post("/checkout", response_model=SuccessResponse[CheckoutResponse])
@limiter.limit("10/minute")
async def checkout(
    checkout_request: CheckoutRequest,
    request: Request,
    finalizer: CheckoutFinalizer = Depends(get_finalizer),
    carts: CartStore = Depends(get_carts)
):
    cart = await load_cart(request.session, carts)
    try:
        order = await finalizer.finalize(
            cart,
            {"email": checkout_request.email, "name": checkout_request.name},
            expected_total=checkout_request.expected_total,
            request_id=getattr(request.state, "request_id", None),
        )
    finally:
        # Cleared on success or once payment was taken, re-priced otherwise
        await save_cart(request.session, carts, cart)

    resp = order_response(order)
    downloads = [
        DownloadLink(
            product_id=item.product_id,
            name=item.name,
            url=str(request.url_for("download_file", token=create_download_token(order.id, item.product_id))),
        )
        for item in resp.items if item.is_digital
    ]
    return SuccessResponse(
        data=CheckoutResponse(order=resp, downloads=downloads),
        message="Order placed successfully"
    )

@app.get("/downloads/{token}", name="download_file")
async def download_file(token: str, catalog: CatalogStore = Depends(get_catalog), orders: OrderStore = Depends(get_orders)):
    payload = verify_download_token(token)
    product_id = payload["product_id"]

    order = await orders.get_order(int(payload["sub"]))
    if not order:
        raise NotFoundError("Order not found")
    if not any(item["product_id"] == product_id for item in json.loads(order.products_ordered)):
        raise NotFoundError("Product is not part of this order")

    product = await catalog.get_product(product_id)
    path = None
    if product and product.is_digital and product.digital_file_path:
        path = resolve_digital_file(product.digital_file_path)
    if not path:
        raise NotFoundError("File not available")
    return FileResponse(path, filename=os.path.basename(path))

# Admin
@app.post("/admin/login", response_model=SuccessResponse[dict])
@limiter.limit("5/minute")
async def admin_login(credentials: AdminLogin, request: Request, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(Admin).where(Admin.username == credentials.username))
    admin = result.scalar_one_or_none()
    if not admin or not verify_password(credentials.password, admin.password_hash):
        raise UnauthorizedException("Incorrect username or password")
    request.session["admin"] = admin.username
    return SuccessResponse(data={"username": admin.username}, message="Logged in")

@app.post("/admin/logout", response_model=SuccessResponse[dict])
async def admin_logout(request: Request):
    request.session.pop("admin", None)
    return SuccessResponse(message="Logged out successfully")

@app.get("/admin/orders", response_model=SuccessResponse[List[OrderResponse]])
async def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    order_status: Optional[OrderStatus] = Query(None, alias="status"),
    orders: OrderStore = Depends(get_orders),
    admin: str = Depends(require_admin)
):
    skip = (page - 1) * limit
    found = await orders.list_orders(skip=skip, limit=limit, status=order_status)
    return SuccessResponse(data=[order_response(o) for o in found])

@app.put("/admin/orders/{order_id}/status", response_model=SuccessResponse[OrderResponse])
async def update_order_status(
    order_id: int,
    status_update: OrderStatusUpdate,
    orders: OrderStore = Depends(get_orders),
    admin: str = Depends(require_admin)
):
    order = await orders.update_status(order_id, status_update.status)
    return SuccessResponse(data=order_response(order), message=f"Order marked {order.status.value}")

@app.post("/admin/products", response_model=SuccessResponse[ProductResponse])
async def create_product(product: ProductCreate, db: AsyncSession = Depends(get_db), admin: str = Depends(require_admin)):
    new_product = Product(**product.model_dump())
    db.add(new_product)
    await db.commit()
    await db.refresh(new_product)
    return SuccessResponse(data=ProductResponse.model_validate(new_product), message="Product created successfully")

@app.put("/admin/products/{product_id}", response_model=SuccessResponse[ProductResponse])
async def update_product(
    product_id: int,
    product_update: ProductUpdate,
    db: AsyncSession = Depends(get_db),
    admin: str = Depends(require_admin)
):
    product = await db.get(Product, product_id)
    if not product:
        raise NotFoundError("Product not found")

    update_data = {k: v for k, v in product_update.model_dump().items() if v is not None}
    for key, value in update_data.items():
        setattr(product, key, value)
    await db.commit()
    await db.refresh(product)
    return SuccessResponse(data=ProductResponse.model_validate(product), message="Product updated successfully")

@app.post("/admin/coupons", response_model=SuccessResponse[CouponResponse])
async def create_coupon(coupon: CouponCreate, db: AsyncSession = Depends(get_db), admin: str = Depends(require_admin)):
    new_coupon = Coupon(**coupon.model_dump())
    db.add(new_coupon)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise AppException(status.HTTP_400_BAD_REQUEST, "Coupon code already exists")
    await db.refresh(new_coupon)
    return SuccessResponse(data=CouponResponse.model_validate(new_coupon), message="Coupon created successfully")

@app.get("/admin/coupons", response_model=SuccessResponse[List[CouponResponse]])
async def list_coupons(coupons: CouponStore = Depends(get_coupons), admin: str = Depends(require_admin)):
    found = await coupons.list_coupons()
    return SuccessResponse(data=[CouponResponse.model_validate(c) for c in found])

@app.delete("/admin/coupons/{code}", response_model=SuccessResponse[CouponResponse])
async def deactivate_coupon(code: str, db: AsyncSession = Depends(get_db), admin: str = Depends(require_admin)):
    result = await db.execute(select(Coupon).where(Coupon.code == normalize_code(code)))
    coupon = result.scalar_one_or_none()
    if not coupon:
        raise NotFoundError("Coupon not found")
    coupon.is_active = False
    await db.commit()
    await db.refresh(coupon)
    return SuccessResponse(data=CouponResponse.model_validate(coupon), message="Coupon deactivated")

@app.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    gateway_status = "configured" if settings.PAYMENT_GATEWAY_URL else "simulated"

    if db_status != "connected":
        logger.error(f"Health Check Failed: DB={db_status}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Service Unhealthy: DB={db_status}"
        )

    return HealthResponse(
        service="storefront",
        status="healthy",
        timestamp=datetime.utcnow(),
        version="1.0.0",
        database=db_status,
        dependencies={"payment-gateway": gateway_status}
    )
