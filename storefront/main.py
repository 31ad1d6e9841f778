from fastapi import FastAPI, APIRouter, Depends, HTTPException, status, Query, Header, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from datetime import datetime
from typing import Optional, List, Literal
import os
import uuid

from shared.utils import (
    get_db_client, settings, Settings, SuccessResponse,
    NotFoundException, AppException, HealthResponse
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter

from storefront.admin import AdminSessions
from storefront.admin_api import router as admin_router
from storefront.cart import CartSessions, CartStore, InMemoryCartRepository, MongoCartRepository, CartRepository
from storefront.catalog import Catalog
from storefront.checkout import CheckoutFlow, CheckoutStateError, CheckoutStep, StoreContact
from storefront.image_upload import ImageUploader
from storefront.models import Product, CategoryInfo
from storefront.order_log import OrderLogClient, OrderDispatcher
from storefront.schemas import (
    CartItemAdd, CartItemUpdate, CartResponse,
    CheckoutFormInput, CheckoutStateResponse, CheckoutConfirmResponse
)

SERVICE_NAME = "storefront-service"

# Setup Logging
logger = setup_logging(SERVICE_NAME)

router = APIRouter()

# --- Dependencies ---
def get_catalog(request: Request) -> Catalog:
    return request.app.state.catalog

def get_cart_sessions(request: Request) -> CartSessions:
    return request.app.state.cart_sessions

async def get_session_id(request: Request, response: Response, x_session_id: Optional[str] = Header(None)) -> str:
    # Carts survive reloads as long as the client keeps sending this id back
    session_id = x_session_id or str(uuid.uuid4())
    request.state.session_id = session_id
    response.headers["X-Session-ID"] = session_id
    return session_id

# --- Helpers ---
def cart_response(cart: CartStore) -> CartResponse:
    return CartResponse(
        items=cart.items,
        is_open=cart.is_open,
        total_price=cart.get_total_price(),
        total_items=cart.get_total_items()
    )

def checkout_state(flow: CheckoutFlow, cart: CartStore) -> CheckoutStateResponse:
    return CheckoutStateResponse(
        step=flow.step.value,
        form=flow.form,
        errors=flow.errors,
        totals=flow.totals(cart),
        message=flow.message(cart) if flow.step is CheckoutStep.PREVIEW else None
    )

def require_flow(sessions: CartSessions, session_id: str) -> CheckoutFlow:
    flow = sessions.get_flow(session_id)
    if flow is None:
        raise CheckoutStateError("No checkout in progress")
    return flow

# --- Endpoints ---

# Catalog
@router.get("/categories", response_model=SuccessResponse[List[CategoryInfo]])
async def list_categories(catalog: Catalog = Depends(get_catalog)):
    return SuccessResponse(data=catalog.categories)

@router.get("/products", response_model=SuccessResponse[List[Product]])
@limiter.limit("60/minute")
async def list_products(
    request: Request,
    category: Literal["all", "jewelry", "bags", "makeup"] = Query("all"),
    featured: Optional[bool] = None,
    catalog: Catalog = Depends(get_catalog)
):
    products = catalog.browse(category, featured=featured)
    return SuccessResponse(data=products, message=f"{len(products)} items available")

@router.get("/products/{product_id}", response_model=SuccessResponse[Product])
@limiter.limit("60/minute")
async def get_product(product_id: str, request: Request, catalog: Catalog = Depends(get_catalog)):
    product = catalog.get(product_id)
    if not product:
        raise NotFoundException("Product not found")
    return SuccessResponse(data=product)

# Cart
@router.get("/cart", response_model=SuccessResponse[CartResponse])
async def get_cart(
    session_id: str = Depends(get_session_id),
    sessions: CartSessions = Depends(get_cart_sessions)
):
    cart = await sessions.snapshot(session_id)
    return SuccessResponse(data=cart_response(cart))

@router.post("/cart/items", response_model=SuccessResponse[CartResponse])
async def add_to_cart(
    item: CartItemAdd,
    session_id: str = Depends(get_session_id),
    sessions: CartSessions = Depends(get_cart_sessions),
    catalog: Catalog = Depends(get_catalog)
):
    product = catalog.get(item.product_id)
    if not product:
        raise NotFoundException(f"Product {item.product_id} not found")

    async with sessions.open(session_id) as cart:
        cart.add_item(product)
        data = cart_response(cart)
    return SuccessResponse(data=data, message=f"{product.name} added to cart")

@router.put("/cart/items/{product_id}", response_model=SuccessResponse[CartResponse])
async def update_cart_item(
    product_id: str,
    update: CartItemUpdate,
    session_id: str = Depends(get_session_id),
    sessions: CartSessions = Depends(get_cart_sessions)
):
    async with sessions.open(session_id) as cart:
        cart.update_quantity(product_id, update.quantity)
        data = cart_response(cart)
    return SuccessResponse(data=data)

@router.delete("/cart/items/{product_id}", response_model=SuccessResponse[CartResponse])
async def remove_cart_item(
    product_id: str,
    session_id: str = Depends(get_session_id),
    sessions: CartSessions = Depends(get_cart_sessions)
):
    async with sessions.open(session_id) as cart:
        cart.remove_item(product_id)
        data = cart_response(cart)
    return SuccessResponse(data=data)

@router.delete("/cart", response_model=SuccessResponse[CartResponse])
async def clear_cart(
    session_id: str = Depends(get_session_id),
    sessions: CartSessions = Depends(get_cart_sessions)
):
    async with sessions.open(session_id) as cart:
        cart.clear_cart()
        data = cart_response(cart)
    return SuccessResponse(data=data, message="Cart cleared")

@router.post("/cart/open", response_model=SuccessResponse[CartResponse])
async def open_cart(
    session_id: str = Depends(get_session_id),
    sessions: CartSessions = Depends(get_cart_sessions)
):
    async with sessions.open(session_id) as cart:
        cart.open_cart()
        data = cart_response(cart)
    return SuccessResponse(data=data)

@router.post("/cart/close", response_model=SuccessResponse[CartResponse])
async def close_cart(
    session_id: str = Depends(get_session_id),
    sessions: CartSessions = Depends(get_cart_sessions)
):
    async with sessions.open(session_id) as cart:
        cart.close_cart()
        data = cart_response(cart)
    return SuccessResponse(data=data)

# Checkout
@router.post("/checkout", response_model=SuccessResponse[CheckoutStateResponse])
async def begin_checkout(
    request: Request,
    session_id: str = Depends(get_session_id),
    sessions: CartSessions = Depends(get_cart_sessions)
):
    async with sessions.open(session_id) as cart:
        flow = CheckoutFlow.start(request.app.state.contact, cart)
        sessions.set_flow(session_id, flow)
        data = checkout_state(flow, cart)
    return SuccessResponse(data=data)

@router.get("/checkout", response_model=SuccessResponse[CheckoutStateResponse])
async def get_checkout(
    session_id: str = Depends(get_session_id),
    sessions: CartSessions = Depends(get_cart_sessions)
):
    flow = require_flow(sessions, session_id)
    cart = await sessions.snapshot(session_id)
    return SuccessResponse(data=checkout_state(flow, cart))

@router.put("/checkout/form", response_model=SuccessResponse[CheckoutStateResponse])
async def submit_checkout_form(
    form: CheckoutFormInput,
    session_id: str = Depends(get_session_id),
    sessions: CartSessions = Depends(get_cart_sessions)
):
    flow = require_flow(sessions, session_id)
    flow.update_form(**form.model_dump())
    if not flow.submit():
        raise AppException(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"errors": flow.errors, "form": flow.form}
        )
    cart = await sessions.snapshot(session_id)
    return SuccessResponse(data=checkout_state(flow, cart))

@router.post("/checkout/back", response_model=SuccessResponse[Optional[CheckoutStateResponse]])
async def checkout_back(
    session_id: str = Depends(get_session_id),
    sessions: CartSessions = Depends(get_cart_sessions)
):
    flow = require_flow(sessions, session_id)
    if flow.back():
        sessions.discard_flow(session_id)
        return SuccessResponse(data=None, message="Checkout closed")
    cart = await sessions.snapshot(session_id)
    return SuccessResponse(data=checkout_state(flow, cart))

@router.post("/checkout/confirm", response_model=SuccessResponse[CheckoutConfirmResponse])
@limiter.limit("10/minute")
async def confirm_checkout(
    request: Request,
    session_id: str = Depends(get_session_id),
    sessions: CartSessions = Depends(get_cart_sessions)
):
    # The session lock makes this a critical section: a second confirm
    # waits, then finds the flow already gone
    opened: List[str] = []
    async with sessions.open(session_id) as cart:
        flow = require_flow(sessions, session_id)
        result = flow.confirm(cart, request.app.state.order_dispatcher, opened.append)
        sessions.discard_flow(session_id)

    return SuccessResponse(
        data=CheckoutConfirmResponse(
            order_id=result.order.order_id,
            chat_url=opened[0] if opened else result.chat_url,
            total=result.order.total
        ),
        message="Order sent to WhatsApp! We will confirm your order shortly."
    )


def create_app(
    app_settings: Settings = settings,
    catalog: Optional[Catalog] = None,
    cart_repository: Optional[CartRepository] = None,
    order_log_client: Optional[OrderLogClient] = None,
    image_uploader: Optional[ImageUploader] = None
) -> FastAPI:
    app = FastAPI(title="Storefront Service")

    # Security Setup
    setup_rate_limiting(app)
    app.add_middleware(SecurityHeadersMiddleware)

    # Middleware
    app.add_middleware(RequestLoggingMiddleware, service_name=SERVICE_NAME)

    # CORS Configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Session-ID", "X-Request-ID"],
    )

    catalog = catalog or Catalog()
    if cart_repository is None and app_settings.CART_BACKEND != "mongo":
        cart_repository = InMemoryCartRepository()
    order_log_client = order_log_client or OrderLogClient(
        app_settings.ORDER_LOG_WEBHOOK_URL, timeout=app_settings.ORDER_LOG_TIMEOUT
    )

    app.state.settings = app_settings
    app.state.catalog = catalog
    app.state.contact = StoreContact.from_settings(app_settings)
    app.state.cart_sessions = CartSessions(cart_repository, flow_ttl=app_settings.CHECKOUT_FLOW_TTL_SECONDS)
    app.state.order_log = order_log_client
    app.state.order_dispatcher = OrderDispatcher(order_log_client)
    app.state.image_uploader = image_uploader or ImageUploader(
        app_settings.CLOUDINARY_CLOUD_NAME, app_settings.CLOUDINARY_UPLOAD_PRESET
    )
    app.state.admin_sessions = AdminSessions(app_settings, catalog.products)
    app.mongodb_client = None

    @app.on_event("startup")
    async def startup_db_client():
        sessions: CartSessions = app.state.cart_sessions
        if sessions.repository is None:
            app.mongodb_client = get_db_client(app_settings.MONGO_URL)
            app.mongodb = app.mongodb_client[app_settings.MONGO_DB]
            repository = MongoCartRepository(app.mongodb.carts)
            # Indexes
            await repository.create_indexes()
            sessions.repository = repository

    @app.on_event("shutdown")
    async def shutdown_clients():
        # Let in-flight order log appends finish before closing the client
        await app.state.order_dispatcher.drain()
        await app.state.order_log.aclose()
        await app.state.image_uploader.aclose()
        if app.mongodb_client is not None:
            app.mongodb_client.close()

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        db_status = "in-memory"
        if app.mongodb_client is not None:
            try:
                await app.mongodb_client.admin.command('ping')
                db_status = "connected"
            except Exception:
                db_status = "disconnected"

        order_log_status = "configured" if app.state.order_log.configured else "not configured"
        image_host_status = "configured" if app.state.image_uploader.configured else "not configured"

        # Order log and image host fail soft, so only the cart store decides health
        overall_status = "unhealthy" if db_status == "disconnected" else "healthy"

        if overall_status == "unhealthy":
            logger.error(f"Health Check Failed: DB={db_status}")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=f"Service Unhealthy: DB={db_status}"
            )

        return HealthResponse(
            service=SERVICE_NAME,
            status=overall_status,
            timestamp=datetime.utcnow(),
            version="1.0.0",
            database=db_status,
            dependencies={
                "order-log": order_log_status,
                "image-host": image_host_status
            }
        )

    app.include_router(router)
    app.include_router(admin_router)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
