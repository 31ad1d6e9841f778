import logging
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError

from shared.utils import SuccessResponse, AppException, require_auth
from storefront.admin import AdminSession, AdminSessions
from storefront.models import Order, Product
from storefront.schemas import AdminLogin, AdminSessionToken, AdminStats, AdminProductForm

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])

# --- Dependencies ---
def get_admin_sessions(request: Request) -> AdminSessions:
    return request.app.state.admin_sessions

async def require_admin(request: Request, payload: dict = Depends(require_auth)) -> AdminSession:
    return get_admin_sessions(request).resolve(payload)

def product_form(
    form_id: Optional[str] = Form(None, alias="id"),
    name: str = Form(...),
    description: str = Form(""),
    price: Decimal = Form(Decimal(0)),
    category: str = Form("jewelry"),
    subcategory: Optional[str] = Form(None),
    stock: int = Form(0),
    featured: bool = Form(False),
    image_url: Optional[str] = Form(None),
    tags: Optional[str] = Form(None)
) -> AdminProductForm:
    try:
        return AdminProductForm(
            id=form_id or None,
            name=name,
            description=description,
            price=price,
            category=category,
            subcategory=subcategory,
            stock=stock,
            featured=featured,
            image_url=image_url or None,
            tags=[t.strip() for t in tags.split(",") if t.strip()] if tags is not None else None
        )
    except ValidationError as e:
        raise RequestValidationError(e.errors())

async def upload_image(request: Request, file: Optional[UploadFile]) -> Optional[str]:
    if file is None or not file.filename:
        return None
    content = await file.read()
    try:
        return await request.app.state.image_uploader.upload(
            file.filename, content, file.content_type or "application/octet-stream"
        )
    except AppException as e:
        logger.error(f"Save product failed: {e.detail}")
        raise

# --- Endpoints ---

# Login has no rate limit and reports no detail on which credential was wrong
@router.post("/login", response_model=SuccessResponse[AdminSessionToken])
async def login(credentials: AdminLogin, sessions: AdminSessions = Depends(get_admin_sessions)):
    token, _ = sessions.login(credentials.username, credentials.password)
    return SuccessResponse(
        data=AdminSessionToken(
            access_token=token,
            expires_in=sessions.settings.ADMIN_SESSION_EXPIRE_MINUTES * 60
        ),
        message="Welcome back!"
    )

@router.post("/logout", response_model=SuccessResponse[dict])
async def logout(
    session: AdminSession = Depends(require_admin),
    sessions: AdminSessions = Depends(get_admin_sessions)
):
    sessions.logout(session.jti)
    return SuccessResponse(message="Logged out successfully")

@router.get("/stats", response_model=SuccessResponse[AdminStats])
async def get_stats(session: AdminSession = Depends(require_admin)):
    return SuccessResponse(data=session.catalog.stats())

@router.get("/products", response_model=SuccessResponse[List[Product]])
async def list_admin_products(
    search: str = Query(""),
    session: AdminSession = Depends(require_admin)
):
    return SuccessResponse(data=session.catalog.search(search))

@router.post("/products", response_model=SuccessResponse[Product])
async def create_admin_product(
    request: Request,
    session: AdminSession = Depends(require_admin),
    form: AdminProductForm = Depends(product_form),
    file: Optional[UploadFile] = File(None)
):
    image_url = await upload_image(request, file)
    product = session.catalog.create(form, image_url=image_url)
    return SuccessResponse(data=product, message="Product created successfully")

@router.put("/products/{product_id}", response_model=SuccessResponse[Product])
async def update_admin_product(
    product_id: str,
    request: Request,
    session: AdminSession = Depends(require_admin),
    form: AdminProductForm = Depends(product_form),
    file: Optional[UploadFile] = File(None)
):
    image_url = await upload_image(request, file)
    product = session.catalog.update(product_id, form, image_url=image_url)
    return SuccessResponse(data=product, message="Product updated successfully")

@router.delete("/products/{product_id}", response_model=SuccessResponse[dict])
async def delete_admin_product(product_id: str, session: AdminSession = Depends(require_admin)):
    session.catalog.delete(product_id)
    return SuccessResponse(data={"id": product_id}, message="Product deleted successfully")

@router.get("/orders", response_model=SuccessResponse[List[Order]])
async def list_orders(request: Request, session: AdminSession = Depends(require_admin)):
    orders = await request.app.state.order_log.fetch_orders()
    return SuccessResponse(data=orders, message=None if orders else "No orders found")
