"""
Admin panel state.

The product mirror belongs to one admin session and is seeded from the
static catalog. Edits live only as long as the session does; nothing is
written back to the catalog.
"""
import logging
import re
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from shared.utils import ConflictException, NotFoundException, UnauthorizedException, Settings, create_session_token
from storefront.models import Product
from storefront.schemas import AdminProductForm, AdminStats

logger = logging.getLogger(__name__)

LOW_STOCK_LEVEL = 3


def generate_product_id(name: str, now_ms: Optional[int] = None) -> str:
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    slug = re.sub(r"\s+", "-", name).upper()
    return f"{slug}-{now_ms}"


class AdminCatalog:
    def __init__(self, seed: Iterable[Product]):
        self._products: List[Product] = [p.model_copy(deep=True) for p in seed]

    @property
    def products(self) -> List[Product]:
        return list(self._products)

    def search(self, query: str = "") -> List[Product]:
        q = query.strip().lower()
        if not q:
            return self.products
        return [p for p in self._products if q in p.name.lower() or q in p.category.lower()]

    def get(self, product_id: str) -> Optional[Product]:
        for product in self._products:
            if product.id == product_id:
                return product
        return None

    def create(self, form: AdminProductForm, image_url: Optional[str] = None) -> Product:
        product = self._build(form, image_url, existing=None)
        if self.get(product.id) is not None:
            raise ConflictException(f"Product {product.id} already exists")
        # Newest first, the way the dashboard lists them
        self._products.insert(0, product)
        return product

    def update(self, product_id: str, form: AdminProductForm, image_url: Optional[str] = None) -> Product:
        existing = self.get(product_id)
        if existing is None:
            raise NotFoundException("Product not found")
        product = self._build(form, image_url, existing=existing)
        self._products = [product if p.id == product_id else p for p in self._products]
        return product

    def delete(self, product_id: str) -> None:
        if self.get(product_id) is None:
            raise NotFoundException("Product not found")
        self._products = [p for p in self._products if p.id != product_id]

    def stats(self) -> AdminStats:
        return AdminStats(
            total_products=len(self._products),
            low_stock=sum(1 for p in self._products if p.stock <= LOW_STOCK_LEVEL),
            total_value=sum((p.price * p.stock for p in self._products), Decimal(0)),
            featured=sum(1 for p in self._products if p.featured),
        )

    def _build(self, form: AdminProductForm, image_url: Optional[str], existing: Optional[Product]) -> Product:
        # An uploaded file wins over a pasted URL
        image = image_url or form.image_url
        if existing is not None:
            product_id = existing.id
            images = [image] + existing.images[1:] if image else list(existing.images)
            subcategory = form.subcategory if form.subcategory is not None else existing.subcategory
            tags = form.tags if form.tags is not None else list(existing.tags)
        else:
            product_id = form.id or generate_product_id(form.name)
            images = [image] if image else []
            subcategory = form.subcategory or ""
            tags = form.tags or []

        return Product(
            id=product_id,
            name=form.name,
            description=form.description,
            price=form.price,
            category=form.category,
            subcategory=subcategory,
            images=images,
            stock=form.stock,
            featured=form.featured,
            tags=tags,
        )


@dataclass
class AdminSession:
    jti: str
    username: str
    catalog: AdminCatalog
    created_at: datetime = field(default_factory=datetime.utcnow)


class AdminSessions:
    """
    Plaintext credential check plus the set of signed-in sessions.

    This stands in for a real identity provider and is not hardened.
    """

    def __init__(self, settings: Settings, seed: Iterable[Product]):
        self.settings = settings
        self._seed = list(seed)
        self._sessions: Dict[str, AdminSession] = {}

    def login(self, username: str, password: str) -> Tuple[str, AdminSession]:
        username_ok = secrets.compare_digest(username.encode(), self.settings.ADMIN_USERNAME.encode())
        password_ok = secrets.compare_digest(password.encode(), self.settings.ADMIN_PASSWORD.encode())
        if not (username_ok and password_ok):
            logger.warning("Admin login rejected")
            raise UnauthorizedException("Invalid credentials")

        jti = str(uuid.uuid4())
        token = create_session_token(
            data={"sub": username, "scope": "admin", "jti": jti},
            expires_delta=timedelta(minutes=self.settings.ADMIN_SESSION_EXPIRE_MINUTES),
        )
        session = AdminSession(jti=jti, username=username, catalog=AdminCatalog(self._seed))
        self._sessions[jti] = session
        logger.info("Admin signed in")
        return token, session

    def resolve(self, payload: dict) -> AdminSession:
        if payload.get("scope") != "admin":
            raise UnauthorizedException("Not an admin session")
        session = self._sessions.get(payload.get("jti", ""))
        if session is None:
            raise UnauthorizedException("Session expired, please sign in again")
        return session

    def logout(self, jti: str) -> None:
        self._sessions.pop(jti, None)
