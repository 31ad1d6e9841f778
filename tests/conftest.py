import json
import os
from decimal import Decimal

# Must be set before the app modules read settings
os.environ.setdefault("CART_BACKEND", "memory")
os.environ["RATE_LIMIT_ENABLED"] = "false"

import httpx
import pytest

from shared.utils import Settings
from storefront.cart import CartStore
from storefront.catalog import Catalog
from storefront.checkout import StoreContact
from storefront.image_upload import ImageUploader
from storefront.main import create_app
from storefront.models import Product
from storefront.order_log import OrderLogClient

WEBHOOK_URL = "https://script.google.test/macros/s/orders/exec"
STORE_PHONE_PLAIN = "254700000000"


def make_product(id="SC-1", name="Satin Scarf", price=2500, category="bags", **fields) -> Product:
    return Product(id=id, name=name, price=Decimal(price), category=category, **fields)


class RecordingWebhook:
    """Stands in for the spreadsheet webhook behind httpx.MockTransport."""

    def __init__(self, fail: bool = False, orders=None, status_code: int = 200):
        self.fail = fail
        self.orders = orders or []
        self.status_code = status_code
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail:
            raise httpx.ConnectError("sheet unreachable", request=request)
        if request.method == "GET":
            return httpx.Response(self.status_code, json={"orders": self.orders})
        return httpx.Response(self.status_code, json={"result": "success"})

    @property
    def appended(self):
        return [json.loads(r.content) for r in self.requests if r.method == "POST"]


@pytest.fixture
def scarf():
    return make_product()


@pytest.fixture
def contact():
    return StoreContact(
        name="Hafsa's Boutique",
        phone="+254",
        phone_plain=STORE_PHONE_PLAIN,
        location="Eastleigh",
    )


@pytest.fixture
def scarf_cart(scarf):
    cart = CartStore()
    cart.add_item(scarf)
    cart.add_item(scarf)
    return cart


@pytest.fixture
def catalog(scarf):
    return Catalog(products=[
        scarf,
        make_product(id="NK-1", name="Gold Necklace", price=9000, category="jewelry", featured=True),
        make_product(id="LP-1", name="Lip Gloss", price=800, category="makeup", stock=2),
    ])


@pytest.fixture
def webhook():
    return RecordingWebhook()


@pytest.fixture
def make_app(catalog):
    def _make(webhook=None, upload_handler=None, **overrides):
        app_settings = Settings(
            CART_BACKEND="memory",
            STORE_PHONE_PLAIN=STORE_PHONE_PLAIN,
            ORDER_LOG_WEBHOOK_URL=WEBHOOK_URL if webhook is not None else None,
            CLOUDINARY_CLOUD_NAME="boutique" if upload_handler is not None else None,
            CLOUDINARY_UPLOAD_PRESET="unsigned-products" if upload_handler is not None else None,
            **overrides
        )
        order_log = OrderLogClient(
            app_settings.ORDER_LOG_WEBHOOK_URL,
            transport=httpx.MockTransport(webhook) if webhook is not None else None
        )
        uploader = ImageUploader(
            app_settings.CLOUDINARY_CLOUD_NAME,
            app_settings.CLOUDINARY_UPLOAD_PRESET,
            transport=httpx.MockTransport(upload_handler) if upload_handler is not None else None
        )
        return create_app(app_settings, catalog=catalog, order_log_client=order_log, image_uploader=uploader)
    return _make
