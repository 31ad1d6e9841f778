"""
Checkout: the form -> preview -> sent flow that turns a cart into a
WhatsApp order.

Totals and the order message are always derived from the live cart, so
changes made between the two steps show up in what is finally sent.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, Optional, Tuple
from urllib.parse import quote

from pydantic import ValidationError

from shared.utils import ConflictException, Settings
from storefront.cart import CartStore
from storefront.models import Order, OrderItem
from storefront.schemas import CheckoutFormData, CheckoutTotals

if TYPE_CHECKING:
    from storefront.order_log import OrderDispatcher

logger = logging.getLogger(__name__)

FREE_DELIVERY_THRESHOLD = Decimal(10000)
DELIVERY_FEE = Decimal(300)

FORM_FIELDS = ("name", "phone", "location")

# Characters encodeURIComponent leaves alone besides letters and digits
_URI_COMPONENT_SAFE = "-_.!~*'()"


def calculate_delivery_fee(subtotal: Decimal) -> Decimal:
    if subtotal >= FREE_DELIVERY_THRESHOLD:
        return Decimal(0)
    return DELIVERY_FEE


def calculate_totals(cart: CartStore) -> CheckoutTotals:
    subtotal = cart.get_total_price()
    delivery_fee = calculate_delivery_fee(subtotal)
    return CheckoutTotals(
        subtotal=subtotal,
        delivery_fee=delivery_fee,
        total=subtotal + delivery_fee,
        free_delivery=delivery_fee == 0,
    )


def format_price(amount: Decimal) -> str:
    """Kenyan shillings with separators, e.g. ``Ksh 5,000`` or ``Ksh 99.5``."""
    text = f"{Decimal(amount):,.2f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return f"Ksh {text}"


def validate_checkout_form(data: Dict[str, str]) -> Tuple[Optional[CheckoutFormData], Dict[str, str]]:
    """
    Validate every field and collect one message per failing field.

    Returns the cleaned form and an empty mapping on success, or ``None`` and
    ``{field: message}`` when anything fails.
    """
    values = {field: data.get(field) or "" for field in FORM_FIELDS}
    try:
        return CheckoutFormData(**values), {}
    except ValidationError as e:
        errors: Dict[str, str] = {}
        for err in e.errors():
            field = str(err["loc"][0]) if err["loc"] else "__root__"
            errors.setdefault(field, err["msg"])
        return None, errors


def generate_order_message(form: CheckoutFormData, cart: CartStore, store_name: str) -> str:
    totals = calculate_totals(cart)
    order_items = "\n".join(
        f"• {item.name} x{item.quantity} - {format_price(item.line_total)}"
        for item in cart.items
    )
    delivery = "FREE" if totals.free_delivery else format_price(totals.delivery_fee)

    return (
        f"🛍️ *NEW ORDER - {store_name}*\n"
        "\n"
        "*Customer Details:*\n"
        f"👤 Name: {form.name}\n"
        f"📱 Phone: {form.phone}\n"
        f"📍 Location: {form.location}\n"
        "\n"
        "*Order Items:*\n"
        f"{order_items}\n"
        "\n"
        "*Summary:*\n"
        f"Subtotal: {format_price(totals.subtotal)}\n"
        f"Delivery: {delivery}\n"
        f"*TOTAL: {format_price(totals.total)}*\n"
        "\n"
        "Thank you for shopping with us! 🙏\n"
    )


def build_chat_link(message: str, address: str, service_url: str = "https://wa.me") -> str:
    return f"{service_url.rstrip('/')}/{address}?text={quote(message, safe=_URI_COMPONENT_SAFE)}"


def build_order(form: CheckoutFormData, cart: CartStore, now: Optional[datetime] = None) -> Order:
    """Write-once order record; item rows are copies, not live products."""
    now = now or datetime.now(timezone.utc)
    totals = calculate_totals(cart)
    return Order(
        order_id=str(int(now.timestamp() * 1000)),
        name=form.name,
        phone=form.phone,
        location=form.location,
        items=[
            OrderItem(id=item.id, name=item.name, quantity=item.quantity, price=item.price)
            for item in cart.items
        ],
        subtotal=totals.subtotal,
        delivery_fee=totals.delivery_fee,
        total=totals.total,
        status="new",
        created_at=now.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
    )


class CheckoutStateError(ConflictException):
    pass


class CheckoutStep(str, Enum):
    FORM = "form"
    PREVIEW = "preview"
    SENT = "sent"


@dataclass(frozen=True)
class StoreContact:
    name: str
    phone: str
    phone_plain: str
    location: str
    chat_service_url: str = "https://wa.me"

    @classmethod
    def from_settings(cls, settings: Settings) -> "StoreContact":
        return cls(
            name=settings.STORE_NAME,
            phone=settings.STORE_PHONE,
            phone_plain=settings.STORE_PHONE_PLAIN,
            location=settings.STORE_LOCATION,
            chat_service_url=settings.CHAT_SERVICE_URL,
        )


@dataclass
class CheckoutResult:
    order: Order
    chat_url: str


class CheckoutFlow:
    """One buyer's pass through checkout. Discard it once sent or backed out of."""

    def __init__(self, contact: StoreContact):
        self.contact = contact
        self.step = CheckoutStep.FORM
        # Pre-filled the way the shop front does: phone prefix and home area
        self._form: Dict[str, str] = {
            "name": "",
            "phone": contact.phone,
            "location": contact.location,
        }
        self.errors: Dict[str, str] = {}
        self._validated: Optional[CheckoutFormData] = None

    @classmethod
    def start(cls, contact: StoreContact, cart: CartStore) -> "CheckoutFlow":
        if cart.is_empty():
            # Allowed; the order goes out with no items
            logger.warning("Checkout started with an empty cart")
        return cls(contact)

    @property
    def form(self) -> Dict[str, str]:
        return dict(self._form)

    def update_form(self, **fields: Optional[str]) -> None:
        if self.step is not CheckoutStep.FORM:
            raise CheckoutStateError("Go back to the form to change your details")
        for field, value in fields.items():
            if field in FORM_FIELDS and value is not None:
                self._form[field] = value

    def submit(self) -> bool:
        """Advance to preview if every field is valid; otherwise keep the errors."""
        if self.step is not CheckoutStep.FORM:
            raise CheckoutStateError("Details were already submitted")
        validated, errors = validate_checkout_form(self._form)
        self.errors = errors
        if validated is None:
            return False
        self._validated = validated
        self.step = CheckoutStep.PREVIEW
        return True

    def back(self) -> bool:
        """Step back. Returns True when the caller should close checkout."""
        if self.step is CheckoutStep.PREVIEW:
            self.step = CheckoutStep.FORM
            return False
        return True

    def totals(self, cart: CartStore) -> CheckoutTotals:
        return calculate_totals(cart)

    def message(self, cart: CartStore) -> str:
        if self._validated is None or self.step is not CheckoutStep.PREVIEW:
            raise CheckoutStateError("Order preview is not available yet")
        return generate_order_message(self._validated, cart, self.contact.name)

    def chat_url(self, cart: CartStore) -> str:
        return build_chat_link(self.message(cart), self.contact.phone_plain, self.contact.chat_service_url)

    def confirm(self, cart: CartStore, dispatcher: "OrderDispatcher", open_link: Callable[[str], None]) -> CheckoutResult:
        """
        Send the order: log it (best effort), open the chat link, empty the cart.

        The order log is a side channel. Nothing that goes wrong there stops
        the buyer's WhatsApp hand-off.
        """
        if self.step is CheckoutStep.SENT:
            raise CheckoutStateError("Order was already sent")
        if self.step is not CheckoutStep.PREVIEW:
            raise CheckoutStateError("Confirm your details before sending")

        chat_url = self.chat_url(cart)
        order = build_order(self._validated, cart)
        self.step = CheckoutStep.SENT

        try:
            dispatcher.dispatch(order)
        except Exception:
            logger.exception("Could not dispatch order to the order log", extra={"order_id": order.order_id})

        open_link(chat_url)
        cart.clear_cart()
        cart.close_cart()
        logger.info("Order handed off to chat", extra={"order_id": order.order_id})
        return CheckoutResult(order=order, chat_url=chat_url)
