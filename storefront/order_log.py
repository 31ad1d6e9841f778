"""
Client for the spreadsheet webhook that keeps the order log.

Both calls fail soft: an unset webhook or any transport/HTTP problem is
logged and turned into ``None`` (append) or ``[]`` (fetch).
"""
import asyncio
import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Set

import httpx

from storefront.models import Order, OrderItem

logger = logging.getLogger(__name__)

# Accepted spellings per canonical field: live Order keys first, then the
# sheet's column headers
FIELD_ALIASES: Dict[str, Iterable[str]] = {
    "order_id": ("orderId", "OrderID", "order_id", "timestamp", "Timestamp"),
    "name": ("name", "CustomerName", "customerName", "Name"),
    "phone": ("phone", "Phone"),
    "location": ("location", "Location"),
    "items": ("items", "Items"),
    "subtotal": ("subtotal", "Subtotal"),
    "delivery_fee": ("deliveryFee", "DeliveryFee", "delivery_fee"),
    "total": ("total", "Total"),
    "status": ("status", "Status"),
    "notes": ("notes", "Notes"),
    "created_at": ("createdAt", "CreatedAt", "timestamp", "Timestamp"),
}


def _lookup(record: Dict[str, Any], field: str) -> Any:
    for key in FIELD_ALIASES[field]:
        value = record.get(key)
        if value not in (None, ""):
            return value
    return None


def _to_amount(value: Any) -> Decimal:
    if value is None:
        return Decimal(0)
    try:
        return Decimal(str(value).replace(",", "").strip() or "0")
    except InvalidOperation:
        return Decimal(0)


def _to_items(value: Any) -> List[OrderItem]:
    # The sheet stores items as a JSON string; the live shape is a list
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return [OrderItem(id="", name=value, quantity=1, price=Decimal(0))]
    if not isinstance(value, list):
        return []

    items = []
    for raw in value:
        if isinstance(raw, dict):
            items.append(OrderItem(
                id=str(raw.get("id") or raw.get("ID") or ""),
                name=str(raw.get("name") or raw.get("Name") or ""),
                quantity=int(_to_amount(raw.get("quantity") or raw.get("Quantity") or 1)),
                price=_to_amount(raw.get("price") or raw.get("Price")),
            ))
        else:
            items.append(OrderItem(id="", name=str(raw), quantity=1, price=Decimal(0)))
    return items


def normalize_order(record: Dict[str, Any]) -> Order:
    """Map one remote log row, whatever its key spelling, onto ``Order``."""
    notes = _lookup(record, "notes")
    return Order(
        order_id=str(_lookup(record, "order_id") or ""),
        name=str(_lookup(record, "name") or ""),
        phone=str(_lookup(record, "phone") or ""),
        location=str(_lookup(record, "location") or ""),
        items=_to_items(_lookup(record, "items")),
        subtotal=_to_amount(_lookup(record, "subtotal")),
        delivery_fee=_to_amount(_lookup(record, "delivery_fee")),
        total=_to_amount(_lookup(record, "total")),
        status=str(_lookup(record, "status") or "new"),
        notes=str(notes) if notes is not None else None,
        created_at=str(_lookup(record, "created_at") or ""),
    )


class OrderLogClient:
    def __init__(self, webhook_url: Optional[str], timeout: float = 5.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.webhook_url = webhook_url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=True)

    @property
    def configured(self) -> bool:
        return bool(self.webhook_url)

    async def append_order(self, order: Order) -> Optional[dict]:
        if not self.webhook_url:
            logger.warning("ORDER_LOG_WEBHOOK_URL not configured, skipping order log append",
                           extra={"order_id": order.order_id})
            return None

        try:
            response = await self._client.post(
                self.webhook_url,
                json={"action": "appendOrder", "order": order.to_wire()},
            )
            response.raise_for_status()
            logger.info("Order appended to order log", extra={"order_id": order.order_id})
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Order log rejected order: {e.response.status_code}", extra={"order_id": order.order_id})
            return None
        except httpx.HTTPError as e:
            logger.error(f"Error appending order to order log: {e}", extra={"order_id": order.order_id})
            return None
        except ValueError:
            # Appended, but the webhook did not answer with JSON
            return None

    async def fetch_orders(self) -> List[Order]:
        if not self.webhook_url:
            logger.warning("ORDER_LOG_WEBHOOK_URL not configured, cannot fetch orders")
            return []

        try:
            response = await self._client.get(self.webhook_url, params={"action": "getOrders"})
            if response.status_code != 200:
                logger.warning(f"Order log fetch failed: {response.status_code}")
                return []
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Error fetching orders from order log: {e}")
            return []

        records = data.get("orders") if isinstance(data, dict) else None
        orders = []
        for record in records or []:
            if not isinstance(record, dict):
                logger.warning("Skipping malformed order log record")
                continue
            orders.append(normalize_order(record))
        return orders

    async def aclose(self) -> None:
        await self._client.aclose()


class OrderDispatcher:
    """
    Sends orders to the log as detached tasks.

    ``dispatch`` returns at once; the outcome is only ever logged. Pending
    tasks are kept referenced until done and can be drained at shutdown.
    """

    def __init__(self, client: OrderLogClient):
        self.client = client
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def dispatch(self, order: Order) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._append(order))
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        return task

    async def _append(self, order: Order) -> Optional[dict]:
        try:
            return await self.client.append_order(order)
        except Exception:
            logger.exception("Unexpected error appending order", extra={"order_id": order.order_id})
            return None

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.warning("Order log append was cancelled")

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
