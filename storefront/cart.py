import asyncio
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorCollection

from storefront.models import CartItem, CartDB, Product

if TYPE_CHECKING:
    from storefront.checkout import CheckoutFlow


class CartStore:
    """
    The active cart for one session.

    Every mutation goes through these methods. None of them raise: ids that
    are not in the cart are ignored.
    """

    def __init__(self, items: Optional[Iterable[CartItem]] = None, is_open: bool = False):
        self._items: "OrderedDict[str, CartItem]" = OrderedDict()
        for item in items or []:
            self._items[item.id] = item.model_copy()
        self._is_open = is_open

    @property
    def items(self) -> List[CartItem]:
        return list(self._items.values())

    @property
    def is_open(self) -> bool:
        return self._is_open

    def is_empty(self) -> bool:
        return not self._items

    def add_item(self, product: Product) -> CartItem:
        # Stock is not checked; overselling is settled by the shop on WhatsApp
        item = self._items.get(product.id)
        if item is not None:
            item.quantity += 1
            return item
        item = CartItem(**product.model_dump(), quantity=1)
        self._items[product.id] = item
        return item

    def update_quantity(self, product_id: str, quantity: int) -> None:
        if product_id not in self._items:
            return
        if quantity <= 0:
            self.remove_item(product_id)
            return
        self._items[product_id].quantity = quantity

    def remove_item(self, product_id: str) -> None:
        self._items.pop(product_id, None)

    def clear_cart(self) -> None:
        self._items.clear()

    def open_cart(self) -> None:
        self._is_open = True

    def close_cart(self) -> None:
        self._is_open = False

    def get_total_price(self) -> Decimal:
        return sum((item.line_total for item in self._items.values()), Decimal(0))

    def get_total_items(self) -> int:
        return sum(item.quantity for item in self._items.values())

    def to_document(self, session_id: str) -> dict:
        cart_db = CartDB(session_id=session_id, items=self.items, is_open=self._is_open)
        doc = cart_db.model_dump(by_alias=True, exclude={"id"})
        # Mongo has no Decimal codec configured; prices go in as floats
        for item in doc["items"]:
            item["price"] = float(item["price"])
        return doc

    @classmethod
    def from_document(cls, doc: Optional[dict]) -> "CartStore":
        if not doc:
            return cls()
        items = []
        for item in doc.get("items", []):
            item = dict(item)
            item["price"] = Decimal(str(item["price"]))
            items.append(CartItem(**item))
        return cls(items=items, is_open=doc.get("is_open", False))


# --- Persistence ---

class CartRepository:
    """Thin storage wrapper that keeps carts across page reloads."""

    async def load(self, session_id: str) -> CartStore:
        raise NotImplementedError

    async def save(self, session_id: str, cart: CartStore) -> None:
        raise NotImplementedError


class InMemoryCartRepository(CartRepository):
    def __init__(self):
        self._docs: Dict[str, dict] = {}

    async def load(self, session_id: str) -> CartStore:
        return CartStore.from_document(self._docs.get(session_id))

    async def save(self, session_id: str, cart: CartStore) -> None:
        self._docs[session_id] = cart.to_document(session_id)


class MongoCartRepository(CartRepository):
    def __init__(self, collection: AsyncIOMotorCollection):
        self.collection = collection

    async def create_indexes(self) -> None:
        await self.collection.create_index("session_id", unique=True)

    async def load(self, session_id: str) -> CartStore:
        doc = await self.collection.find_one({"session_id": session_id})
        return CartStore.from_document(doc)

    async def save(self, session_id: str, cart: CartStore) -> None:
        doc = cart.to_document(session_id)
        doc["updated_at"] = datetime.utcnow()
        await self.collection.update_one(
            {"session_id": session_id},
            {"$set": doc},
            upsert=True
        )


# --- Ownership ---

class CartSessions:
    """
    Owns every session's cart and checkout flow.

    ``open`` hands a loaded cart to one caller at a time and writes it back
    when the block exits cleanly, so read-modify-write updates such as
    ``add_item`` never interleave for the same session.

    A session's lock exists only while someone holds or waits on it. Checkout
    flows untouched for ``flow_ttl`` seconds are dropped.
    """

    def __init__(self, repository: CartRepository, flow_ttl: float = 1800,
                 clock: Callable[[], float] = time.monotonic):
        self.repository = repository
        self.flow_ttl = flow_ttl
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._flows: Dict[str, Tuple[float, "CheckoutFlow"]] = {}

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    @property
    def flow_count(self) -> int:
        return len(self._flows)

    @asynccontextmanager
    async def _locked(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_id] -= 1
            if not self._lock_users[session_id]:
                del self._lock_users[session_id]
                del self._locks[session_id]

    @asynccontextmanager
    async def open(self, session_id: str) -> AsyncIterator[CartStore]:
        async with self._locked(session_id):
            cart = await self.repository.load(session_id)
            yield cart
            await self.repository.save(session_id, cart)

    async def snapshot(self, session_id: str) -> CartStore:
        async with self._locked(session_id):
            return await self.repository.load(session_id)

    # Checkout flows are ephemeral and never persisted
    def get_flow(self, session_id: str) -> Optional["CheckoutFlow"]:
        self._evict_idle_flows()
        entry = self._flows.get(session_id)
        if entry is None:
            return None
        flow = entry[1]
        self._flows[session_id] = (self._clock(), flow)
        return flow

    def set_flow(self, session_id: str, flow: "CheckoutFlow") -> None:
        self._evict_idle_flows()
        self._flows[session_id] = (self._clock(), flow)

    def discard_flow(self, session_id: str) -> None:
        self._flows.pop(session_id, None)

    def _evict_idle_flows(self) -> None:
        cutoff = self._clock() - self.flow_ttl
        for session_id in [sid for sid, (touched, _) in self._flows.items() if touched < cutoff]:
            del self._flows[session_id]
