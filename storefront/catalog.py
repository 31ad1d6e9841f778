from typing import Iterable, List, Optional, Union

from storefront.models import Product, CategoryInfo, Category

CategoryFilter = Union[Category, str]

# Static catalog: the storefront's source of truth for products
SEED_PRODUCTS: List[dict] = [
    {"id": "JW-001", "name": "Gold Layered Necklace", "description": "Three delicate 18k gold-plated chains that sit at different lengths", "price": 3500, "category": "jewelry", "subcategory": "necklaces", "images": ["https://images.unsplash.com/photo-1599643478518-a784e5dc4c8f?w=800&q=80"], "stock": 12, "featured": True, "tags": ["gold", "layered", "bestseller"]},
    {"id": "JW-002", "name": "Pearl Drop Earrings", "description": "Freshwater pearls on sterling silver hooks", "price": 2200, "category": "jewelry", "subcategory": "earrings", "images": ["https://images.unsplash.com/photo-1535632066927-ab7c9ab60908?w=800&q=80"], "stock": 20, "featured": False, "tags": ["pearl", "silver"]},
    {"id": "JW-003", "name": "Crystal Tennis Bracelet", "description": "A single row of hand-set cubic zirconia crystals", "price": 4800, "category": "jewelry", "subcategory": "bracelets", "images": ["https://images.unsplash.com/photo-1611591437281-460bfbe1220a?w=800&q=80"], "stock": 3, "featured": True, "tags": ["crystal", "evening"]},
    {"id": "JW-004", "name": "Emerald Cocktail Ring", "description": "Statement ring with a lab-grown emerald centre stone", "price": 6500, "category": "jewelry", "subcategory": "rings", "images": ["https://images.unsplash.com/photo-1605100804763-247f67b3557e?w=800&q=80"], "stock": 2, "featured": False, "tags": ["emerald", "statement"]},
    {"id": "BG-001", "name": "Quilted Leather Shoulder Bag", "description": "Soft lambskin with a gold chain strap", "price": 12500, "category": "bags", "subcategory": "shoulder bags", "images": ["https://images.unsplash.com/photo-1548036328-c9fa89d128fa?w=800&q=80"], "stock": 5, "featured": True, "tags": ["leather", "chain"]},
    {"id": "BG-002", "name": "Woven Straw Tote", "description": "Roomy hand-woven tote for the market or the beach", "price": 4200, "category": "bags", "subcategory": "totes", "images": ["https://images.unsplash.com/photo-1590874103328-eac38a683ce7?w=800&q=80"], "stock": 9, "featured": False, "tags": ["summer", "tote"]},
    {"id": "BG-003", "name": "Velvet Evening Clutch", "description": "Compact clutch with a beaded clasp", "price": 3800, "category": "bags", "subcategory": "clutches", "images": ["https://images.unsplash.com/photo-1566150905458-1bf1fc113f0d?w=800&q=80"], "stock": 7, "featured": False, "tags": ["velvet", "evening"]},
    {"id": "MK-001", "name": "Matte Liquid Lipstick Set", "description": "Four long-wear nude and berry shades", "price": 2800, "category": "makeup", "subcategory": "lips", "images": ["https://images.unsplash.com/photo-1586495777744-4413f21062fa?w=800&q=80"], "stock": 25, "featured": True, "tags": ["lipstick", "set"]},
    {"id": "MK-002", "name": "Radiance Foundation", "description": "Buildable coverage with a satin finish", "price": 3200, "category": "makeup", "subcategory": "face", "images": ["https://images.unsplash.com/photo-1631214540242-3cd8c4b0b3b8?w=800&q=80"], "stock": 1, "featured": False, "tags": ["foundation"]},
    {"id": "MK-003", "name": "Eyeshadow Palette - Desert Rose", "description": "Twelve warm mattes and shimmers", "price": 3600, "category": "makeup", "subcategory": "eyes", "images": ["https://images.unsplash.com/photo-1512496015851-a90fb38ba796?w=800&q=80"], "stock": 14, "featured": False, "tags": ["palette", "eyes"]},
]

SEED_CATEGORIES: List[dict] = [
    {"id": "jewelry", "name": "Jewelry", "icon": "gem", "description": "Necklaces, earrings, bracelets and rings", "image": "/assets/category-jewelry.jpg"},
    {"id": "bags", "name": "Bags", "icon": "shopping-bag", "description": "Handbags, totes and evening clutches", "image": "/assets/category-bags.jpg"},
    {"id": "makeup", "name": "Makeup", "icon": "sparkles", "description": "Lips, face and eye essentials", "image": "/assets/category-makeup.jpg"},
]


def filter_by_category(products: Iterable[Product], category: CategoryFilter = "all") -> List[Product]:
    """Products in ``category`` in their original order; ``all`` keeps everything."""
    if category == "all":
        return list(products)
    return [p for p in products if p.category == category]


class Catalog:
    """Read-only product catalog. Never touches cart state."""

    def __init__(self, products: Optional[Iterable[Product]] = None, categories: Optional[Iterable[CategoryInfo]] = None):
        if products is None:
            products = [Product(**p) for p in SEED_PRODUCTS]
        if categories is None:
            categories = [CategoryInfo(**c) for c in SEED_CATEGORIES]
        self._products = list(products)
        self._categories = list(categories)

    @property
    def products(self) -> List[Product]:
        return list(self._products)

    @property
    def categories(self) -> List[CategoryInfo]:
        return list(self._categories)

    def browse(self, category: CategoryFilter = "all", featured: Optional[bool] = None) -> List[Product]:
        products = filter_by_category(self._products, category)
        if featured is not None:
            products = [p for p in products if p.featured == featured]
        return products

    def get(self, product_id: str) -> Optional[Product]:
        for product in self._products:
            if product.id == product_id:
                return product
        return None
