# client/cart.py
# ============================================================================
# TOWN TREASURE GROCERIES — CART STORE
# ============================================================================
# Ordered list of cart lines persisted to a local JSON file (the Python
# counterpart of the storefront's browser-local cart).
# ============================================================================

import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger().bind(component="cart_store")


class CartItem(BaseModel):
    id: str
    name: Optional[str] = None
    price: float = 0
    unit: Optional[str] = None
    quantity: int = Field(default=1, ge=1)


class CartStore:
    """
    Local cart. Pass path=None for a cart that lives only in memory.

    Example:
        cart = CartStore(Path("~/.ttg/cart.json").expanduser())
        cart.add({"id": "p1", "name": "Sukuma", "price": 30, "unit": "bunch"})
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else None
        self._items: List[CartItem] = self._load()

    @property
    def items(self) -> List[CartItem]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    @property
    def is_empty(self) -> bool:
        return not self._items

    def get(self, item_id: str) -> Optional[CartItem]:
        for item in self._items:
            if item.id == item_id:
                return item
        return None

    def add(self, product: Mapping[str, Any], quantity: int = 1, stock: Optional[int] = None) -> CartItem:
        """Add a product, or bump its quantity if already in the cart."""
        product_id = str(product["id"])
        existing = self.get(product_id)
        wanted = (existing.quantity if existing else 0) + quantity
        if stock is not None and wanted > stock:
            raise ValueError(f"Cannot add more {product.get('name', product_id)}. Max stock reached.")

        if existing:
            existing.quantity = wanted
            item = existing
        else:
            item = CartItem(
                id=product_id,
                name=product.get("name"),
                price=product.get("price", 0),
                unit=product.get("unit"),
                quantity=quantity,
            )
            self._items.append(item)

        self._save()
        return item

    def update_quantity(self, item_id: str, quantity: int) -> None:
        """Set a line's quantity; zero or less removes it."""
        if quantity <= 0:
            self.remove(item_id)
            return
        item = self.get(item_id)
        if item is None:
            raise KeyError(item_id)
        item.quantity = quantity
        self._save()

    def remove(self, item_id: str) -> bool:
        before = len(self._items)
        self._items = [item for item in self._items if item.id != item_id]
        removed = len(self._items) != before
        if removed:
            self._save()
        return removed

    def clear(self) -> None:
        self._items = []
        self._save()
        logger.debug("cart_cleared")

    def subtotal(self) -> float:
        return sum(item.price * item.quantity for item in self._items)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _load(self) -> List[CartItem]:
        if not self.path or not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("cart_unreadable", path=str(self.path), error=str(e))
            return []
        return [CartItem.model_validate(entry) for entry in raw if isinstance(entry, dict)]

    def _save(self) -> None:
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data: List[Dict[str, Any]] = [item.model_dump() for item in self._items]
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")
