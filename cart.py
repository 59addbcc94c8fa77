"""
Cart value type.

The cart lives on the client; the server only ever sees snapshots of it. A
``Cart`` is immutable: every operation returns a new cart, which keeps the
merge/remove/update rules testable without any UI around them.
"""
from __future__ import annotations
import json
import random
import string
import time
from typing import Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from errors import ValidationError
from schemas import CartItem
from shipping import normalize_shipping_category

COMBO_SIZE = 3


def combo_member_prices(combo_price: float) -> list[float]:
    """Split ``combo_price`` into per-member prices rounded to cents; the last member takes the remainder."""
    share = round(combo_price / COMBO_SIZE, 2)
    return [share] * (COMBO_SIZE - 1) + [round(combo_price - share * (COMBO_SIZE - 1), 2)]


def new_combo_group_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"combo-{int(time.time() * 1000)}-{suffix}"


class Cart:
    __slots__ = ("_items",)

    def __init__(self, items: Iterable[CartItem] = ()):
        self._items: tuple[CartItem, ...] = tuple(items)

    @property
    def items(self) -> tuple[CartItem, ...]:
        return self._items

    @property
    def total(self) -> float:
        return sum(item.line_total for item in self._items)

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(self._items)

    def __eq__(self, other) -> bool:
        return isinstance(other, Cart) and self._items == other._items

    def __repr__(self) -> str:
        return f"Cart({list(self._items)!r})"

    def _find(self, product_id: str, color: Optional[str], size: Optional[str]) -> Optional[CartItem]:
        key = (product_id, color, size)
        for item in self._items:
            if item.key == key:
                return item
        return None

    def add_item(self, new_item: CartItem) -> Cart:
        existing = self._find(*new_item.key)
        if existing is None:
            return Cart(self._items + (new_item,))
        merged = existing.model_copy(update={"quantity": existing.quantity + new_item.quantity})
        return Cart(merged if item is existing else item for item in self._items)

    def remove_item(self, product_id: str, color: Optional[str] = None, size: Optional[str] = None) -> Cart:
        target = self._find(product_id, color, size)
        if target is None:
            return self
        if target.combo_group_id:
            return self.remove_combo(target.combo_group_id)
        return Cart(item for item in self._items if item is not target)

    def remove_combo(self, combo_group_id: str) -> Cart:
        return Cart(item for item in self._items if item.combo_group_id != combo_group_id)

    def update_quantity(
        self, product_id: str, quantity: int, color: Optional[str] = None, size: Optional[str] = None
    ) -> Cart:
        if quantity <= 0:
            return self.remove_item(product_id, color, size)
        target = self._find(product_id, color, size)
        if target is None:
            return self
        if target.combo_group_id:
            group = target.combo_group_id
            return Cart(
                item.model_copy(update={"quantity": quantity}) if item.combo_group_id == group else item
                for item in self._items
            )
        return Cart(
            item.model_copy(update={"quantity": quantity}) if item is target else item
            for item in self._items
        )

    def clear(self) -> Cart:
        return Cart()

    def singles(self) -> list[CartItem]:
        return [item for item in self._items if not item.combo_group_id]

    def combo_groups(self) -> dict[str, list[CartItem]]:
        groups: dict[str, list[CartItem]] = {}
        for item in self._items:
            if item.combo_group_id:
                groups.setdefault(item.combo_group_id, []).append(item)
        return groups

    def add_combo(self, products: list[dict], combo_price: float, combo_group_id: Optional[str] = None) -> Cart:
        """Add a bundle of exactly three distinct products at a flat ``combo_price``.

        ``products`` are serialized catalog documents (``id``, ``name``, ``images``).
        Members split ``combo_price`` to the cent (see ``combo_member_prices``) and keep the catalog id in
        ``original_product_id`` so fulfillment can map it back.
        """
        ids = [p["id"] for p in products]
        if len(products) != COMBO_SIZE or len(set(ids)) != COMBO_SIZE:
            raise ValidationError(f"A combo needs exactly {COMBO_SIZE} different products.", field="product_ids")
        group = combo_group_id or new_combo_group_id()
        prices = combo_member_prices(combo_price)
        cart = self
        for index, product in enumerate(products, start=1):
            images = product.get("images") or []
            cart = cart.add_item(CartItem(
                product_id=f"{product['id']}-{group}",
                name=f"{product['name']} (Combo {index}/{COMBO_SIZE})",
                unit_price=prices[index - 1],
                quantity=1,
                image=images[0] if images else "",
                shipping_category=product.get("shipping_category"),
                combo_group_id=group,
                original_product_id=product["id"],
            ))
        return cart

    def to_json(self) -> str:
        return json.dumps([item.model_dump(mode="json") for item in self._items])

    @classmethod
    def from_json(cls, raw: Optional[str]) -> Cart:
        """Hydrate a stored cart; anything unreadable yields an empty cart."""
        if not raw:
            return cls()
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError):
            return cls()
        if not isinstance(parsed, list):
            return cls()
        items = []
        try:
            for entry in parsed:
                entry = dict(entry)
                entry["shipping_category"] = normalize_shipping_category(entry.get("shipping_category"))
                items.append(CartItem.model_validate(entry))
        except (TypeError, ValueError, PydanticValidationError):
            return cls()
        return cls(items)
