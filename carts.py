from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError as SchemaError

from catalog import Catalog
from database import CARTS, RecordStore, Records
from errors import CorruptionError, InsufficientStockError, NotFoundError, ValidationError
from schemas import Cart, CartItem
from validators import is_blank, parse_int, require_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Owner:
    """Cart/order owner: an authenticated user or an anonymous guest."""

    user_id: Optional[str] = None
    guest_id: Optional[str] = None

    @classmethod
    def resolve(cls, user_id: Optional[str], guest_id: Optional[str]) -> "Owner":
        if user_id:
            return cls(user_id=user_id)
        if is_blank(guest_id):
            raise ValidationError("guestId is required when not logged in", field="guestId")
        return cls(guest_id=guest_id.strip())

    def fields(self) -> dict[str, Optional[str]]:
        return {"userId": self.user_id, "guestId": self.guest_id}

    def owns(self, record: dict[str, Any]) -> bool:
        return record.get("userId") == self.user_id and record.get("guestId") == self.guest_id

    def __str__(self) -> str:
        return f"user {self.user_id}" if self.user_id else f"guest {self.guest_id}"


def to_cart(record: dict[str, Any]) -> Cart:
    try:
        return Cart.model_validate(record)
    except SchemaError as e:
        raise CorruptionError("Stored carts data is corrupted") from e


def find_cart(records: Records, owner: Owner) -> int:
    for index, record in enumerate(records):
        if owner.owns(record):
            return index
    return -1


def item_key(name: Any, brand: Any, material: Any) -> tuple[str, str, str]:
    return (
        require_text(name, "name"),
        require_text(brand, "brand"),
        require_text(material, "material"),
    )


class CartLedger:
    def __init__(self, store: RecordStore, catalog: Catalog):
        self.store = store
        self.catalog = catalog

    async def get_cart(self, owner: Owner) -> Cart:
        records = await self.store.read(CARTS)
        index = find_cart(records, owner)
        if index < 0:
            return Cart(**owner.fields())
        return to_cart(records[index])

    async def add_item(self, owner: Owner, name: Any, brand: Any, material: Any, quantity: Any) -> Cart:
        key = item_key(name, brand, material)
        quantity = parse_int(quantity, "quantity", minimum=1)

        # snapshot read; stock is checked again when the order is placed
        product = await self.catalog.find(*key)
        if product is None:
            raise NotFoundError(f"Product {key[0]} ({key[1]}, {key[2]}) not found", field="name")
        if quantity > product.stock:
            raise InsufficientStockError(
                f"Insufficient stock for {product.name}: {product.stock} available", field="quantity"
            )

        async with self.store.locked(CARTS):
            records = await self.store.read(CARTS)
            index = find_cart(records, owner)
            cart = to_cart(records[index]) if index >= 0 else Cart(**owner.fields())
            item = next((i for i in cart.items if i.key == key), None)
            already = item.quantity if item else 0
            if already + quantity > product.stock:
                raise InsufficientStockError(
                    f"Insufficient stock for {product.name}: {product.stock} available, "
                    f"{already} already in cart",
                    field="quantity",
                )
            if item is None:
                cart.items.append(CartItem(name=key[0], brand=key[1], material=key[2], quantity=quantity))
            else:
                item.quantity += quantity
            cart.updated_at = datetime.now(timezone.utc)
            if index >= 0:
                records[index] = cart.to_record()
            else:
                records.append(cart.to_record())
            await self.store.write(CARTS, records)

        logger.info(f"Added {quantity} x {key[0]} to cart of {owner}")
        return cart

    async def remove_item(self, owner: Owner, name: Any, brand: Any, material: Any) -> Cart:
        key = item_key(name, brand, material)
        async with self.store.locked(CARTS):
            records = await self.store.read(CARTS)
            index = find_cart(records, owner)
            if index < 0:
                raise NotFoundError("Cart not found", field="guestId")
            cart = to_cart(records[index])
            remaining = [i for i in cart.items if i.key != key]
            if len(remaining) == len(cart.items):
                raise NotFoundError(f"Item {key[0]} ({key[1]}, {key[2]}) not in cart", field="name")
            cart.items = remaining
            if remaining:
                cart.updated_at = datetime.now(timezone.utc)
                records[index] = cart.to_record()
            else:
                del records[index]
            await self.store.write(CARTS, records)

        logger.info(f"Removed {key[0]} from cart of {owner}")
        return cart
