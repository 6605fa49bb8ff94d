"""
Order placement: the one operation that moves products, carts and orders together.

Pre-checks run against an unlocked catalog snapshot so bad requests fail
before any lock is taken. The transaction then holds the products, carts
and orders locks at once, re-validates stock against freshly read
products and writes all three files before releasing.
"""

from __future__ import annotations
import logging
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError as SchemaError

from carts import Owner, find_cart
from catalog import find_by_key, record_key
from database import CARTS, ORDERS, PRODUCTS, RecordStore, Records
from errors import CorruptionError, InsufficientStockError, NotFoundError, ValidationError
from images import ImageStore
from schemas import Order, OrderItem, OrderRequest
from validators import is_blank, parse_int, parse_positive_amount, require_choice, require_text

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ["cod", "bank", "card"]
CARD_FIELDS = ["cardNumber", "cardHolder", "expiryDate", "cvv"]

LineKey = tuple[str, str, str]


def _payment_details(method: str, details: dict[str, Any]) -> dict[str, Any]:
    if method != "card":
        return {}
    for field in CARD_FIELDS:
        if is_blank(details.get(field)):
            raise ValidationError(f"{field} is required for card payments", field=field)
    digits = "".join(ch for ch in str(details["cardNumber"]) if ch.isdigit())
    if len(digits) < 12:
        raise ValidationError("cardNumber is invalid", field="cardNumber")
    # the full number and cvv are never persisted
    return {
        "cardHolder": str(details["cardHolder"]).strip(),
        "expiryDate": str(details["expiryDate"]).strip(),
        "cardLast4": digits[-4:],
    }


def _check_stock(records: Records, wanted: Counter) -> dict[LineKey, Any]:
    products = {}
    for key, quantity in wanted.items():
        product = find_by_key(records, key)
        if product is None:
            raise NotFoundError(f"Product {key[0]} ({key[1]}, {key[2]}) not found", field="cartItems")
        if product.stock < quantity:
            raise InsufficientStockError(
                f"Insufficient stock for {product.name}: {product.stock} available, {quantity} ordered",
                field="cartItems",
            )
        products[key] = product
    return products


class OrderProcessor:
    def __init__(self, store: RecordStore, images: ImageStore):
        self.store = store
        self.images = images

    async def list_orders(self) -> list[Order]:
        try:
            return [Order.model_validate(r) for r in await self.store.read(ORDERS)]
        except SchemaError as e:
            raise CorruptionError("Stored orders data is corrupted") from e

    async def create_order(self, owner: Owner, request: OrderRequest) -> Order:
        full_name = require_text(request.full_name, "fullName")
        phone = require_text(request.phone, "phone")
        address = require_text(request.address, "address")
        method = require_choice(request.payment_method, PAYMENT_METHODS, "paymentMethod")
        payment_details = _payment_details(method, request.payment_details)
        total_price = parse_positive_amount(request.total_price, "totalPrice")
        if not request.cart_items:
            raise ValidationError("Cart is empty", field="cartItems")

        lines: list[tuple[LineKey, int]] = []
        for line in request.cart_items:
            key = (
                require_text(line.name, "name"),
                require_text(line.brand, "brand"),
                require_text(line.material, "material"),
            )
            lines.append((key, parse_int(line.quantity, "quantity", minimum=1)))
        wanted: Counter = Counter()
        for key, quantity in lines:
            wanted[key] += quantity

        _check_stock(await self.store.read(PRODUCTS), wanted)
        logger.info(f"Placing order for {owner}: {len(lines)} line(s), total {total_price}")

        async with self.store.locked(PRODUCTS, CARTS, ORDERS):
            products = await self.store.read(PRODUCTS)
            snapshot = _check_stock(products, wanted)

            remaining = []
            sold_out = []
            for record in products:
                key = record_key(record)
                if key in wanted:
                    record = {
                        **record,
                        "stock": record["stock"] - wanted[key],
                        "version": record.get("version", 0) + 1,
                    }
                    if record["stock"] == 0:
                        sold_out.append(record)
                        continue
                remaining.append(record)

            carts = await self.store.read(CARTS)
            index = find_cart(carts, owner)
            if index >= 0:
                del carts[index]

            order = Order(
                id=uuid.uuid4().hex,
                **owner.fields(),
                full_name=full_name,
                phone=phone,
                address=address,
                payment_method=method,
                payment_details=payment_details,
                cart_items=[
                    OrderItem(
                        name=key[0],
                        brand=key[1],
                        material=key[2],
                        quantity=quantity,
                        product_id=snapshot[key].id,
                        unit_price=snapshot[key].unit_price,
                    )
                    for key, quantity in lines
                ],
                total_price=total_price,
                created_at=datetime.now(timezone.utc),
            )
            orders = await self.store.read(ORDERS)
            orders.append(order.to_record())

            await self.store.write_many({PRODUCTS: remaining, CARTS: carts, ORDERS: orders})

            for record in sold_out:
                logger.info(f"Product {record.get('id')} sold out and removed")
                self.images.discard(record.get("imageUrl"), remaining)

        logger.info(f"Order {order.id} recorded for {owner}")
        return order
