import asyncio

import pytest

from carts import CartLedger, Owner
from database import CARTS, ORDERS
from errors import InsufficientStockError, NotFoundError, ValidationError
from orders import OrderProcessor
from schemas import OrderRequest

GUEST = Owner(guest_id="g1")


@pytest.fixture
def ledger(store, catalog):
    return CartLedger(store, catalog)


@pytest.fixture
def processor(store, images):
    return OrderProcessor(store, images)


def order_request(*lines, **overrides):
    body = {
        "fullName": "Nguyen Van A",
        "phone": "0900000000",
        "address": "1 Le Loi, District 1",
        "paymentMethod": "cod",
        "cartItems": [
            {"name": name, "brand": "Cartier", "material": "18K Gold", "quantity": quantity}
            for name, quantity in lines
        ],
        "totalPrice": 2700,
    }
    body.update(overrides)
    return OrderRequest.model_validate(body)


def test_order_scenario(catalog, ledger, processor, store, ring, png):
    product = asyncio.run(catalog.create_product(ring, png()))
    cart = asyncio.run(ledger.add_item(GUEST, "Ring A", "Cartier", "18K Gold", 3))
    assert cart.items[0].quantity == 3

    order = asyncio.run(processor.create_order(GUEST, order_request(("Ring A", 3))))

    assert asyncio.run(catalog.get_product(product.id)).stock == 2
    assert asyncio.run(store.read(CARTS)) == []
    stored = asyncio.run(store.read(ORDERS))
    assert len(stored) == 1
    assert stored[0]["id"] == order.id
    assert stored[0]["guestId"] == "g1"
    line = stored[0]["cartItems"][0]
    assert (line["name"], line["quantity"], line["productId"], line["unitPrice"]) == ("Ring A", 3, "NC0001", 900)
    assert stored[0]["createdAt"]

    with pytest.raises(InsufficientStockError):
        asyncio.run(ledger.add_item(GUEST, "Ring A", "Cartier", "18K Gold", 10))


def test_order_bumps_product_version(catalog, processor, ring, png):
    product = asyncio.run(catalog.create_product(ring, png()))
    asyncio.run(processor.create_order(GUEST, order_request(("Ring A", 1))))
    assert asyncio.run(catalog.get_product(product.id)).version == product.version + 1


def test_order_is_all_or_nothing(catalog, ledger, processor, store, ring, png):
    asyncio.run(catalog.create_product(ring, png(b"a")))
    asyncio.run(catalog.create_product({**ring, "name": "Ring B", "stock": 1}, png(b"b")))
    asyncio.run(ledger.add_item(GUEST, "Ring A", "Cartier", "18K Gold", 2))

    with pytest.raises(InsufficientStockError):
        asyncio.run(processor.create_order(GUEST, order_request(("Ring A", 2), ("Ring B", 2))))

    stocks = {p.name: p.stock for p in asyncio.run(catalog.list_products())}
    assert stocks == {"Ring A": 5, "Ring B": 1}
    assert asyncio.run(store.read(ORDERS)) == []
    assert len(asyncio.run(store.read(CARTS))) == 1


def test_repeated_lines_are_aggregated(catalog, processor, ring, png):
    asyncio.run(catalog.create_product(ring, png()))
    with pytest.raises(InsufficientStockError):
        asyncio.run(processor.create_order(GUEST, order_request(("Ring A", 3), ("Ring A", 3))))


def test_unknown_product(catalog, processor):
    with pytest.raises(NotFoundError):
        asyncio.run(processor.create_order(GUEST, order_request(("Ring Z", 1))))


def test_selling_out_removes_product_and_image(catalog, processor, images, ring, png):
    product = asyncio.run(catalog.create_product(ring, png()))

    asyncio.run(processor.create_order(GUEST, order_request(("Ring A", 5))))

    assert asyncio.run(catalog.list_products()) == []
    assert not images.path_for(product.image_url).exists()


def test_concurrent_orders_never_oversell(catalog, processor, ring, png):
    asyncio.run(catalog.create_product(ring, png()))

    async def scenario():
        return await asyncio.gather(
            processor.create_order(Owner(guest_id="a"), order_request(("Ring A", 3))),
            processor.create_order(Owner(guest_id="b"), order_request(("Ring A", 3))),
            return_exceptions=True,
        )

    outcomes = asyncio.run(scenario())

    assert sum(not isinstance(o, Exception) for o in outcomes) == 1
    assert sum(isinstance(o, InsufficientStockError) for o in outcomes) == 1
    assert asyncio.run(catalog.list_products())[0].stock == 2


def test_card_payment_keeps_only_safe_details(catalog, processor, ring, png):
    asyncio.run(catalog.create_product(ring, png()))
    details = {"cardNumber": "4111 1111 1111 1234", "cardHolder": "NGUYEN VAN A", "expiryDate": "12/28", "cvv": "123"}

    order = asyncio.run(
        processor.create_order(GUEST, order_request(("Ring A", 1), paymentMethod="card", paymentDetails=details))
    )

    assert order.payment_details == {"cardHolder": "NGUYEN VAN A", "expiryDate": "12/28", "cardLast4": "1234"}


def test_card_payment_requires_card_fields(processor):
    details = {"cardNumber": "4111111111111234", "cardHolder": "A", "expiryDate": "12/28"}
    with pytest.raises(ValidationError) as excinfo:
        asyncio.run(
            processor.create_order(GUEST, order_request(("Ring A", 1), paymentMethod="card", paymentDetails=details))
        )
    assert excinfo.value.field == "cvv"


@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"fullName": ""}, "fullName"),
        ({"phone": None}, "phone"),
        ({"address": "  "}, "address"),
        ({"paymentMethod": "crypto"}, "paymentMethod"),
        ({"totalPrice": 0}, "totalPrice"),
        ({"totalPrice": "-1"}, "totalPrice"),
        ({"totalPrice": "1e400"}, "totalPrice"),
        ({"cartItems": []}, "cartItems"),
        ({"cartItems": [{"name": "Ring A", "brand": "Cartier", "material": "18K Gold", "quantity": 0}]}, "quantity"),
        ({"cartItems": [{"name": "Ring A", "brand": "Cartier", "quantity": 1}]}, "material"),
    ],
)
def test_order_pre_checks(processor, store, overrides, field):
    with pytest.raises(ValidationError) as excinfo:
        asyncio.run(processor.create_order(GUEST, order_request(("Ring A", 1), **overrides)))
    assert excinfo.value.field == field
    assert asyncio.run(store.read(ORDERS)) == []
