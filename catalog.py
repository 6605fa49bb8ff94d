"""
Product catalog: validation, identity, uniqueness and optimistic versioning.

Every write decision is made against the records re-read after the
products lock is taken; the unlocked reads here are snapshots only.
"""

from __future__ import annotations
import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from pydantic import ValidationError as SchemaError

from database import PRODUCTS, RecordStore, Records
from errors import (
    ConflictError,
    CorruptionError,
    IdentityExhaustedError,
    NotFoundError,
    ValidationError,
    VersionConflictError,
)
from images import ImageStore, ImageUpload, StoredImage
from schemas import Product
from validators import parse_int, parse_optional_price, parse_price, require_choice, require_text

logger = logging.getLogger(__name__)

ALLOWED_BRANDS = ["Cartier", "Bvlgari", "Van Cleef & Arpels", "Chrome Hearts", "GKH Jewelry"]
ALLOWED_TYPES = ["Nhẫn", "Dây chuyền", "Bông tai", "Lắc tay", "Vòng cổ"]
ALLOWED_MATERIALS = ["18K Gold", "14K Gold", "10K Gold", "White Gold", "Rose Gold", "Silver 925", "Platinum"]

ID_DIGITS = 4
MAX_ID_ATTEMPTS = 5

ProductKey = tuple[str, str, str]


def validate_product_fields(raw: dict[str, Any], partial: bool = False) -> dict[str, Any]:
    """Normalize product input; with partial=True only the supplied (non-None) fields are checked."""
    checks = {
        "name": lambda v: require_text(v, "name"),
        "brand": lambda v: require_choice(v, ALLOWED_BRANDS, "brand"),
        "type": lambda v: require_choice(v, ALLOWED_TYPES, "type"),
        "material": lambda v: require_choice(v, ALLOWED_MATERIALS, "material"),
        "stock": lambda v: parse_int(v, "stock"),
        "originalPrice": lambda v: parse_price(v, "originalPrice"),
        "salePrice": lambda v: parse_optional_price(v, "salePrice"),
    }
    clean: dict[str, Any] = {}
    for field, check in checks.items():
        value = raw.get(field)
        if value is None and (partial or field == "salePrice"):
            continue
        clean[field] = check(value)
    if not partial:
        clean.setdefault("salePrice", 0.0)
    return clean


def id_prefix(product_type: str, brand: str) -> str:
    return f"{product_type[0]}{brand[0]}".upper()


def next_product_id(prefix: str, taken: Iterable[str]) -> str:
    """Next sequential code for prefix: max numeric suffix + 1, zero padded."""
    taken = set(taken)
    pattern = re.compile(re.escape(prefix) + r"([0-9]+)")
    suffixes = [int(m.group(1)) for m in map(pattern.fullmatch, taken) if m]
    candidate = max(suffixes, default=0) + 1
    for _ in range(MAX_ID_ATTEMPTS):
        if candidate >= 10 ** ID_DIGITS:
            break
        product_id = f"{prefix}{candidate:0{ID_DIGITS}d}"
        if product_id not in taken:
            return product_id
        candidate += 1
    raise IdentityExhaustedError(f"No free product code left for prefix {prefix}")


def to_product(record: dict[str, Any]) -> Product:
    try:
        return Product.model_validate(record)
    except SchemaError as e:
        logger.error(f"Malformed product record {record.get('id')!r}: {e}")
        raise CorruptionError("Stored products data is corrupted") from e


def record_key(record: dict[str, Any]) -> ProductKey:
    return (record.get("name"), record.get("brand"), record.get("material"))


def find_index(records: Records, product_id: str) -> int:
    for index, record in enumerate(records):
        if record.get("id") == product_id:
            return index
    raise NotFoundError(f"Product {product_id} not found", field="id")


def find_by_key(records: Records, key: ProductKey) -> Optional[Product]:
    for record in records:
        if record_key(record) == key:
            return to_product(record)
    return None


def _describe(key: ProductKey) -> str:
    name, brand, material = key
    return f"{name} ({brand}, {material})"


@dataclass
class UpdateResult:
    id: str
    product: Optional[Product] = None
    deleted: bool = False


class Catalog:
    def __init__(self, store: RecordStore, images: ImageStore):
        self.store = store
        self.images = images

    async def list_products(self) -> list[Product]:
        return [to_product(r) for r in await self.store.read(PRODUCTS)]

    async def get_product(self, product_id: str) -> Product:
        records = await self.store.read(PRODUCTS)
        return to_product(records[find_index(records, product_id)])

    async def find(self, name: str, brand: str, material: str) -> Optional[Product]:
        return find_by_key(await self.store.read(PRODUCTS), (name, brand, material))

    async def _save_image(self, image: ImageUpload) -> StoredImage:
        return await asyncio.to_thread(self.images.save, image)

    async def create_product(self, fields: dict[str, Any], image: Optional[ImageUpload]) -> Product:
        data = validate_product_fields(fields)
        if image is None:
            raise ValidationError("A jpg or png image file is required", field="image")
        self.images.validate(image)
        key = (data["name"], data["brand"], data["material"])
        logger.info(f"Creating product {_describe(key)}")

        async with self.store.locked(PRODUCTS):
            records = await self.store.read(PRODUCTS)
            if any(record_key(r) == key for r in records):
                raise ConflictError(f"Product {_describe(key)} already exists", field="name")
            product_id = next_product_id(id_prefix(data["type"], data["brand"]), (r.get("id") for r in records))
            stored = await self._save_image(image)
            product = Product.model_validate({**data, "id": product_id, "imageUrl": stored.url, "version": 0})
            try:
                await self.store.write(PRODUCTS, records + [product.to_record()])
            except Exception:
                if stored.created:
                    self.images.discard(stored.url, records)
                raise

        logger.info(f"Product {product.id} created")
        return product

    async def update_product(
        self,
        product_id: str,
        fields: dict[str, Any],
        expected_version: Optional[int] = None,
        image: Optional[ImageUpload] = None,
    ) -> UpdateResult:
        changes = validate_product_fields(fields, partial=True)
        if image is not None:
            self.images.validate(image)
        if not changes and image is None:
            raise ValidationError("No valid fields to update")
        logger.info(f"Updating product {product_id}: {sorted(changes)}")

        async with self.store.locked(PRODUCTS):
            records = await self.store.read(PRODUCTS)
            index = find_index(records, product_id)
            current = to_product(records[index])
            if expected_version is not None and expected_version != current.version:
                raise VersionConflictError(
                    f"Product {product_id} was modified by someone else "
                    f"(expected version {expected_version}, current {current.version})",
                    current_version=current.version,
                )
            others = records[:index] + records[index + 1:]
            merged = {**current.to_record(), **changes, "version": current.version + 1}
            updated = Product.model_validate(merged)
            if updated.key != current.key and any(record_key(r) == updated.key for r in others):
                raise ConflictError(f"Product {_describe(updated.key)} already exists", field="name")

            if updated.stock == 0:
                await self.store.write(PRODUCTS, others)
                self.images.discard(current.image_url, others)
                logger.info(f"Product {product_id} deleted due to zero stock")
                return UpdateResult(id=product_id, deleted=True)

            stored = None
            if image is not None:
                stored = await self._save_image(image)
                updated = updated.model_copy(update={"image_url": stored.url})
            new_records = others[:index] + [updated.to_record()] + others[index:]
            try:
                await self.store.write(PRODUCTS, new_records)
            except Exception:
                if stored is not None and stored.created:
                    self.images.discard(stored.url, records)
                raise
            if stored is not None and stored.url != current.image_url:
                self.images.discard(current.image_url, new_records)

        logger.info(f"Product {product_id} updated to version {updated.version}")
        return UpdateResult(id=product_id, product=updated)

    async def delete_product(self, product_id: str) -> Product:
        logger.info(f"Deleting product {product_id}")
        async with self.store.locked(PRODUCTS):
            records = await self.store.read(PRODUCTS)
            removed = to_product(records.pop(find_index(records, product_id)))
            await self.store.write(PRODUCTS, records)
            self.images.discard(removed.image_url, records)
        logger.info(f"Product {product_id} deleted")
        return removed

    async def import_products(self, rows: list[tuple[int, dict[str, Any]]]) -> list[Product]:
        """Insert a batch of (row number, fields) all-or-nothing."""
        if not rows:
            raise ValidationError("No rows to import")
        batch = []
        for row_number, fields in rows:
            try:
                data = validate_product_fields(fields)
                data["imageUrl"] = require_text(fields.get("imageUrl"), "image")
            except ValidationError as e:
                raise ValidationError(f"Row {row_number}: {e.message}", field=e.field) from None
            batch.append((row_number, data))
        logger.info(f"Importing {len(batch)} products")

        async with self.store.locked(PRODUCTS):
            records = await self.store.read(PRODUCTS)
            keys = {record_key(r) for r in records}
            taken = {r.get("id") for r in records}
            created = []
            for row_number, data in batch:
                key = (data["name"], data["brand"], data["material"])
                if key in keys:
                    raise ConflictError(f"Row {row_number}: product {_describe(key)} already exists", field="name")
                keys.add(key)
                product_id = next_product_id(id_prefix(data["type"], data["brand"]), taken)
                taken.add(product_id)
                created.append(Product.model_validate({**data, "id": product_id, "version": 0}))
            await self.store.write(PRODUCTS, records + [p.to_record() for p in created])

        logger.info(f"Imported {len(created)} products")
        return created
