import asyncio

import pytest

from database import PRODUCTS
from errors import ConflictError, ValidationError
from importer import map_rows, read_workbook, row_to_fields

ROW_A = ["Ring A", "Cartier", "Nhẫn", 5, 1000, 900, "/uploads/ring-a.png", "18K Gold"]
ROW_B = ["Ring B", "Cartier", "Nhẫn", 2.0, "1500", None, "/uploads/ring-b.png", "Platinum"]


def test_row_to_fields_maps_by_position():
    fields = row_to_fields([" Ring A ", "Cartier", "Nhẫn", 5, 1000, 900, "/uploads/a.png"])
    assert fields == {
        "name": "Ring A",
        "brand": "Cartier",
        "type": "Nhẫn",
        "stock": 5,
        "originalPrice": 1000,
        "salePrice": 900,
        "imageUrl": "/uploads/a.png",
        "material": None,
    }


def test_map_rows_skips_blank_rows_and_keeps_sheet_numbers():
    rows = map_rows([ROW_A, [None, "", None], ROW_B])
    assert [number for number, _ in rows] == [2, 4]


def test_read_workbook_skips_header(xlsx):
    rows = read_workbook(xlsx([ROW_A, ROW_B]))
    assert [fields["name"] for _, fields in rows] == ["Ring A", "Ring B"]
    assert rows[0][0] == 2


def test_read_workbook_rejects_other_files():
    with pytest.raises(ValidationError):
        read_workbook(b"name,brand\nRing A,Cartier\n")


def test_import_inserts_batch_with_sequential_codes(catalog, xlsx):
    created = asyncio.run(catalog.import_products(read_workbook(xlsx([ROW_A, ROW_B]))))

    assert [p.id for p in created] == ["NC0001", "NC0002"]
    assert created[1].stock == 2
    assert created[1].sale_price == 0
    assert created[0].image_url == "/uploads/ring-a.png"
    assert len(asyncio.run(catalog.list_products())) == 2


def test_invalid_row_rejects_whole_batch(catalog, store, xlsx):
    bad = ["Ring C", "Tiffany", "Nhẫn", 1, 100, 0, "/uploads/c.png", "18K Gold"]

    with pytest.raises(ValidationError) as excinfo:
        asyncio.run(catalog.import_products(read_workbook(xlsx([ROW_A, bad, ROW_B]))))

    assert "Row 3" in excinfo.value.message
    assert excinfo.value.field == "brand"
    assert asyncio.run(store.read(PRODUCTS)) == []


def test_missing_image_cell_rejects_batch(catalog, xlsx):
    with pytest.raises(ValidationError) as excinfo:
        asyncio.run(catalog.import_products(read_workbook(xlsx([ROW_A[:6] + [None, "18K Gold"]]))))
    assert excinfo.value.field == "image"


def test_duplicate_rows_in_batch_conflict(catalog, store, xlsx):
    with pytest.raises(ConflictError):
        asyncio.run(catalog.import_products(read_workbook(xlsx([ROW_A, ROW_B, ROW_A]))))
    assert asyncio.run(store.read(PRODUCTS)) == []


def test_row_colliding_with_catalog_conflicts(catalog, store, ring, png, xlsx):
    asyncio.run(catalog.create_product(ring, png()))

    with pytest.raises(ConflictError):
        asyncio.run(catalog.import_products(read_workbook(xlsx([ROW_B, ROW_A]))))

    assert len(asyncio.run(store.read(PRODUCTS))) == 1


def test_empty_batch(catalog, xlsx):
    with pytest.raises(ValidationError):
        asyncio.run(catalog.import_products(read_workbook(xlsx([]))))
