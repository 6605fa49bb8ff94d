import logging
from contextlib import asynccontextmanager
from typing import Optional, Union

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from auth import login, optional_user, require_admin
from carts import CartLedger, Owner
from catalog import Catalog
from config import Settings, settings as default_settings
from database import open_store
from errors import StoreError
from images import ImageStore, ImageUpload
from importer import read_workbook
from orders import OrderProcessor
from schemas import (
    Cart,
    CartItemRequest,
    ImportResult,
    LoginRequest,
    LoginResponse,
    Order,
    OrderRequest,
    Product,
    ProductDeleted,
)
from validators import parse_version

logger = logging.getLogger(__name__)


async def _upload(file: Optional[UploadFile]) -> Optional[ImageUpload]:
    if file is None or not file.filename:
        return None
    return ImageUpload(filename=file.filename, content_type=file.content_type, data=await file.read())


def get_catalog(request: Request) -> Catalog:
    return request.app.state.catalog


def get_carts(request: Request) -> CartLedger:
    return request.app.state.carts


def get_orders(request: Request) -> OrderProcessor:
    return request.app.state.orders


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or default_settings
    store = open_store(settings)
    images = ImageStore(settings.UPLOADS_DIR, settings.UPLOADS_URL, settings.MAX_IMAGE_BYTES)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Serving data from {settings.DATA_DIR}, uploads from {settings.UPLOADS_DIR}")
        yield
        logger.info("Shutting down")

    app = FastAPI(title="Jewelry Store API", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.catalog = Catalog(store, images)
    app.state.carts = CartLedger(store, app.state.catalog)
    app.state.orders = OrderProcessor(store, images)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.mount(settings.UPLOADS_URL, StaticFiles(directory=settings.UPLOADS_DIR), name="uploads")

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        error = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(part) for part in error.get("loc", ())[1:]) or None
        message = f"{field}: {error.get('msg', 'invalid value')}" if field else "Invalid request"
        return JSONResponse(status_code=400, content={"message": message, "field": field})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"{request.method} {request.url.path} crashed")
        return JSONResponse(status_code=500, content={"message": "Internal server error"})

    # Auth

    @app.post("/api/login", response_model=LoginResponse)
    async def login_route(payload: LoginRequest, request: Request):
        token = login(request.app.state.settings, payload.username, payload.password)
        return LoginResponse(success=True, token=token)

    # Products

    @app.get("/api/products", response_model=list[Product])
    async def list_products(catalog: Catalog = Depends(get_catalog)):
        return await catalog.list_products()

    @app.get("/api/products/{product_id}", response_model=Product)
    async def get_product(product_id: str, catalog: Catalog = Depends(get_catalog)):
        return await catalog.get_product(product_id)

    @app.post("/api/products", response_model=Product, status_code=201)
    async def create_product(
        name: Optional[str] = Form(None),
        brand: Optional[str] = Form(None),
        product_type: Optional[str] = Form(None, alias="type"),
        material: Optional[str] = Form(None),
        stock: Optional[str] = Form(None),
        original_price: Optional[str] = Form(None, alias="originalPrice"),
        sale_price: Optional[str] = Form(None, alias="salePrice"),
        image: Optional[UploadFile] = File(None),
        catalog: Catalog = Depends(get_catalog),
        _admin: str = Depends(require_admin),
    ):
        fields = {
            "name": name,
            "brand": brand,
            "type": product_type,
            "material": material,
            "stock": stock,
            "originalPrice": original_price,
            "salePrice": sale_price,
        }
        return await catalog.create_product(fields, await _upload(image))

    @app.patch("/api/products/{product_id}", response_model=Union[Product, ProductDeleted])
    async def update_product(
        product_id: str,
        name: Optional[str] = Form(None),
        brand: Optional[str] = Form(None),
        product_type: Optional[str] = Form(None, alias="type"),
        material: Optional[str] = Form(None),
        stock: Optional[str] = Form(None),
        original_price: Optional[str] = Form(None, alias="originalPrice"),
        sale_price: Optional[str] = Form(None, alias="salePrice"),
        expected_version: Optional[str] = Form(None, alias="expectedVersion"),
        image: Optional[UploadFile] = File(None),
        catalog: Catalog = Depends(get_catalog),
        _admin: str = Depends(require_admin),
    ):
        fields = {
            "name": name,
            "brand": brand,
            "type": product_type,
            "material": material,
            "stock": stock,
            "originalPrice": original_price,
            "salePrice": sale_price,
        }
        result = await catalog.update_product(
            product_id, fields, parse_version(expected_version), await _upload(image)
        )
        if result.deleted:
            return ProductDeleted(id=result.id, message="Product deleted due to zero stock")
        return result.product

    @app.delete("/api/products/{product_id}")
    async def delete_product(
        product_id: str,
        catalog: Catalog = Depends(get_catalog),
        _admin: str = Depends(require_admin),
    ):
        await catalog.delete_product(product_id)
        return {"message": "Product deleted successfully"}

    @app.post("/api/products/import", response_model=ImportResult, status_code=201)
    async def import_products(
        file: UploadFile = File(...),
        catalog: Catalog = Depends(get_catalog),
        _admin: str = Depends(require_admin),
    ):
        rows = read_workbook(await file.read())
        created = await catalog.import_products(rows)
        return ImportResult(imported=len(created), products=created)

    # Cart

    @app.get("/api/cart", response_model=Cart)
    async def get_cart(
        guest_id: Optional[str] = Query(None, alias="guestId"),
        user_id: Optional[str] = Depends(optional_user),
        carts: CartLedger = Depends(get_carts),
    ):
        return await carts.get_cart(Owner.resolve(user_id, guest_id))

    @app.post("/api/cart", response_model=Cart)
    async def add_to_cart(
        payload: CartItemRequest,
        user_id: Optional[str] = Depends(optional_user),
        carts: CartLedger = Depends(get_carts),
    ):
        owner = Owner.resolve(user_id, payload.guest_id)
        return await carts.add_item(owner, payload.name, payload.brand, payload.material, payload.quantity)

    @app.delete("/api/cart/items", response_model=Cart)
    async def remove_from_cart(
        name: Optional[str] = Query(None),
        brand: Optional[str] = Query(None),
        material: Optional[str] = Query(None),
        guest_id: Optional[str] = Query(None, alias="guestId"),
        user_id: Optional[str] = Depends(optional_user),
        carts: CartLedger = Depends(get_carts),
    ):
        return await carts.remove_item(Owner.resolve(user_id, guest_id), name, brand, material)

    # Orders

    @app.post("/api/orders", response_model=Order, status_code=201)
    async def create_order(
        payload: OrderRequest,
        user_id: Optional[str] = Depends(optional_user),
        orders: OrderProcessor = Depends(get_orders),
    ):
        return await orders.create_order(Owner.resolve(user_id, payload.guest_id), payload)

    @app.get("/api/orders", response_model=list[Order])
    async def list_orders(
        orders: OrderProcessor = Depends(get_orders),
        _admin: str = Depends(require_admin),
    ):
        return await orders.list_orders()

    return app


def run() -> None:
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(create_app(), host="0.0.0.0", port=default_settings.PORT)


if __name__ == "__main__":
    run()
