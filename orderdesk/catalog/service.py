import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..common.database import Database
from ..common.errors import (
    CategoryNotFound,
    DuplicateCategory,
    InvalidRequest,
    ProductNotFound,
    translate_storage_error,
)
from .accessor import CategoryAccessor, ProductAccessor
from .events import StockPublisher
from .model import Category, Product

_logger = logging.getLogger(__name__)

UNSET: Any = object()


def category_to_dict(category: Category) -> Dict[str, Any]:
    return {"id": category.id, "name": category.name, "description": category.description}


def product_to_dict(product: Product) -> Dict[str, Any]:
    return {
        "id": product.id,
        "name": product.name,
        "description": product.description,
        "price": str(product.price),
        "stock": product.stock,
        "category_id": product.category_id,
    }


def _clean_name(name: Optional[str], what: str) -> str:
    if name is None or not str(name).strip():
        raise InvalidRequest(f"{what} name must not be empty")
    return str(name).strip()


def _clean_price(price: Any) -> Decimal:
    try:
        value = Decimal(str(price))
    except (InvalidOperation, ValueError):
        raise InvalidRequest(f"price must be a number, got {price!r}") from None
    if not value.is_finite() or value < 0:
        raise InvalidRequest("price must be zero or greater")
    return value.quantize(Decimal("0.01"))


def _clean_stock(stock: Any) -> int:
    if isinstance(stock, bool) or not isinstance(stock, int):
        raise InvalidRequest(f"stock must be an integer, got {stock!r}")
    if stock < 0:
        raise InvalidRequest("stock must be zero or greater")
    return stock


class CatalogService:
    """Validated category and product operations, one transaction per call."""

    def __init__(
        self,
        database: Database,
        publisher: Optional[StockPublisher] = None,
        categories: Optional[CategoryAccessor] = None,
        products: Optional[ProductAccessor] = None,
    ) -> None:
        self._database = database
        self._publisher = publisher or StockPublisher()
        self._categories = categories or CategoryAccessor()
        self._products = products or ProductAccessor()

    # Categories

    async def create_category(self, name: str, description: Optional[str] = None) -> Category:
        name = _clean_name(name, "category")
        try:
            async with self._database.unit_of_work() as session:
                if await self._categories.name_taken(session, name):
                    raise DuplicateCategory(name)
                category = await self._categories.create(session, name, description)
        except SQLAlchemyError as exc:
            raise translate_storage_error(exc) from exc
        _logger.info("Category created | category_id=%s name=%s", category.id, name)
        return category

    async def get_category(self, category_id: int) -> Category:
        try:
            async with self._database.unit_of_work() as session:
                category = await self._categories.get(session, category_id)
        except SQLAlchemyError as exc:
            raise translate_storage_error(exc) from exc
        if category is None:
            raise CategoryNotFound(category_id)
        return category

    async def list_categories(self) -> List[Category]:
        try:
            async with self._database.unit_of_work() as session:
                return await self._categories.list(session)
        except SQLAlchemyError as exc:
            raise translate_storage_error(exc) from exc

    async def update_category(self, category_id: int, name: Any = UNSET, description: Any = UNSET) -> Category:
        values: Dict[str, Any] = {}
        if name is not UNSET:
            values["name"] = _clean_name(name, "category")
        if description is not UNSET:
            values["description"] = description
        try:
            async with self._database.unit_of_work() as session:
                if "name" in values and await self._categories.name_taken(
                    session, values["name"], exclude_id=category_id
                ):
                    raise DuplicateCategory(values["name"])
                if values:
                    updated = await self._categories.update(session, category_id, **values)
                else:
                    updated = int(await self._categories.exists(session, category_id))
                if not updated:
                    raise CategoryNotFound(category_id)
                category = await self._categories.get(session, category_id)
        except SQLAlchemyError as exc:
            raise translate_storage_error(exc) from exc
        _logger.info("Category updated | category_id=%s fields=%s", category_id, sorted(values))
        return category

    async def delete_category(self, category_id: int) -> None:
        try:
            async with self._database.unit_of_work() as session:
                if not await self._categories.delete(session, category_id):
                    raise CategoryNotFound(category_id)
        except SQLAlchemyError as exc:
            raise translate_storage_error(exc) from exc
        _logger.info("Category deleted | category_id=%s", category_id)

    # Products

    async def create_product(
        self,
        name: str,
        price: Any,
        stock: Any,
        description: Optional[str] = None,
        category_id: Optional[int] = None,
    ) -> Product:
        name = _clean_name(name, "product")
        price = _clean_price(price)
        stock = _clean_stock(stock)
        try:
            async with self._database.unit_of_work() as session:
                if category_id is not None and not await self._categories.exists(session, category_id):
                    raise CategoryNotFound(category_id)
                product = await self._products.create(
                    session, name, price, stock, description=description, category_id=category_id
                )
        except SQLAlchemyError as exc:
            raise translate_storage_error(exc) from exc
        _logger.info("Product created | product_id=%s name=%s stock=%s", product.id, name, stock)
        return product

    async def get_product(self, product_id: int) -> Product:
        try:
            async with self._database.unit_of_work() as session:
                product = await self._products.get(session, product_id)
        except SQLAlchemyError as exc:
            raise translate_storage_error(exc) from exc
        if product is None:
            raise ProductNotFound(product_id)
        return product

    async def list_products(self, category_id: Optional[int] = None) -> List[Product]:
        try:
            async with self._database.unit_of_work() as session:
                return await self._products.list(session, category_id=category_id)
        except SQLAlchemyError as exc:
            raise translate_storage_error(exc) from exc

    async def update_product(
        self,
        product_id: int,
        name: Any = UNSET,
        price: Any = UNSET,
        stock: Any = UNSET,
        description: Any = UNSET,
        category_id: Any = UNSET,
    ) -> Product:
        values: Dict[str, Any] = {}
        if name is not UNSET:
            values["name"] = _clean_name(name, "product")
        if price is not UNSET:
            values["price"] = _clean_price(price)
        if stock is not UNSET:
            values["stock"] = _clean_stock(stock)
        if description is not UNSET:
            values["description"] = description
        if category_id is not UNSET:
            values["category_id"] = category_id
        try:
            async with self._database.unit_of_work() as session:
                if values.get("category_id") is not None and not await self._categories.exists(
                    session, values["category_id"]
                ):
                    raise CategoryNotFound(values["category_id"])
                if values and not await self._products.update(session, product_id, **values):
                    raise ProductNotFound(product_id)
                product = await self._products.get(session, product_id)
                if product is None:
                    raise ProductNotFound(product_id)
        except SQLAlchemyError as exc:
            raise translate_storage_error(exc) from exc
        _logger.info("Product updated | product_id=%s fields=%s", product_id, sorted(values))
        if "stock" in values:
            await self._publisher.publish(product_id, product.stock)
        return product

    async def delete_product(self, product_id: int) -> None:
        try:
            async with self._database.unit_of_work() as session:
                if not await self._products.delete(session, product_id):
                    raise ProductNotFound(product_id)
        except SQLAlchemyError as exc:
            raise translate_storage_error(exc) from exc
        _logger.info("Product deleted | product_id=%s", product_id)

    async def set_stock(self, product_id: int, new_stock: Any) -> int:
        new_stock = _clean_stock(new_stock)
        try:
            async with self._database.unit_of_work() as session:
                if not await self._products.set_stock(session, product_id, new_stock):
                    raise ProductNotFound(product_id)
        except SQLAlchemyError as exc:
            raise translate_storage_error(exc) from exc
        _logger.info("DB set stock | product_id=%s new_stock=%s", product_id, new_stock)
        await self._publisher.publish(product_id, new_stock)
        return new_stock
