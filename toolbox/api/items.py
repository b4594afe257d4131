"""CRUD API товаров поверх хранилища в памяти."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from toolbox.models.items import Item, ItemDraft, ItemFilters, utc_timestamp, validate_item_payload

logger = logging.getLogger("toolbox.api.items")

router = APIRouter(prefix="/api/items")


def _seed_items() -> List[Item]:
    created_at = utc_timestamp()
    return [
        Item(id=1, name="Sample Item 1", description="This is a sample item", category="electronics",
             price=99.99, createdAt=created_at),
        Item(id=2, name="Sample Item 2", description="Another sample item", category="books",
             price=19.99, createdAt=created_at),
        Item(id=3, name="Sample Item 3", description="Yet another sample item", category="clothing",
             price=49.99, createdAt=created_at),
    ]


class ItemStore:
    """Список товаров с автоинкрементом id. Синхронные маршруты идут из пула потоков, отсюда lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: List[Item] = []
        self._next_id = 1
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._items = _seed_items()
            self._next_id = len(self._items) + 1

    def query(self, filters: ItemFilters) -> List[Item]:
        with self._lock:
            return [item for item in self._items if filters.matches(item)]

    def get(self, item_id: int) -> Optional[Item]:
        with self._lock:
            return next((item for item in self._items if item.id == item_id), None)

    def create(self, draft: ItemDraft) -> Item:
        now = utc_timestamp()
        with self._lock:
            item = Item(id=self._next_id, createdAt=now, updatedAt=now, **draft.model_dump())
            self._next_id += 1
            self._items.append(item)
        return item

    def update(self, item_id: int, draft: ItemDraft) -> Optional[Item]:
        with self._lock:
            for index, item in enumerate(self._items):
                if item.id == item_id:
                    updated = item.model_copy(update={**draft.model_dump(), "updatedAt": utc_timestamp()})
                    self._items[index] = updated
                    return updated
        return None

    def delete(self, item_id: int) -> Optional[Item]:
        with self._lock:
            for index, item in enumerate(self._items):
                if item.id == item_id:
                    return self._items.pop(index)
        return None


STORE = ItemStore()


def _not_found() -> JSONResponse:
    return JSONResponse(status_code=404, content={"success": False, "message": "Item not found"})


def _validation_failed(errors: List[str]) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Validation failed", "errors": errors},
    )


def _parse_id(raw: str) -> Optional[int]:
    # Дробный id (`1.5`) не усекается до целого: такого товара нет.
    try:
        return int(raw)
    except ValueError:
        return None


def _parse_bound(raw: Optional[str]) -> Optional[float]:
    if raw is None or not raw.strip():
        return None
    return float(raw)


async def _read_body(request: Request) -> Dict[str, Any]:
    """Тело запроса как словарь: JSON или HTML-форма (urlencoded/multipart)."""
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    if content_type in ("application/x-www-form-urlencoded", "multipart/form-data"):
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}
    try:
        payload = await request.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


@router.get("")
def list_items(
    category: Optional[str] = None,
    minPrice: Optional[str] = None,
    maxPrice: Optional[str] = None,
    search: Optional[str] = None,
):
    try:
        filters = ItemFilters(
            category=category,
            min_price=_parse_bound(minPrice),
            max_price=_parse_bound(maxPrice),
            search=search,
        )
    except ValueError:
        return _validation_failed(["minPrice and maxPrice must be numbers"])
    items = STORE.query(filters)
    return {"success": True, "count": len(items), "data": [item.as_api_dict() for item in items]}


@router.get("/{item_id}")
def get_item(item_id: str):
    parsed = _parse_id(item_id)
    item = STORE.get(parsed) if parsed is not None else None
    if item is None:
        return _not_found()
    return {"success": True, "data": item.as_api_dict()}


@router.post("")
async def create_item(request: Request):
    draft, errors = validate_item_payload(await _read_body(request))
    if draft is None:
        return _validation_failed(errors)
    item = STORE.create(draft)
    logger.info("Item %s created", item.id)
    return JSONResponse(
        status_code=201,
        content={"success": True, "message": "Item created successfully", "data": item.as_api_dict()},
    )


@router.put("/{item_id}")
async def update_item(item_id: str, request: Request):
    parsed = _parse_id(item_id)
    if parsed is None or STORE.get(parsed) is None:
        return _not_found()
    draft, errors = validate_item_payload(await _read_body(request))
    if draft is None:
        return _validation_failed(errors)
    item = STORE.update(parsed, draft)
    if item is None:
        return _not_found()
    return {"success": True, "message": "Item updated successfully", "data": item.as_api_dict()}


@router.delete("/{item_id}")
def delete_item(item_id: str):
    parsed = _parse_id(item_id)
    item = STORE.delete(parsed) if parsed is not None else None
    if item is None:
        return _not_found()
    logger.info("Item %s deleted", item.id)
    return {"success": True, "message": "Item deleted successfully", "data": item.as_api_dict()}


__all__ = ["ItemStore", "STORE", "router"]
