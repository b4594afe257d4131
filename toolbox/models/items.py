"""Модели CRUD API товаров."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel


def utc_timestamp() -> str:
    """ISO-8601 в UTC с миллисекундами и суффиксом `Z`."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class Item(BaseModel):
    id: int
    name: str
    description: str
    category: str
    price: float
    createdAt: str
    updatedAt: Optional[str] = None

    def as_api_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ItemDraft(BaseModel):
    """Проверенные и нормализованные поля для создания или обновления товара."""

    name: str
    description: str
    category: str
    price: float


class ItemFilters(BaseModel):
    category: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    search: Optional[str] = None

    def matches(self, item: Item) -> bool:
        if self.category and item.category.lower() != self.category.lower():
            return False
        if self.min_price is not None and item.price < self.min_price:
            return False
        if self.max_price is not None and item.price > self.max_price:
            return False
        if self.search:
            needle = self.search.lower()
            if needle not in item.name.lower() and needle not in item.description.lower():
                return False
        return True


def _is_blank(value: Any) -> bool:
    return not isinstance(value, str) or not value.strip()


def _parse_price(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        price = float(value)
    elif isinstance(value, str):
        try:
            price = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if price != price or price < 0:
        return None
    return price


def validate_item_payload(payload: Dict[str, Any]) -> Tuple[Optional[ItemDraft], List[str]]:
    """Возвращает (черновик, []) или (None, список ошибок) в порядке полей."""
    errors: List[str] = []
    if _is_blank(payload.get("name")):
        errors.append("Name is required")
    if _is_blank(payload.get("description")):
        errors.append("Description is required")
    if _is_blank(payload.get("category")):
        errors.append("Category is required")
    price = _parse_price(payload.get("price"))
    if price is None:
        errors.append("Price must be a valid positive number")
    if errors:
        return None, errors
    draft = ItemDraft(
        name=payload["name"].strip(),
        description=payload["description"].strip(),
        category=payload["category"].strip(),
        price=price,
    )
    return draft, []


__all__ = [
    "Item",
    "ItemDraft",
    "ItemFilters",
    "utc_timestamp",
    "validate_item_payload",
]
