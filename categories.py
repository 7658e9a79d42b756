from dataclasses import dataclass
from typing import Optional

from rapidfuzz.distance import Levenshtein

from models import TransactionType


@dataclass(frozen=True)
class CategoryRange:
    name: str
    min_amount: int
    max_amount: int


DEFAULT_CATEGORIES: dict[TransactionType, tuple[CategoryRange, ...]] = {
    TransactionType.income: (
        CategoryRange("salary", 5000, 8000),
        CategoryRange("freelance", 1000, 3000),
        CategoryRange("investments", 500, 2000),
        CategoryRange("other-income", 100, 1000),
    ),
    TransactionType.expense: (
        CategoryRange("housing", 1000, 2000),
        CategoryRange("transportation", 100, 500),
        CategoryRange("groceries", 200, 600),
        CategoryRange("utilities", 100, 300),
        CategoryRange("entertainment", 50, 200),
        CategoryRange("food", 50, 150),
        CategoryRange("shopping", 100, 500),
        CategoryRange("healthcare", 100, 1000),
        CategoryRange("education", 200, 1000),
        CategoryRange("travel", 500, 2000),
    ),
}

FALLBACK_EXPENSE_CATEGORY = "other-expense"
MAX_CATEGORY_DISTANCE = 2


def category_names(txn_type: TransactionType) -> list[str]:
    return [item.name for item in DEFAULT_CATEGORIES[txn_type]]


def match_category(
    raw: Optional[str],
    txn_type: TransactionType = TransactionType.expense,
) -> str:
    """Map a free-form category onto a known one, tolerating small typos."""
    fallback = (
        FALLBACK_EXPENSE_CATEGORY
        if txn_type == TransactionType.expense
        else "other-income"
    )
    cleaned = (raw or "").strip().lower()
    if not cleaned:
        return fallback

    names = category_names(txn_type)
    if cleaned in names:
        return cleaned

    best_name: Optional[str] = None
    best_distance: Optional[int] = None
    for name in names:
        dist = int(Levenshtein.distance(cleaned, name))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best_name = name
    if best_name is not None and best_distance <= MAX_CATEGORY_DISTANCE:
        return best_name
    return fallback
