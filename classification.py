"""Map raw provider category labels onto the fixed budget categories.

The engine only depends on the ``Classifier`` protocol, so a different
provider's mapping can be dropped in without touching aggregation code.
"""

import logging
from typing import Optional, Protocol

from rapidfuzz.distance import Levenshtein

from errors import InvalidRequestError
from models import Category


logger = logging.getLogger(__name__)


PLAID_PRIMARY_CATEGORIES: dict[str, Category] = {
    "FOOD_AND_DRINK": Category.food_entertainment,
    "ENTERTAINMENT": Category.food_entertainment,
    "GENERAL_MERCHANDISE": Category.shopping,
    "HOME_IMPROVEMENT": Category.shopping,
    "HEALTHCARE": Category.health_wellness,
    "PERSONAL_CARE": Category.health_wellness,
    "RENT_AND_UTILITIES": Category.essentials,
    "TRANSPORTATION": Category.essentials,
    "GENERAL_SERVICES": Category.essentials,
    "TRAVEL": Category.essentials,
    "BANK_FEES": Category.other,
    "LOAN_PAYMENTS": Category.other,
    "TRANSFER_IN": Category.other,
    "TRANSFER_OUT": Category.other,
    "INCOME": Category.other,
    "OTHER": Category.other,
}

_BY_NAME: dict[str, Category] = {c.value.lower(): c for c in Category}


class Classifier(Protocol):
    def classify(self, raw_label: Optional[str]) -> Category: ...


class PlaidCategoryClassifier:
    def __init__(self, mapping: Optional[dict[str, Category]] = None) -> None:
        self.mapping = mapping if mapping is not None else PLAID_PRIMARY_CATEGORIES

    def classify(self, raw_label: Optional[str]) -> Category:
        if not isinstance(raw_label, str):
            return Category.other
        label = raw_label.strip()
        if not label:
            return Category.other
        mapped = self.mapping.get(label.upper())
        if mapped is not None:
            return mapped
        return _BY_NAME.get(label.lower(), Category.other)


default_classifier = PlaidCategoryClassifier()


def classify(raw_label: Optional[str]) -> Category:
    return default_classifier.classify(raw_label)


def match_category_name(label: Optional[str]) -> Category:
    """
    Resolve a user-typed category name. Exact (case-insensitive) names win,
    otherwise a single candidate within one edit is accepted. Anything else
    falls back to Other, the same as provider labels.
    """
    if isinstance(label, Category):
        return label
    name = (label or "").strip().lower()
    if not name:
        raise InvalidRequestError("Missing category")
    exact = _BY_NAME.get(name)
    if exact:
        return exact

    best_distance: Optional[int] = None
    best: list[Category] = []
    for candidate_name, category in _BY_NAME.items():
        dist = int(Levenshtein.distance(name, candidate_name))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = [category]
        elif dist == best_distance:
            best.append(category)

    if best_distance is not None and best_distance <= 1 and len(best) == 1:
        return best[0]
    logger.info(f"category_fallback: label={label!r} category={Category.other.value}")
    return Category.other
