from decimal import Decimal, InvalidOperation
from typing import List
from uuid import UUID

from sqlalchemy.orm import Session

from sari.models import Product


def search_terms(query: str) -> List[str]:
    return [term for term in (query or "").lower().split() if term]


def search_products(db: Session, merchant_id: UUID, query: str, limit: int = 5) -> List[Product]:
    """Products whose name, description or category contains any query term.

    Matching is case-insensitive substring search. Results are ordered by
    product name and capped at `limit`.
    """
    terms = search_terms(query)
    if not terms:
        return []

    products = db.query(Product).filter(Product.merchant_id == merchant_id).order_by(Product.name).all()
    matched = []
    for product in products:
        haystack = f"{product.name} {product.description or ''} {product.category or ''}".lower()
        if any(term in haystack for term in terms):
            matched.append(product)
            if len(matched) >= limit:
                break
    return matched


def format_price(value) -> str:
    try:
        price = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        return str(value)
    if price == price.to_integral_value():
        return str(int(price))
    return f"{price:.2f}"
