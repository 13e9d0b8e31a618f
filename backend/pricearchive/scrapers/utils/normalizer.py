"""Data normalization utilities for names, quantities and prices."""

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional


DEFAULT_UNIT = "buc"  # "bucată": sold per piece

_TWO_PLACES = Decimal("0.01")

# Trailing quantity + unit token, e.g. "Lapte 3.5% 1L", "Unt 200 g", "Apa 0,5l.",
# optionally a multipack count: "Apa plata 6x2l", "Bere 6 x 0,5 L"
_QUANTITY_UNIT_RE = re.compile(
    r"[\s,]*(?<![\d.x×])"
    r"(?:(?P<count>\d+)\s*[x×]\s*)?"
    r"(?P<qty>\d+(?:[.,]\d+)?)\s*(?P<unit>kg|mg|ml|cl|g|l|buc)\.?\s*$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class QuantityUnit:
    """Result of scanning a product description for a quantity token."""

    name: str
    quantity: Decimal
    unit: str
    matched: bool


def capitalize_first(text: Optional[str]) -> str:
    """Upper-case the first character, leaving the rest untouched.

    "milk bottle" -> "Milk bottle", "g" -> "G", "iPhone" -> "IPhone"
    """
    if not text:
        return ""
    text = text.strip()
    return text[:1].upper() + text[1:]


def extract_quantity_and_unit(text: str) -> QuantityUnit:
    """Split a trailing quantity+unit token off a product name.

    Args:
        text: Product name or description (e.g. "Smantana 20% 500g")

    Returns:
        QuantityUnit with the display name stripped of the token. A multipack
        token "6x2l" counts as the total quantity (12 l). When no
        token is present (or the quantity is zero) the product is assumed
        to be sold per piece: quantity 1, unit "buc", name unchanged.
    """
    text = (text or "").strip()
    match = _QUANTITY_UNIT_RE.search(text)
    if match:
        try:
            quantity = Decimal(match.group("qty").replace(",", "."))
            if match.group("count"):
                quantity *= int(match.group("count"))
        except InvalidOperation:
            quantity = Decimal(0)
        if quantity > 0:
            return QuantityUnit(
                name=text[: match.start()].strip(),
                quantity=quantity,
                unit=match.group("unit").lower(),
                matched=True,
            )
    return QuantityUnit(name=text, quantity=Decimal(1), unit=DEFAULT_UNIT, matched=False)


def unit_price(price: Decimal, quantity: Decimal) -> Decimal:
    """Price per unit rounded to 2 decimal places (half up).

    Raises:
        ValueError: If quantity is not positive
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive")
    return (Decimal(price) / Decimal(quantity)).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)


def parse_price(raw: Any) -> Optional[Decimal]:
    """Parse a price from a JSON number or a price string.

    Handles:
    - 12.5 -> 12.5
    - "12,50 lei" -> 12.50
    - "1.234,56 RON" -> 1234.56
    - "1,234.56" -> 1234.56

    Returns:
        Decimal price value, or None if parsing fails
    """
    if raw is None or isinstance(raw, bool):
        return None

    if isinstance(raw, (int, float, Decimal)):
        try:
            return Decimal(str(raw))
        except InvalidOperation:
            return None

    cleaned = re.sub(r"(?i)lei|ron", "", str(raw))
    cleaned = re.sub(r"[^\d.,]", "", cleaned)
    if not cleaned:
        return None

    # Whichever separator comes last is the decimal separator
    if "," in cleaned and "." in cleaned:
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        cleaned = cleaned.replace(",", ".")

    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None
