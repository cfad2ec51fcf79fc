"""Field-level parsing for raw import rows.

Raw rows arrive as mappings from whatever header text the operator's sheet
used to cell values that may be strings, numbers or native dates. These
helpers recognise the logical column behind a header and coerce cell values
into the types the ledger stores. Every parser returns ``None`` instead of
raising so callers can turn failures into row errors.
"""

from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, Mapping, Optional

from openpyxl.utils.datetime import from_excel

from .constants import ImportField
from .models import CENT


HEADER_ALIASES: Mapping[str, ImportField] = {
    "product": ImportField.PRODUCT,
    "produit": ImportField.PRODUCT,
    "article": ImportField.PRODUCT,
    "nom": ImportField.PRODUCT,
    "name": ImportField.PRODUCT,
    "item": ImportField.PRODUCT,
    "designation": ImportField.PRODUCT,
    "libelle": ImportField.PRODUCT,
    "category": ImportField.CATEGORY,
    "categorie": ImportField.CATEGORY,
    "type": ImportField.CATEGORY,
    "famille": ImportField.CATEGORY,
    "group": ImportField.CATEGORY,
    "groupe": ImportField.CATEGORY,
    "register": ImportField.REGISTER,
    "caisse": ImportField.REGISTER,
    "pos": ImportField.REGISTER,
    "till": ImportField.REGISTER,
    "checkout": ImportField.REGISTER,
    "date": ImportField.DATE,
    "jour": ImportField.DATE,
    "day": ImportField.DATE,
    "timestamp": ImportField.DATE,
    "seller": ImportField.SELLER,
    "vendeur": ImportField.SELLER,
    "employe": ImportField.SELLER,
    "employee": ImportField.SELLER,
    "cashier": ImportField.SELLER,
    "caissier": ImportField.SELLER,
    "user": ImportField.SELLER,
    "utilisateur": ImportField.SELLER,
    "quantity": ImportField.QUANTITY,
    "quantite": ImportField.QUANTITY,
    "qty": ImportField.QUANTITY,
    "qte": ImportField.QUANTITY,
    "stock": ImportField.QUANTITY,
    "nombre": ImportField.QUANTITY,
    "count": ImportField.QUANTITY,
    "amount": ImportField.TOTAL,
    "montant": ImportField.TOTAL,
    "total": ImportField.TOTAL,
    "prix": ImportField.TOTAL,
    "price": ImportField.TOTAL,
    "valeur": ImportField.TOTAL,
    "value": ImportField.TOTAL,
}

_CURRENCY = re.compile(r"[€$£¥₹\s]")
_SIGNED_AMOUNT = re.compile(r"([+-]?)([\d.,]+)([+-]?)")
_SERIAL = re.compile(r"^\d+(\.\d+)?$")
_DATE_FORMATS = (
    "%d/%m/%Y",
    "%d/%m/%Y %H:%M",
    "%d/%m/%Y %H:%M:%S",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%d/%m/%y",
)


def _fold(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"[^a-z0-9 ]", " ", stripped.lower())


def normalize_header(header: object) -> Optional[ImportField]:
    """Map a raw column header onto an :class:`ImportField`.

    The folded header is looked up as a whole first, then word by word, so
    ``"Nom du produit"`` and ``"Date de vente"`` are recognised. Unknown
    headers return ``None``.
    """

    folded = " ".join(_fold(str(header or "")).split())
    if not folded:
        return None
    squashed = folded.replace(" ", "")
    if squashed in HEADER_ALIASES:
        return HEADER_ALIASES[squashed]
    for word in folded.split():
        if word in HEADER_ALIASES:
            return HEADER_ALIASES[word]
    return None


def map_columns(headers: Iterable[object]) -> Dict[ImportField, str]:
    """Resolve which raw header feeds each logical field; first header wins."""

    mapping: Dict[ImportField, str] = {}
    for header in headers:
        field = normalize_header(header)
        if field is not None and field not in mapping:
            mapping[field] = str(header)
    return mapping


def parse_text(value: object) -> str:
    """Trim a cell and collapse inner whitespace; ``None`` becomes ``""``."""

    if value is None:
        return ""
    return " ".join(str(value).split())


def parse_date(value: object) -> Optional[datetime]:
    """Parse a day-first textual date, an ISO date or an Excel serial.

    Native ``datetime``/``date`` cells pass through as naive datetimes.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float, Decimal)):
        return _from_serial(float(value))

    text = str(value).strip()
    if not text:
        return None
    if _SERIAL.match(text):
        return _from_serial(float(text))
    for pattern in _DATE_FORMATS:
        try:
            return datetime.strptime(text, pattern)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text).replace(tzinfo=None)
    except ValueError:
        return None


def _from_serial(serial: float) -> Optional[datetime]:
    if serial <= 1:
        return None
    try:
        converted = from_excel(serial)
    except (OverflowError, ValueError):
        return None
    if isinstance(converted, datetime):
        return converted
    return None


def parse_amount(value: object) -> Optional[Decimal]:
    """Parse a locale formatted money amount, keeping its sign.

    Currency symbols and spaces are dropped. The sign may lead or trail the
    number; exponents are not accepted. When both ``,`` and ``.`` appear the
    rightmost one is the decimal separator; a lone ``,`` is a decimal
    separator unless it repeats. Amounts too large to hold in cents are
    ``None``.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return _in_cents_range(value)
    if isinstance(value, (int, float)):
        return _in_cents_range(Decimal(str(value)))

    match = _SIGNED_AMOUNT.fullmatch(_CURRENCY.sub("", str(value)))
    if match is None:
        return None
    leading, text, trailing = match.groups()
    if leading and trailing:
        return None
    negative = "-" in (leading, trailing)
    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif text.count(",") == 1:
        text = text.replace(",", ".")
    elif text.count(",") > 1:
        text = text.replace(",", "")
    elif text.count(".") > 1:
        text = text.replace(".", "")
    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None
    amount = _in_cents_range(amount)
    if amount is None:
        return None
    return -amount if negative else amount


def _in_cents_range(amount: Decimal) -> Optional[Decimal]:
    if not amount.is_finite():
        return None
    try:
        amount.quantize(CENT)
    except InvalidOperation:
        return None
    return amount


def parse_quantity(value: object) -> Optional[int]:
    """Parse a whole-number quantity; fractional or malformed input is ``None``."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    amount = parse_amount(value)
    if amount is None or amount != amount.to_integral_value():
        return None
    return int(amount)
