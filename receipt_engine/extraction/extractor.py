"""Pattern-based field extraction for receipts.

Derives typed fields from raw recognised text when a backend did not return
them natively. Each field has an ordered list of rules; the first rule that
matches wins and stamps the fixed confidence of its tier:

    anchored   - a label such as "Total" or "Receipt #" sits next to the value
    pattern    - the value has a recognisable shape but no label
    positional - a layout guess (first line is the vendor, largest amount...)

Native backend fields always take precedence over derived ones
(``merge_fields``). Nothing in here raises on odd input; an unmatched field
is simply absent.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterable, Mapping

from receipt_engine.ocr.base import FieldValue, LineItem, RecognitionResult

logger = logging.getLogger(__name__)

ANCHORED_CONFIDENCE = 0.85
PATTERN_CONFIDENCE = 0.75
POSITIONAL_CONFIDENCE = 0.5

DEFAULT_FIELDS: tuple[str, ...] = ("vendor", "date", "total", "tax", "receipt_number", "currency")
ODOMETER_FIELD = "odometer_reading"


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

_AMOUNT = r"(?<![\d.,])(\d{1,3}(?:[,.]\d{3})+[.,]\d{2}|\d+[.,]\d{2})(?!\d)"
_GAP = r"[^\d\n]{0,20}?"

_MONTHS = r"(?:jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)[a-z]*\.?"
_DATE_TOKEN = (
    r"(\d{4}[-/.]\d{1,2}[-/.]\d{1,2}"
    r"|\d{1,2}[-/.]\d{1,2}[-/.]\d{2,4}"
    rf"|\d{{1,2}}\s+{_MONTHS},?\s+\d{{2,4}}"
    rf"|{_MONTHS}\s+\d{{1,2}},?\s+\d{{2,4}})"
)

_AMOUNT_RE = re.compile(_AMOUNT)
_VENDOR_LABEL_RE = re.compile(r"^[ \t]*(?:vendor|merchant|store|seller|from)[ \t]*[:\-][ \t]*(.+?)[ \t]*$", re.I | re.M)
_DATE_LABEL_RE = re.compile(rf"\bdate\b[^\d\n]{{0,12}}?\b{_DATE_TOKEN}", re.I)
_DATE_RE = re.compile(rf"\b{_DATE_TOKEN}(?!\d)", re.I)
_GRAND_TOTAL_RE = re.compile(
    rf"\b(?:grand[ \t]+total|total[ \t]+due|amount[ \t]+due|balance[ \t]+due|total[ \t]+amount){_GAP}{_AMOUNT}", re.I
)
_TOTAL_RE = re.compile(
    rf"(?<!sub )(?<!sub-)\btotal\b"
    r"(?![ \t]*(?:tax|vat|gst|hst|savings|saved|discount|items?|qty|quantity|tips?)\b)"
    rf"{_GAP}{_AMOUNT}",
    re.I,
)
_TAX_RE = re.compile(
    rf"\b(?:sales[ \t]+tax|tax|vat|gst|hst)\b(?:[ \t]*\(?\d{{1,2}}(?:[.,]\d+)?[ \t]*%\)?)?{_GAP}{_AMOUNT}", re.I
)
_RECEIPT_NO_RE = re.compile(
    r"\b(?:receipt|invoice|inv|order|transaction|trans|ticket|bill)[ \t]*(?:no\.?|number|num|#|id)?"
    r"[ \t]*[:#.]?[ \t]*#?[ \t]*(?=[A-Z0-9\-/]*\d)([A-Z0-9][A-Z0-9\-/]{2,})",
    re.I,
)
_ISO_CURRENCY_RE = re.compile(
    r"\b(USD|EUR|GBP|CAD|AUD|NZD|JPY|CHF|CNY|INR|MXN|SEK|NOK|DKK|SGD|HKD|ZAR|BRL)\b"
)
_CURRENCY_SYMBOLS = {"€": "EUR", "£": "GBP", "¥": "JPY", "$": "USD"}
_ODOMETER_RE = re.compile(
    r"(?<![\d.,])(?:(?P<grouped>\d{1,3}(?:,\d{3})+)(?:\.(?P<tenths>\d))?|(?P<plain>\d{3,7}(?:[.,]\d)?))(?!\d)"
)

_LINE_ITEM_RE = re.compile(rf"^[ \t]*(.*?[A-Za-z].*?)[ \t:]+[$£€]?[ \t]*{_AMOUNT}[ \t]*$")
_NON_ITEM_RE = re.compile(
    r"\b(?:sub[ \t]*total|total|tax|vat|gst|hst|change|cash|balance|tip|gratuity|due|paid|payment"
    r"|tender|visa|mastercard|amex|debit|credit)\b",
    re.I,
)
_HEADER_WORDS = {"receipt", "invoice", "tax invoice", "sales receipt", "welcome", "customer copy"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def normalize_amount(raw: str) -> str:
    """'1,234.56' / '1.234,56' / '12,00' -> '1234.56' / '1234.56' / '12.00'."""
    raw = raw.strip()
    integer, decimals = raw[:-3], raw[-2:]
    integer = re.sub(r"[.,]", "", integer) or "0"
    return f"{int(integer)}.{decimals}"


def parse_decimal(value) -> Decimal | None:
    if value is None:
        return None
    text = str(value).strip().lstrip("$£€¥").strip()
    if _AMOUNT_RE.fullmatch(text):
        text = normalize_amount(text)
    try:
        return Decimal(text)
    except InvalidOperation:
        return None


_DATE_FORMATS = (
    "%Y-%m-%d", "%Y/%m/%d", "%Y.%m.%d",
    "%m/%d/%Y", "%d/%m/%Y", "%m/%d/%y", "%d/%m/%y",
    "%d-%m-%Y", "%m-%d-%Y", "%d.%m.%Y", "%d.%m.%y",
    "%d %b %Y", "%d %B %Y", "%b %d %Y", "%B %d %Y",
)


def parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    # "Jan. 15, 2024" -> "Jan 15 2024"
    cleaned = re.sub(r"(?<=[A-Za-z])\.", "", value).replace(",", " ")
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt)
        except ValueError:
            continue
    return None


# ---------------------------------------------------------------------------
# Field rules
# ---------------------------------------------------------------------------

Rule = Callable[[str], "FieldValue | None"]


def _regex_rule(pattern: re.Pattern[str], confidence: float, *, last: bool = False, amount: bool = False) -> Rule:
    def rule(text: str) -> FieldValue | None:
        matches = list(pattern.finditer(text))
        if not matches:
            return None
        value = (matches[-1] if last else matches[0]).group(1).strip()
        if amount:
            value = normalize_amount(value)
        return FieldValue(value=value, confidence=confidence)

    return rule


def _first_line_vendor(text: str) -> FieldValue | None:
    for line in text.splitlines():
        candidate = line.strip()
        if not candidate or not re.search(r"[A-Za-z]", candidate):
            continue
        if candidate.lower().strip(" :*-") in _HEADER_WORDS:
            continue
        if _DATE_RE.search(candidate) or _AMOUNT_RE.search(candidate):
            continue
        return FieldValue(value=candidate, confidence=POSITIONAL_CONFIDENCE)
    return None


def _largest_amount(text: str) -> FieldValue | None:
    amounts = [normalize_amount(m.group(1)) for m in _AMOUNT_RE.finditer(text)]
    if not amounts:
        return None
    return FieldValue(value=max(amounts, key=Decimal), confidence=POSITIONAL_CONFIDENCE)


def _currency_symbol(text: str) -> FieldValue | None:
    for symbol, code in _CURRENCY_SYMBOLS.items():
        if symbol in text:
            return FieldValue(value=code, confidence=PATTERN_CONFIDENCE)
    return None


def _odometer(text: str) -> FieldValue | None:
    match = _ODOMETER_RE.search(text)
    if not match:
        return None
    if match.group("grouped"):
        value = match.group("grouped").replace(",", "")
        if match.group("tenths"):
            value += "." + match.group("tenths")
    else:
        value = match.group("plain").replace(",", ".")
    return FieldValue(value=value, confidence=POSITIONAL_CONFIDENCE)


_RULES: dict[str, tuple[Rule, ...]] = {
    "vendor": (
        _regex_rule(_VENDOR_LABEL_RE, ANCHORED_CONFIDENCE),
        _first_line_vendor,
    ),
    "date": (
        _regex_rule(_DATE_LABEL_RE, ANCHORED_CONFIDENCE),
        _regex_rule(_DATE_RE, PATTERN_CONFIDENCE),
    ),
    "total": (
        _regex_rule(_GRAND_TOTAL_RE, ANCHORED_CONFIDENCE, last=True, amount=True),
        _regex_rule(_TOTAL_RE, ANCHORED_CONFIDENCE, last=True, amount=True),
        _largest_amount,
    ),
    "tax": (
        _regex_rule(_TAX_RE, ANCHORED_CONFIDENCE, amount=True),
    ),
    "receipt_number": (
        _regex_rule(_RECEIPT_NO_RE, ANCHORED_CONFIDENCE),
    ),
    "currency": (
        _regex_rule(_ISO_CURRENCY_RE, ANCHORED_CONFIDENCE),
        _currency_symbol,
    ),
    ODOMETER_FIELD: (
        _odometer,
    ),
}

SUPPORTED_FIELDS = frozenset(_RULES)


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class FieldExtractor:
    def derive(self, text: str, requested_fields: Iterable[str]) -> dict[str, FieldValue]:
        if not text:
            return {}

        derived: dict[str, FieldValue] = {}
        for name in requested_fields:
            for rule in _RULES.get(name, ()):
                try:
                    value = rule(text)
                except Exception as exc:
                    logger.warning("field_rule_failed", extra={"field": name, "error": str(exc)})
                    continue
                if value is not None and value.value:
                    derived[name] = value
                    break
        return derived

    def extract_line_items(self, text: str) -> list[LineItem]:
        items: list[LineItem] = []
        for line in (text or "").splitlines():
            match = _LINE_ITEM_RE.match(line)
            if not match or _NON_ITEM_RE.search(line):
                continue
            description = match.group(1).strip(" .:-\t")
            if description:
                items.append(LineItem(description=description, amount=normalize_amount(match.group(2))))
        return items


def merge_fields(native: Mapping[str, FieldValue] | None, derived: dict[str, FieldValue]) -> dict[str, FieldValue]:
    """Derived values fill gaps; a field the backend supplied is never overridden."""
    merged = dict(derived)
    merged.update(native or {})
    return merged


# ---------------------------------------------------------------------------
# Typed receipt view
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReceiptRecord:
    vendor: str | None = None
    date: datetime | None = None
    total: Decimal | None = None
    tax: Decimal | None = None
    receipt_number: str | None = None
    currency: str | None = None
    line_items: list[LineItem] = field(default_factory=list)
    field_confidences: dict[str, float] = field(default_factory=dict)
    raw: RecognitionResult | None = None

    @classmethod
    def from_result(cls, result: RecognitionResult) -> ReceiptRecord:
        fields = result.fields or {}

        def value(name: str) -> str | None:
            fv = fields.get(name)
            return fv.value if fv else None

        return cls(
            vendor=value("vendor"),
            date=parse_date(value("date")),
            total=parse_decimal(value("total")),
            tax=parse_decimal(value("tax")),
            receipt_number=value("receipt_number"),
            currency=value("currency"),
            line_items=list(result.line_items),
            field_confidences={k: round(v.confidence, 4) for k, v in fields.items()},
            raw=result,
        )


@dataclass(frozen=True)
class OdometerReading:
    reading: Decimal | None
    confidence: float
    raw: RecognitionResult | None = None
