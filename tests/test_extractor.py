"""Field extractor tests: pattern-based extraction over recognised text."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal

import pytest

from receipt_engine.extraction.extractor import (
    ANCHORED_CONFIDENCE,
    DEFAULT_FIELDS,
    PATTERN_CONFIDENCE,
    POSITIONAL_CONFIDENCE,
    FieldExtractor,
    ReceiptRecord,
    merge_fields,
    normalize_amount,
    parse_date,
    parse_decimal,
)
from receipt_engine.ocr.base import FieldValue, LineItem, RecognitionResult
from receipt_engine.ocr.mock_ocr import MOCK_RECEIPT_TEXT


SAMPLE_RECEIPT_TEXT = """INVOICE

Vendor: Acme Corp
Invoice #: INV-2024-001
Invoice Date: 2024-01-15

Item 1: $100.00
Item 2: $200.00
Subtotal: $300.00
Tax: $24.00
Total: $324.00
"""

MINIMAL_TEXT = "Just some random text with no receipt fields."


# ---------------------------------------------------------------------------
# Anchored rules
# ---------------------------------------------------------------------------

def test_derive_vendor_from_label() -> None:
    fields = FieldExtractor().derive(SAMPLE_RECEIPT_TEXT, ["vendor"])
    assert fields["vendor"] == FieldValue("Acme Corp", ANCHORED_CONFIDENCE)


def test_derive_receipt_number() -> None:
    fields = FieldExtractor().derive(SAMPLE_RECEIPT_TEXT, ["receipt_number"])
    assert fields["receipt_number"].value == "INV-2024-001"
    assert fields["receipt_number"].confidence == ANCHORED_CONFIDENCE


def test_derive_date_from_label() -> None:
    fields = FieldExtractor().derive(SAMPLE_RECEIPT_TEXT, ["date"])
    assert fields["date"] == FieldValue("2024-01-15", ANCHORED_CONFIDENCE)


def test_derive_total_ignores_subtotal() -> None:
    fields = FieldExtractor().derive(SAMPLE_RECEIPT_TEXT, ["total"])
    assert fields["total"] == FieldValue("324.00", ANCHORED_CONFIDENCE)


def test_derive_total_prefers_amount_due() -> None:
    text = "Total 40.00\nTip 5.00\nAmount Due: 45.00\n"
    fields = FieldExtractor().derive(text, ["total"])
    assert fields["total"].value == "45.00"


def test_derive_total_not_fooled_by_spaced_subtotal() -> None:
    text = "Sub Total 10.00\n"
    fields = FieldExtractor().derive(text, ["total"])
    # Only the positional rule can match here
    assert fields["total"] == FieldValue("10.00", POSITIONAL_CONFIDENCE)


@pytest.mark.parametrize("trailer", ["Total Tax 0.80", "Total Savings 2.00", "Total Discount 1.50", "Total Items 3.00"])
def test_derive_total_skips_summary_lines_after_total(trailer: str) -> None:
    text = f"SHOP\nItem 10.00\nTotal 10.80\n{trailer}\n"
    fields = FieldExtractor().derive(text, ["total"])
    assert fields["total"] == FieldValue("10.80", ANCHORED_CONFIDENCE)


def test_derive_tax_with_percentage() -> None:
    fields = FieldExtractor().derive("VAT (20%) 2.00\nTotal 12.00", ["tax"])
    assert fields["tax"].value == "2.00"


def test_derive_currency_code() -> None:
    fields = FieldExtractor().derive("Total EUR 12,50", ["currency", "total"])
    assert fields["currency"] == FieldValue("EUR", ANCHORED_CONFIDENCE)
    assert fields["total"].value == "12.50"


# ---------------------------------------------------------------------------
# Pattern and positional rules
# ---------------------------------------------------------------------------

def test_derive_unlabelled_month_name_date() -> None:
    fields = FieldExtractor().derive("Corner Deli\n15 Jan 2024\n", ["date"])
    assert fields["date"] == FieldValue("15 Jan 2024", PATTERN_CONFIDENCE)


def test_derive_vendor_from_first_line() -> None:
    fields = FieldExtractor().derive(MOCK_RECEIPT_TEXT, ["vendor"])
    assert fields["vendor"] == FieldValue("ACME COFFEE ROASTERS", POSITIONAL_CONFIDENCE)


def test_derive_vendor_skips_header_and_dates() -> None:
    text = "RECEIPT\n01/02/2024\nBlue Bottle\nLatte 4.50\n"
    fields = FieldExtractor().derive(text, ["vendor"])
    assert fields["vendor"].value == "Blue Bottle"


def test_derive_total_falls_back_to_largest_amount() -> None:
    fields = FieldExtractor().derive("Coffee 3.50\nBagel 1,204.00\n", ["total"])
    assert fields["total"] == FieldValue("1204.00", POSITIONAL_CONFIDENCE)


def test_derive_currency_symbol() -> None:
    fields = FieldExtractor().derive("Total £9.99", ["currency"])
    assert fields["currency"] == FieldValue("GBP", PATTERN_CONFIDENCE)


def test_derive_odometer_reading() -> None:
    fields = FieldExtractor().derive("TRIP 12.4\n045871 km", ["odometer_reading"])
    assert fields["odometer_reading"].value == "045871"


def test_derive_odometer_reading_with_thousands_separator() -> None:
    fields = FieldExtractor().derive("ODO 45,678 km", ["odometer_reading"])
    assert fields["odometer_reading"] == FieldValue("45678", POSITIONAL_CONFIDENCE)


def test_derive_odometer_reading_with_separator_and_tenths() -> None:
    fields = FieldExtractor().derive("123,456.7 mi", ["odometer_reading"])
    assert fields["odometer_reading"].value == "123456.7"


def test_derive_mock_receipt_all_default_fields() -> None:
    fields = FieldExtractor().derive(MOCK_RECEIPT_TEXT, DEFAULT_FIELDS)
    assert fields["date"].value == "2024-01-15"
    assert fields["total"].value == "8.37"
    assert fields["tax"].value == "0.62"
    assert fields["receipt_number"].value == "R-20240115-001"
    assert fields["currency"].value == "USD"


# ---------------------------------------------------------------------------
# Robustness
# ---------------------------------------------------------------------------

def test_derive_on_minimal_text_leaves_fields_absent() -> None:
    fields = FieldExtractor().derive(MINIMAL_TEXT, ["date", "total", "tax", "receipt_number"])
    assert fields == {}


@pytest.mark.parametrize("text", ["", None])
def test_derive_on_empty_text_returns_empty(text) -> None:
    assert FieldExtractor().derive(text, DEFAULT_FIELDS) == {}


def test_derive_ignores_unknown_field_names() -> None:
    assert FieldExtractor().derive(SAMPLE_RECEIPT_TEXT, ["shoe_size"]) == {}


# ---------------------------------------------------------------------------
# Line items
# ---------------------------------------------------------------------------

def test_extract_line_items_skips_totals_and_tax() -> None:
    items = FieldExtractor().extract_line_items(MOCK_RECEIPT_TEXT)
    assert items == [LineItem("Latte", "4.50"), LineItem("Blueberry Muffin", "3.25")]


def test_extract_line_items_keeps_words_containing_tax() -> None:
    items = FieldExtractor().extract_line_items("Taxi fare  $12.00\nCash 20.00\n")
    assert items == [LineItem("Taxi fare", "12.00")]


# ---------------------------------------------------------------------------
# Merge and typed view
# ---------------------------------------------------------------------------

def test_merge_fields_native_wins() -> None:
    native = {"total": FieldValue("12.00", 0.95)}
    derived = {"total": FieldValue("99.00", ANCHORED_CONFIDENCE), "tax": FieldValue("1.00", ANCHORED_CONFIDENCE)}
    merged = merge_fields(native, derived)
    assert merged["total"] == FieldValue("12.00", 0.95)
    assert merged["tax"].value == "1.00"


def test_merge_fields_without_native() -> None:
    derived = {"tax": FieldValue("1.00", ANCHORED_CONFIDENCE)}
    assert merge_fields(None, derived) == derived


@pytest.mark.parametrize(
    "raw, expected",
    [("8.37", "8.37"), ("1,234.56", "1234.56"), ("1.234,56", "1234.56"), ("12,00", "12.00")],
)
def test_normalize_amount(raw: str, expected: str) -> None:
    assert normalize_amount(raw) == expected


def test_parse_helpers() -> None:
    assert parse_decimal("$1,234.56") == Decimal("1234.56")
    assert parse_decimal("not a number") is None
    assert parse_date("2024-01-15") == datetime(2024, 1, 15)
    assert parse_date("Jan. 15, 2024") == datetime(2024, 1, 15)
    assert parse_date("garbage") is None


def test_receipt_record_from_result() -> None:
    result = RecognitionResult(
        text="x",
        confidence=0.9,
        backend_id="mock",
        elapsed_ms=1,
        content_hash="abc",
        fields={
            "vendor": FieldValue("Acme", 0.85),
            "date": FieldValue("2024-01-15", 0.85),
            "total": FieldValue("8.37", 0.85),
        },
        line_items=(LineItem("Latte", "4.50"),),
    )
    record = ReceiptRecord.from_result(result)
    assert record.vendor == "Acme"
    assert record.date == datetime(2024, 1, 15)
    assert record.total == Decimal("8.37")
    assert record.tax is None
    assert record.line_items == [LineItem("Latte", "4.50")]
    assert record.raw is result
