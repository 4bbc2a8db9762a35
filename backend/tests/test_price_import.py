# backend/tests/test_price_import.py

"""
Tests for the distributor price-list CSV import
"""

from datetime import date

import pytest

from price_import import PriceImportService, detect_column_mapping, parse_price
from pricing_service import SourceType
from service_errors import DuplicateImportError, InvalidCsvFormatError


PRICE_LIST = (
    b"Item Code,Description,Case Price\n"
    b"SYS-8020,Ground Beef 80/20 6x4lb,$48.00\n"
    b",Missing code,10.00\n"
    b"SYS-9999,Not in catalog,5.00\n"
    b"SYS-8020,Bad price,call\n"
)


@pytest.fixture
def importer(mock_db, sample_product):
    mock_db.distributor_product_specs.docs.append({
        "id": "SPEC_1",
        "catalog_product_id": "BEEF_80_20",
        "distributor_id": "DIST_A",
        "distributor_item_code": "SYS-8020",
        "case_packs": 6,
        "pack_size": 4,
        "pack_unit_of_measure": "lb",
        "total_preferred_units": 24.0,
        "is_active": True,
    })
    return PriceImportService(mock_db)


class TestColumnMapping:

    def test_detects_aliases(self):
        mapping = detect_column_mapping(["SKU", "Product Name", "Cost", "UOM"])
        assert mapping.item_code_column == "SKU"
        assert mapping.description_column == "Product Name"
        assert mapping.case_price_column == "Cost"
        assert mapping.unit_column == "UOM"

    def test_missing_required_columns(self):
        with pytest.raises(InvalidCsvFormatError):
            detect_column_mapping(["Description", "Case Price"])

    def test_parse_price(self):
        assert parse_price("$1,234.50") == 1234.50
        assert parse_price(" N/A ") is None
        with pytest.raises(ValueError):
            parse_price("call")

    @pytest.mark.parametrize("text", ["inf", "-inf", "1e400", "Infinity"])
    def test_parse_price_rejects_non_finite(self, text):
        with pytest.raises(ValueError):
            parse_price(text)


class TestImportPriceCsv:

    @pytest.mark.asyncio
    async def test_import_reports_bad_rows(self, importer, mock_db):
        result = await importer.import_price_csv(
            PRICE_LIST, "sysco.csv", "R1", "DIST_A", effective_date=date(2024, 1, 15)
        )

        assert result.total_rows == 4
        assert result.successful_imports == 1
        assert result.failed_imports == 3
        assert result.errors[0].startswith("Row 3:")
        assert result.errors[1].startswith("Row 4:")
        assert result.errors[2].startswith("Row 5:")

        event = mock_db.price_events.docs[0]
        assert event["unit_price"] == 2.00
        assert event["source_type"] == SourceType.CSV_IMPORT.value
        assert event["source_file_name"] == "sysco.csv"
        assert mock_db.price_imports.docs[0]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_non_finite_and_negative_prices(self, importer, mock_db):
        content = b"Item Code,Case Price\nSYS-8020,inf\nSYS-8020,1e400\nSYS-8020,-5.00\n"

        result = await importer.import_price_csv(content, "odd-prices.csv", "R1", "DIST_A")

        assert result.successful_imports == 0
        assert result.failed_imports == 3
        assert result.errors[0] == "Row 2: Invalid case price 'inf'"
        assert result.errors[1] == "Row 3: Invalid case price '1e400'"
        assert result.errors[2] == "Row 4: Case price must not be negative for item 'SYS-8020'"
        assert mock_db.price_events.docs == []

    @pytest.mark.asyncio
    async def test_duplicate_file_rejected(self, importer, mock_db):
        await importer.import_price_csv(PRICE_LIST, "sysco.csv", "R1", "DIST_A")

        with pytest.raises(DuplicateImportError):
            await importer.import_price_csv(PRICE_LIST, "sysco-copy.csv", "R1", "DIST_A")
        assert len(mock_db.price_events.docs) == 1

    @pytest.mark.asyncio
    async def test_failed_import_can_be_retried(self, importer, mock_db):
        content = b"Item Code,Case Price\nSYS-9999,5.00\n"

        first = await importer.import_price_csv(content, "bad.csv", "R1", "DIST_A")
        second = await importer.import_price_csv(content, "bad.csv", "R1", "DIST_A")

        assert first.successful_imports == second.successful_imports == 0
        assert [r["status"] for r in mock_db.price_imports.docs] == ["failed", "failed"]

    @pytest.mark.asyncio
    async def test_missing_columns(self, importer):
        with pytest.raises(InvalidCsvFormatError):
            await importer.import_price_csv(b"Name,Cost\nBeef,48\n", "odd.csv", "R1", "DIST_A")

    @pytest.mark.asyncio
    async def test_empty_file(self, importer):
        with pytest.raises(InvalidCsvFormatError):
            await importer.import_price_csv(b"", "empty.csv", "R1", "DIST_A")
