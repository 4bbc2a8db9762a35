"""
CSV price-list import for one distributor.

Each row is matched to a distributor spec by item code and recorded as a
csv_import price event. Bad rows are reported, they do not abort the import.
"""

import hashlib
import logging
import math
import uuid
from datetime import date, datetime, timezone
from io import BytesIO
from typing import Dict, List, Optional

import pandas as pd
from pydantic import BaseModel

from pricing_service import PricingService, SourceType
from service_errors import DuplicateImportError, InvalidCsvFormatError, SpecNotFoundError
from unit_conversion_engine import InvalidCaseSpecError

logger = logging.getLogger(__name__)

# Header spellings seen on distributor price sheets, normalized to lower case
COLUMN_ALIASES: Dict[str, List[str]] = {
    "item_code": ["item code", "item_code", "item #", "item number", "item no", "sku", "product code", "code"],
    "description": ["description", "item description", "product name", "product", "name"],
    "case_price": ["case price", "case_price", "price", "case cost", "cost"],
    "pack_size": ["pack size", "pack_size", "pack", "size"],
    "unit": ["unit", "uom", "unit of measure", "pack unit"],
}

NULL_VALUES = {"", "NA", "N/A", "NONE", "NULL", "NAN"}


class CsvColumnMapping(BaseModel):
    item_code_column: Optional[str] = None
    description_column: Optional[str] = None
    case_price_column: Optional[str] = None
    pack_size_column: Optional[str] = None
    unit_column: Optional[str] = None


class PriceImportResult(BaseModel):
    total_rows: int = 0
    successful_imports: int = 0
    failed_imports: int = 0
    errors: List[str] = []
    distributor_id: str
    effective_date: date


def detect_column_mapping(headers: List[str]) -> CsvColumnMapping:
    """
    Match headers to known columns, case-insensitively.

    Raises:
        InvalidCsvFormatError: no item code or case price column
    """
    normalized = {str(h).strip().lower(): h for h in headers}
    found: Dict[str, Optional[str]] = {}
    for column, aliases in COLUMN_ALIASES.items():
        found[f"{column}_column"] = next(
            (normalized[a] for a in aliases if a in normalized), None
        )

    mapping = CsvColumnMapping(**found)
    if not mapping.item_code_column or not mapping.case_price_column:
        raise InvalidCsvFormatError(
            f"CSV must contain an item code and a case price column. Found headers: {', '.join(map(str, headers))}"
        )
    return mapping


def parse_price(value) -> Optional[float]:
    text = str(value).strip().replace("$", "").replace(",", "")
    if text.upper() in NULL_VALUES:
        return None
    price = float(text)
    if not math.isfinite(price):
        raise ValueError(f"Non-finite price: {value}")
    return price


def file_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


class PriceImportService:
    def __init__(self, db, pricing: Optional[PricingService] = None):
        self.db = db
        self.pricing = pricing or PricingService(db)

    async def import_price_csv(
        self,
        content: bytes,
        file_name: str,
        restaurant_id: str,
        distributor_id: str,
        effective_date: Optional[date] = None,
    ) -> PriceImportResult:
        digest = file_hash(content)
        existing = await self.db.price_imports.find_one(
            {"distributor_id": distributor_id, "file_hash": digest, "status": "completed"},
            {"_id": 0}
        )
        if existing:
            raise DuplicateImportError(file_name, digest)

        try:
            df = pd.read_csv(BytesIO(content), dtype=str, keep_default_na=False)
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
            raise InvalidCsvFormatError(f"Could not read CSV '{file_name}': {str(e)}")

        mapping = detect_column_mapping(list(df.columns))
        effective_date = effective_date or datetime.now(timezone.utc).date()
        result = PriceImportResult(
            total_rows=len(df),
            distributor_id=distributor_id,
            effective_date=effective_date,
        )

        for idx, row in df.iterrows():
            # Row numbers as seen in a spreadsheet: header is row 1
            row_number = idx + 2
            item_code = str(row.get(mapping.item_code_column, "")).strip()
            if not item_code:
                result.errors.append(f"Row {row_number}: Item code is required")
                result.failed_imports += 1
                continue

            try:
                case_price = parse_price(row.get(mapping.case_price_column))
            except ValueError:
                result.errors.append(f"Row {row_number}: Invalid case price '{row.get(mapping.case_price_column)}'")
                result.failed_imports += 1
                continue
            if case_price is None:
                result.errors.append(f"Row {row_number}: Case price is required for item '{item_code}'")
                result.failed_imports += 1
                continue
            if case_price < 0:
                result.errors.append(f"Row {row_number}: Case price must not be negative for item '{item_code}'")
                result.failed_imports += 1
                continue

            spec = await self.db.distributor_product_specs.find_one(
                {"distributor_id": distributor_id, "distributor_item_code": item_code, "is_active": True},
                {"_id": 0}
            )
            if not spec:
                result.errors.append(f"Row {row_number}: No product spec for item code '{item_code}'")
                result.failed_imports += 1
                continue

            try:
                await self.pricing.record_price(
                    restaurant_id=restaurant_id,
                    catalog_product_id=spec["catalog_product_id"],
                    distributor_id=distributor_id,
                    case_price=case_price,
                    effective_date=effective_date,
                    source_type=SourceType.CSV_IMPORT,
                    source_file_name=file_name,
                    source_file_hash=digest,
                )
                result.successful_imports += 1
            except (SpecNotFoundError, InvalidCaseSpecError) as e:
                result.errors.append(f"Row {row_number}: {e.message}")
                result.failed_imports += 1

        status = "completed" if result.successful_imports > 0 else "failed"
        await self.db.price_imports.insert_one({
            "id": str(uuid.uuid4()),
            "restaurant_id": restaurant_id,
            "distributor_id": distributor_id,
            "file_name": file_name,
            "file_hash": digest,
            "file_size": len(content),
            "row_count": result.total_rows,
            "imported_count": result.successful_imports,
            "failed_count": result.failed_imports,
            "status": status,
            "errors": result.errors,
            "imported_at": datetime.now(timezone.utc).isoformat(),
        })

        if result.failed_imports:
            logger.warning(f"Price import {file_name}: {result.failed_imports} of {result.total_rows} row(s) failed")
        logger.info(f"Price import {file_name}: {result.successful_imports} price(s) recorded for distributor {distributor_id}")
        return result
