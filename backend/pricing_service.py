"""
Pricing Service - price events, current prices and best-price selection
"""

import logging
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from service_errors import SpecNotFoundError
from unit_conversion_engine import unit_price

logger = logging.getLogger(__name__)


class SourceType(str, Enum):
    CSV_IMPORT = "csv_import"
    MANUAL_ENTRY = "manual_entry"
    INVOICE_SCAN = "invoice_scan"
    API = "api"


class PriceQuote(BaseModel):
    model_config = ConfigDict(extra="ignore")
    catalog_product_id: str
    distributor_id: str
    case_price: float = Field(ge=0, allow_inf_nan=False)
    total_preferred_units: float
    unit_price: float
    effective_date: date


class PriceEvent(PriceQuote):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    restaurant_id: str
    source_type: SourceType = SourceType.MANUAL_ENTRY
    source_file_name: Optional[str] = None
    source_file_hash: Optional[str] = None
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class PriceCreate(BaseModel):
    catalog_product_id: str
    distributor_id: str
    case_price: float = Field(ge=0, allow_inf_nan=False)
    effective_date: Optional[date] = None
    source_type: SourceType = SourceType.MANUAL_ENTRY


class PriceComparisonRow(BaseModel):
    price: PriceEvent
    product_name: str
    preferred_measurement: str = ""
    distributor_name: str
    is_winner: bool = False


# ==================== BEST-PRICE SELECTION ====================

def select_winning_quotes(quotes: Iterable[PriceQuote]) -> Dict[str, PriceQuote]:
    """
    Lowest unit_price quote per product.

    The winner is replaced only on a strictly lower unit_price, so among
    equal minimums the first quote in input order wins.
    """
    winners: Dict[str, PriceQuote] = {}
    for quote in quotes:
        best = winners.get(quote.catalog_product_id)
        if best is None or quote.unit_price < best.unit_price:
            winners[quote.catalog_product_id] = quote
    return winners


def select_winners(quotes: Iterable[PriceQuote]) -> Dict[str, str]:
    """Map product id -> winning distributor id. Products without quotes are absent."""
    return {
        product_id: quote.distributor_id
        for product_id, quote in select_winning_quotes(quotes).items()
    }


def current_quotes(quotes: Iterable[PriceQuote]) -> List[PriceQuote]:
    """
    Keep the quote with the latest effective_date per (product, distributor).
    On equal dates the first one seen is kept. Input order of the survivors
    is preserved.
    """
    latest: Dict[Tuple[str, str], PriceQuote] = {}
    for quote in quotes:
        key = (quote.catalog_product_id, quote.distributor_id)
        kept = latest.get(key)
        if kept is None or quote.effective_date > kept.effective_date:
            latest[key] = quote
    return list(latest.values())


# ==================== SERVICE ====================

class PricingService:
    """Stores price events and answers current-price questions"""

    def __init__(self, db):
        self.db = db

    async def record_price(
        self,
        restaurant_id: str,
        catalog_product_id: str,
        distributor_id: str,
        case_price: float,
        effective_date: Optional[date] = None,
        source_type: SourceType = SourceType.MANUAL_ENTRY,
        source_file_name: Optional[str] = None,
        source_file_hash: Optional[str] = None,
    ) -> PriceEvent:
        """
        Record a case price for a product at a distributor.

        unit_price is derived from the active spec's total_preferred_units.

        Raises:
            SpecNotFoundError: no active spec for product and distributor
            InvalidCaseSpecError: stored spec has non-positive total units
        """
        spec = await self.db.distributor_product_specs.find_one(
            {"catalog_product_id": catalog_product_id, "distributor_id": distributor_id, "is_active": True},
            {"_id": 0}
        )
        if not spec:
            raise SpecNotFoundError(
                f"No active spec for product '{catalog_product_id}' at distributor '{distributor_id}'"
            )

        total = spec["total_preferred_units"]
        event = PriceEvent(
            restaurant_id=restaurant_id,
            catalog_product_id=catalog_product_id,
            distributor_id=distributor_id,
            case_price=case_price,
            total_preferred_units=total,
            unit_price=unit_price(case_price, total),
            effective_date=effective_date or datetime.now(timezone.utc).date(),
            source_type=source_type,
            source_file_name=source_file_name,
            source_file_hash=source_file_hash,
        )
        await self.db.price_events.insert_one(event.model_dump(mode="json"))
        return event

    async def _find_events(self, query: Dict[str, Any]) -> List[PriceEvent]:
        rows = await self.db.price_events.find(query, {"_id": 0}).sort(
            [("effective_date", -1), ("created_at", -1)]
        ).to_list(None)
        return [PriceEvent(**row) for row in rows]

    async def get_current_prices(
        self,
        restaurant_id: str,
        catalog_product_id: Optional[str] = None
    ) -> List[PriceEvent]:
        query: Dict[str, Any] = {"restaurant_id": restaurant_id}
        if catalog_product_id:
            query["catalog_product_id"] = catalog_product_id
        # Newest first, so the first event seen for a pair is the latest created
        return current_quotes(await self._find_events(query))

    async def get_price_history(
        self,
        restaurant_id: str,
        catalog_product_id: str,
        distributor_id: Optional[str] = None
    ) -> List[PriceEvent]:
        query: Dict[str, Any] = {"restaurant_id": restaurant_id, "catalog_product_id": catalog_product_id}
        if distributor_id:
            query["distributor_id"] = distributor_id
        return await self._find_events(query)

    async def get_winners(self, restaurant_id: str) -> Dict[str, str]:
        return select_winners(await self.get_current_prices(restaurant_id))

    async def get_price_comparison(self, restaurant_id: str) -> List[PriceComparisonRow]:
        prices = await self.get_current_prices(restaurant_id)
        winners = select_winning_quotes(prices)

        product_ids = list({p.catalog_product_id for p in prices})
        distributor_ids = list({p.distributor_id for p in prices})
        products = {
            p["id"]: p for p in await self.db.products.find(
                {"id": {"$in": product_ids}}, {"_id": 0}
            ).to_list(None)
        }
        distributors = {
            d["id"]: d for d in await self.db.distributors.find(
                {"id": {"$in": distributor_ids}}, {"_id": 0}
            ).to_list(None)
        }

        rows = []
        for price in prices:
            product = products.get(price.catalog_product_id, {})
            distributor = distributors.get(price.distributor_id, {})
            rows.append(PriceComparisonRow(
                price=price,
                product_name=product.get("product_name", "Unknown Product"),
                preferred_measurement=product.get("preferred_measurement", ""),
                distributor_name=distributor.get("distributor_name", "Unknown Distributor"),
                is_winner=winners.get(price.catalog_product_id) is price,
            ))

        rows.sort(key=lambda r: (r.product_name.lower(), r.price.unit_price))
        return rows
