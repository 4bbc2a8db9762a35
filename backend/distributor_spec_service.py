"""
Distributor Spec Service - CaseSpec storage and total preferred units upkeep

total_preferred_units is a cached conversion result. It is written only by
this service and recomputed whenever case_packs, pack_size,
pack_unit_of_measure or the product's preferred unit changes.
"""

import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from service_errors import (
    ProductNotFoundError,
    SpecAlreadyExistsError,
    SpecNotFoundError,
    SpecValidationError,
)
from unit_conversion_engine import UnitConversionEngine

logger = logging.getLogger(__name__)

PACK_FIELDS = ("case_packs", "pack_size", "pack_unit_of_measure")


class DistributorSpecCreate(BaseModel):
    catalog_product_id: str
    distributor_id: str
    distributor_item_code: Optional[str] = None
    case_packs: int = Field(gt=0)
    pack_size: float = Field(gt=0)
    pack_unit_of_measure: str


class DistributorSpecUpdate(BaseModel):
    distributor_item_code: Optional[str] = None
    case_packs: Optional[int] = Field(default=None, gt=0)
    pack_size: Optional[float] = Field(default=None, gt=0)
    pack_unit_of_measure: Optional[str] = None
    is_active: Optional[bool] = None


class DistributorSpec(DistributorSpecCreate):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    total_preferred_units: float = Field(gt=0)
    is_active: bool = True
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    updated_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class DistributorSpecService:
    """CRUD for distributor product specs"""

    def __init__(self, db, engine: Optional[UnitConversionEngine] = None):
        self.db = db
        self.engine = engine or UnitConversionEngine(db=db)

    async def _get_product(self, catalog_product_id: str) -> dict:
        product = await self.db.products.find_one({"id": catalog_product_id}, {"_id": 0})
        if not product:
            raise ProductNotFoundError(catalog_product_id)
        return product

    async def calculate_total_preferred_units(
        self,
        case_packs: int,
        pack_size: float,
        pack_unit: str,
        preferred_unit: str
    ) -> float:
        """Total preferred units, or SpecValidationError carrying the resolver's error code."""
        result = await self.engine.calculate_total_preferred_units(case_packs, pack_size, pack_unit, preferred_unit)
        if not result.success or result.value is None:
            raise SpecValidationError(result.error_code or "CONVERSION_FAILED", result.message or "Failed to calculate units")
        return result.value

    # ==================== READS ====================

    async def get_spec(self, spec_id: str) -> Optional[dict]:
        return await self.db.distributor_product_specs.find_one({"id": spec_id}, {"_id": 0})

    async def spec_exists(self, catalog_product_id: str, distributor_id: str) -> bool:
        spec = await self.db.distributor_product_specs.find_one(
            {"catalog_product_id": catalog_product_id, "distributor_id": distributor_id},
            {"_id": 0, "id": 1}
        )
        return spec is not None

    async def get_product_specs(self, catalog_product_id: str) -> List[dict]:
        return await self.db.distributor_product_specs.find(
            {"catalog_product_id": catalog_product_id, "is_active": True}, {"_id": 0}
        ).sort("distributor_id", 1).to_list(1000)

    async def get_distributor_specs(self, distributor_id: str) -> List[dict]:
        return await self.db.distributor_product_specs.find(
            {"distributor_id": distributor_id, "is_active": True}, {"_id": 0}
        ).sort("catalog_product_id", 1).to_list(1000)

    async def get_active_spec(self, catalog_product_id: str, distributor_id: str) -> Optional[dict]:
        return await self.db.distributor_product_specs.find_one(
            {"catalog_product_id": catalog_product_id, "distributor_id": distributor_id, "is_active": True},
            {"_id": 0}
        )

    async def search_by_item_code(self, item_code: str, distributor_id: Optional[str] = None) -> List[dict]:
        query: Dict[str, Any] = {
            "distributor_item_code": {"$regex": re.escape(item_code), "$options": "i"},
            "is_active": True
        }
        if distributor_id:
            query["distributor_id"] = distributor_id
        return await self.db.distributor_product_specs.find(query, {"_id": 0}).to_list(1000)

    # ==================== WRITES ====================

    async def create_spec(self, data: DistributorSpecCreate) -> DistributorSpec:
        if await self.spec_exists(data.catalog_product_id, data.distributor_id):
            raise SpecAlreadyExistsError(data.catalog_product_id, data.distributor_id)

        product = await self._get_product(data.catalog_product_id)
        total = await self.calculate_total_preferred_units(
            data.case_packs,
            data.pack_size,
            data.pack_unit_of_measure,
            product["preferred_measurement"]
        )

        spec = DistributorSpec(**data.model_dump(), total_preferred_units=total)
        await self.db.distributor_product_specs.insert_one(spec.model_dump())
        logger.info(
            f"Created spec {spec.id} for product {spec.catalog_product_id} / distributor {spec.distributor_id}: "
            f"{total} {product['preferred_measurement']} per case"
        )
        return spec

    async def update_spec(self, spec_id: str, updates: DistributorSpecUpdate) -> dict:
        current = await self.get_spec(spec_id)
        if not current:
            raise SpecNotFoundError(f"Spec '{spec_id}' not found")

        changes = updates.model_dump(exclude_unset=True, exclude_none=True)

        reactivated = changes.get("is_active") is True and not current.get("is_active", True)
        if reactivated or any(field in changes for field in PACK_FIELDS):
            product = await self._get_product(current["catalog_product_id"])
            changes["total_preferred_units"] = await self.calculate_total_preferred_units(
                changes.get("case_packs", current["case_packs"]),
                changes.get("pack_size", current["pack_size"]),
                changes.get("pack_unit_of_measure", current["pack_unit_of_measure"]),
                product["preferred_measurement"]
            )

        changes["updated_at"] = datetime.now(timezone.utc).isoformat()
        await self.db.distributor_product_specs.update_one({"id": spec_id}, {"$set": changes})
        return await self.get_spec(spec_id)

    async def deactivate_spec(self, spec_id: str) -> None:
        result = await self.db.distributor_product_specs.update_one(
            {"id": spec_id},
            {"$set": {"is_active": False, "updated_at": datetime.now(timezone.utc).isoformat()}}
        )
        if result.matched_count == 0:
            raise SpecNotFoundError(f"Spec '{spec_id}' not found")

    async def recalculate_for_product(
        self,
        catalog_product_id: str,
        preferred_unit: Optional[str] = None,
        dry_run: bool = False
    ) -> Dict[str, Any]:
        """
        Recompute total_preferred_units for every spec of a product, inactive
        ones included, so a reactivated spec never carries a stale total.

        preferred_unit overrides the stored one (used to validate a pending
        product change before it is written). With dry_run nothing is saved.
        """
        if preferred_unit is None:
            product = await self._get_product(catalog_product_id)
            preferred_unit = product["preferred_measurement"]

        specs = await self.db.distributor_product_specs.find(
            {"catalog_product_id": catalog_product_id}, {"_id": 0}
        ).sort("distributor_id", 1).to_list(1000)
        updated = 0
        failed: List[Dict[str, Any]] = []

        for spec in specs:
            try:
                total = await self.calculate_total_preferred_units(
                    spec["case_packs"], spec["pack_size"], spec["pack_unit_of_measure"], preferred_unit
                )
            except SpecValidationError as e:
                failed.append({"spec_id": spec["id"], "error_code": e.error_code, "error": e.message})
                continue

            if not dry_run:
                await self.db.distributor_product_specs.update_one(
                    {"id": spec["id"]},
                    {"$set": {
                        "total_preferred_units": total,
                        "updated_at": datetime.now(timezone.utc).isoformat()
                    }}
                )
            updated += 1

        if failed:
            logger.warning(f"{len(failed)} spec(s) of product {catalog_product_id} cannot convert to {preferred_unit}")
        return {"updated": updated, "failed": failed}

    async def bulk_import_specs(self, specs: List[DistributorSpecCreate]) -> Dict[str, Any]:
        results: Dict[str, Any] = {"imported": 0, "failed": []}

        # One by one; a failing row does not stop the rest
        for spec in specs:
            try:
                await self.create_spec(spec)
                results["imported"] += 1
            except (SpecAlreadyExistsError, ProductNotFoundError, SpecValidationError) as e:
                results["failed"].append({"spec": spec.model_dump(), "error": e.message})

        return results

    async def copy_specs(
        self,
        from_distributor_id: str,
        to_distributor_id: str,
        product_ids: Optional[List[str]] = None
    ) -> int:
        query: Dict[str, Any] = {"distributor_id": from_distributor_id, "is_active": True}
        if product_ids:
            query["catalog_product_id"] = {"$in": product_ids}

        specs = await self.db.distributor_product_specs.find(query, {"_id": 0}).to_list(1000)

        copied = 0
        for spec in specs:
            if await self.spec_exists(spec["catalog_product_id"], to_distributor_id):
                continue
            new_spec = DistributorSpec(
                catalog_product_id=spec["catalog_product_id"],
                distributor_id=to_distributor_id,
                distributor_item_code=spec.get("distributor_item_code"),
                case_packs=spec["case_packs"],
                pack_size=spec["pack_size"],
                pack_unit_of_measure=spec["pack_unit_of_measure"],
                total_preferred_units=spec["total_preferred_units"],
            )
            await self.db.distributor_product_specs.insert_one(new_spec.model_dump())
            copied += 1

        logger.info(f"Copied {copied} spec(s) from distributor {from_distributor_id} to {to_distributor_id}")
        return copied
