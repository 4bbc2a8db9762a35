#!/usr/bin/env python3
"""
Catalog mirror sync: pulls the shared catalog tables from the cloud API into
the local database used by the desktop shell.

Usage: python catalog_sync.py [--once] [--interval SECONDS]
"""

import argparse
import asyncio
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests
from dotenv import load_dotenv
from pydantic import BaseModel

from service_errors import SyncAuthError, SyncError

logger = logging.getLogger(__name__)

DEFAULT_SYNC_INTERVAL_SECONDS = 900
REQUEST_TIMEOUT_SECONDS = 30


@dataclass(frozen=True)
class SyncTable:
    """Cloud table -> local collection, with the fields identifying a row"""
    remote: str
    collection: str
    key_fields: tuple
    id_field: Optional[str] = None
    active_only: bool = False


# Unit tables first, then the catalog rows that reference them
SYNC_TABLES = (
    SyncTable("measurement_types", "measurement_types", ("unit",)),
    SyncTable("unit_conversions", "unit_conversions", ("from_unit", "to_unit")),
    SyncTable("product_catalog", "products", ("id",), id_field="catalog_product_id", active_only=True),
    SyncTable("distributors", "distributors", ("id",), id_field="distributor_id", active_only=True),
    SyncTable("distributor_product_specs", "distributor_product_specs", ("id",), id_field="spec_id", active_only=True),
)


class SyncStatus(BaseModel):
    last_sync: Optional[datetime] = None
    sync_in_progress: bool = False
    next_scheduled_sync: Optional[datetime] = None
    last_error: Optional[str] = None


class SyncResult(BaseModel):
    success: bool
    items_synced: int = 0
    errors: List[str] = []
    duration_ms: int = 0


class CloudCatalogClient:
    """Minimal PostgREST-style reader for the cloud catalog"""

    def __init__(self, base_url: str, api_key: str, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.session = session or requests.Session()

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
        }

    def fetch_table(self, table: str, active_only: bool = False) -> List[Dict[str, Any]]:
        """
        Fetch all rows of a table.

        Raises:
            SyncAuthError: 401/403 from the API
            SyncError: network failure, other non-success status or bad body
        """
        url = f"{self.base_url}/rest/v1/{table}"
        params = {"select": "*"}
        if active_only:
            params["is_active"] = "eq.true"

        try:
            response = self.session.get(url, headers=self.headers, params=params, timeout=REQUEST_TIMEOUT_SECONDS)
        except requests.exceptions.RequestException as e:
            raise SyncError(f"Network request to fetch {table} failed: {e}")

        if response.status_code in (401, 403):
            raise SyncAuthError(f"Authentication failed fetching {table}. Status: {response.status_code}. Body: {response.text}")
        if not response.ok:
            raise SyncError(f"Cloud API returned a non-success status for {table}: {response.status_code}. Body: {response.text}")

        try:
            rows = response.json()
        except ValueError as e:
            raise SyncError(f"Failed to parse {table} data from cloud API: {e}")
        if not isinstance(rows, list):
            raise SyncError(f"Unexpected payload for {table}: expected a list of rows")
        return rows

    def verify_authentication(self) -> bool:
        self.fetch_table("product_catalog")
        return True


class CatalogSyncService:
    """Upserts cloud catalog rows into the local database"""

    def __init__(self, db, client: CloudCatalogClient, on_units_changed: Optional[Callable[[], None]] = None):
        self.db = db
        self.client = client
        self.on_units_changed = on_units_changed
        self.status = SyncStatus()
        self._lock = asyncio.Lock()

    @staticmethod
    def to_local(table: SyncTable, row: Dict[str, Any], synced_at: str) -> Dict[str, Any]:
        doc = dict(row)
        if table.id_field and table.id_field in doc:
            doc["id"] = doc.pop(table.id_field)
        doc["synced_at"] = synced_at
        return doc

    async def sync_table(self, table: SyncTable, synced_at: str) -> int:
        rows = await asyncio.to_thread(self.client.fetch_table, table.remote, table.active_only)
        upserted = 0
        for row in rows:
            doc = self.to_local(table, row, synced_at)
            if any(doc.get(k) is None for k in table.key_fields):
                logger.warning(f"Skipping {table.remote} row without {table.key_fields}: {row}")
                continue
            await self.db[table.collection].update_one(
                {k: doc[k] for k in table.key_fields},
                {"$set": doc},
                upsert=True
            )
            upserted += 1
        logger.info(f"Synced {upserted} row(s) from {table.remote} into {table.collection}")

        retired = await self.retire_stale(table, synced_at)
        if retired:
            logger.info(f"Retired {retired} {table.collection} row(s) no longer served by {table.remote}")
        return upserted

    async def retire_stale(self, table: SyncTable, synced_at: str) -> int:
        """
        Retire mirrored rows the cloud no longer returns.

        Only rows stamped by an earlier sync are touched. Catalog rows are
        deactivated, unit table rows are deleted.
        """
        stale = {"synced_at": {"$exists": True, "$ne": synced_at}}
        collection = self.db[table.collection]
        if table.active_only:
            stale["is_active"] = True
            result = await collection.update_many(stale, {"$set": {"is_active": False}})
            return result.modified_count
        result = await collection.delete_many(stale)
        return result.deleted_count

    async def smart_sync(self) -> SyncResult:
        if self._lock.locked():
            return SyncResult(success=False, errors=["Sync already in progress"])

        async with self._lock:
            start = time.monotonic()
            synced_at = datetime.now(timezone.utc).isoformat()
            self.status.sync_in_progress = True
            self.status.last_error = None
            items = 0
            errors: List[str] = []

            try:
                for table in SYNC_TABLES:
                    try:
                        items += await self.sync_table(table, synced_at)
                    except SyncAuthError:
                        raise
                    except SyncError as e:
                        logger.error(f"Sync of {table.remote} failed: {e.message}")
                        errors.append(e.message)
            except SyncAuthError as e:
                logger.error(f"Sync aborted: {e.message}")
                errors.append(e.message)
            finally:
                self.status.sync_in_progress = False

            if self.on_units_changed:
                self.on_units_changed()

            if errors:
                self.status.last_error = errors[-1]
            else:
                self.status.last_sync = datetime.now(timezone.utc)

            return SyncResult(
                success=not errors,
                items_synced=items,
                errors=errors,
                duration_ms=int((time.monotonic() - start) * 1000),
            )

    async def run_periodic(self, interval_seconds: int = DEFAULT_SYNC_INTERVAL_SECONDS) -> None:
        """Sync forever, sleeping interval_seconds between runs."""
        while True:
            try:
                result = await self.smart_sync()
                if result.success:
                    logger.info(f"Catalog sync complete: {result.items_synced} item(s) in {result.duration_ms} ms")
                else:
                    logger.warning(f"Catalog sync finished with errors: {result.errors}")
            except Exception as e:
                logger.error(f"Error in catalog sync loop: {e}", exc_info=True)
            self.status.next_scheduled_sync = datetime.now(timezone.utc) + timedelta(seconds=interval_seconds)
            await asyncio.sleep(interval_seconds)


async def main():
    from motor.motor_asyncio import AsyncIOMotorClient

    parser = argparse.ArgumentParser(description="Mirror the cloud catalog into the local database")
    parser.add_argument("--once", action="store_true", help="Run a single sync and exit")
    parser.add_argument("--interval", type=int, help="Seconds between syncs (default SYNC_INTERVAL_SECONDS or 900)")
    args = parser.parse_args()

    load_dotenv(Path(__file__).parent / ".env")
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    mongo = AsyncIOMotorClient(os.environ.get("MONGO_URL", "mongodb://localhost:27017"))
    db = mongo[os.environ.get("DB_NAME", "price_compare")]
    client = CloudCatalogClient(os.environ["CLOUD_API_URL"], os.environ["CLOUD_API_KEY"])
    service = CatalogSyncService(db, client)

    try:
        if args.once:
            result = await service.smart_sync()
            print(result.model_dump_json(indent=2))
        else:
            interval = args.interval or int(os.environ.get("SYNC_INTERVAL_SECONDS", DEFAULT_SYNC_INTERVAL_SECONDS))
            await service.run_periodic(interval)
    finally:
        mongo.close()


if __name__ == "__main__":
    asyncio.run(main())
