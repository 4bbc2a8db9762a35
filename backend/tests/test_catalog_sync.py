# backend/tests/test_catalog_sync.py

"""
Tests for the cloud catalog mirror
"""

import pytest
import requests

from catalog_sync import CatalogSyncService, CloudCatalogClient, SYNC_TABLES
from service_errors import SyncAuthError, SyncError


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self.payload = payload
        self.text = text

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class FakeSession:
    """Returns canned responses keyed by table name"""
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def get(self, url, headers=None, params=None, timeout=None):
        table = url.rsplit("/", 1)[-1]
        self.calls.append((table, params, headers))
        response = self.responses.get(table, FakeResponse(payload=[]))
        if isinstance(response, Exception):
            raise response
        return response


CLOUD_ROWS = {
    "measurement_types": [
        {"unit": "lb", "measurement_type": "weight"},
        {"unit": "case", "measurement_type": "count"},
    ],
    "unit_conversions": [
        {"from_unit": "kg", "to_unit": "lb", "conversion_factor": 2.2046},
    ],
    "product_catalog": [
        {"catalog_product_id": "BEEF_80_20", "product_name": "Ground Beef 80/20 (cloud)",
         "preferred_measurement": "lb", "measurement_type": "weight", "is_active": True},
        {"catalog_product_id": "SALMON", "product_name": "Atlantic Salmon",
         "preferred_measurement": "lb", "measurement_type": "weight", "is_active": True},
    ],
    "distributors": [
        {"distributor_id": "DIST_A", "distributor_name": "Sysco", "is_active": True},
    ],
}


def make_service(db, responses, on_units_changed=None):
    client = CloudCatalogClient("https://cloud.example.com/", "secret-key", session=FakeSession(responses))
    return CatalogSyncService(db, client, on_units_changed=on_units_changed)


class TestCloudCatalogClient:

    def test_request_shape(self):
        session = FakeSession({"product_catalog": FakeResponse(payload=[])})
        client = CloudCatalogClient("https://cloud.example.com/", "secret-key", session=session)

        assert client.fetch_table("product_catalog", active_only=True) == []
        table, params, headers = session.calls[0]
        assert table == "product_catalog"
        assert params == {"select": "*", "is_active": "eq.true"}
        assert headers["apikey"] == "secret-key"
        assert headers["Authorization"] == "Bearer secret-key"

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_failure(self, status):
        session = FakeSession({"product_catalog": FakeResponse(status_code=status, text="denied")})
        client = CloudCatalogClient("https://cloud.example.com", "bad", session=session)
        with pytest.raises(SyncAuthError) as exc_info:
            client.verify_authentication()
        assert exc_info.value.error_code == "SYNC_AUTH_ERROR"

    def test_server_error(self):
        session = FakeSession({"distributors": FakeResponse(status_code=500, text="boom")})
        client = CloudCatalogClient("https://cloud.example.com", "key", session=session)
        with pytest.raises(SyncError) as exc_info:
            client.fetch_table("distributors")
        assert exc_info.value.error_code == "SYNC_ERROR"

    def test_network_error(self):
        session = FakeSession({"distributors": requests.exceptions.ConnectionError("offline")})
        client = CloudCatalogClient("https://cloud.example.com", "key", session=session)
        with pytest.raises(SyncError):
            client.fetch_table("distributors")

    def test_bad_payload(self):
        session = FakeSession({
            "distributors": FakeResponse(payload=ValueError("not json")),
            "products": FakeResponse(payload={"rows": []}),
        })
        client = CloudCatalogClient("https://cloud.example.com", "key", session=session)
        with pytest.raises(SyncError):
            client.fetch_table("distributors")
        with pytest.raises(SyncError):
            client.fetch_table("products")


class TestCatalogSyncService:

    @pytest.mark.asyncio
    async def test_sync_upserts_with_local_ids(self, mock_db, sample_product):
        responses = {table: FakeResponse(payload=rows) for table, rows in CLOUD_ROWS.items()}
        calls = []
        service = make_service(mock_db, responses, on_units_changed=lambda: calls.append(True))

        result = await service.smart_sync()

        assert result.success
        assert result.items_synced == 6
        assert calls == [True]

        products = {p["id"]: p for p in mock_db.products.docs}
        assert len(mock_db.products.docs) == 2
        assert products["BEEF_80_20"]["product_name"] == "Ground Beef 80/20 (cloud)"
        assert "catalog_product_id" not in products["SALMON"]
        assert "synced_at" in products["SALMON"]

        kg_lb = [c for c in mock_db.unit_conversions.docs if (c["from_unit"], c["to_unit"]) == ("kg", "lb")]
        assert len(kg_lb) == 1
        assert kg_lb[0]["conversion_factor"] == 2.2046

        assert service.status.last_sync is not None
        assert service.status.last_error is None
        assert not service.status.sync_in_progress

    @pytest.mark.asyncio
    async def test_auth_failure_aborts_sync(self, mock_db):
        responses = {
            "measurement_types": FakeResponse(status_code=403, text="forbidden"),
            "product_catalog": FakeResponse(payload=CLOUD_ROWS["product_catalog"]),
        }
        service = make_service(mock_db, responses)

        result = await service.smart_sync()

        assert not result.success
        assert result.items_synced == 0
        assert len(result.errors) == 1
        assert mock_db.products.docs == []
        assert service.status.last_sync is None
        assert service.status.last_error == result.errors[0]
        assert [call[0] for call in service.client.session.calls] == ["measurement_types"]

    @pytest.mark.asyncio
    async def test_table_failure_continues(self, mock_db):
        responses = {table: FakeResponse(payload=rows) for table, rows in CLOUD_ROWS.items()}
        responses["unit_conversions"] = FakeResponse(status_code=500, text="boom")
        service = make_service(mock_db, responses)

        result = await service.smart_sync()

        assert not result.success
        assert len(result.errors) == 1
        assert len(mock_db.products.docs) == 2
        assert len(service.client.session.calls) == len(SYNC_TABLES)

    @pytest.mark.asyncio
    async def test_rows_dropped_by_cloud_are_retired(self, mock_db, sample_product):
        responses = {table: FakeResponse(payload=rows) for table, rows in CLOUD_ROWS.items()}
        service = make_service(mock_db, responses)
        await service.smart_sync()

        responses["product_catalog"] = FakeResponse(payload=[CLOUD_ROWS["product_catalog"][1]])
        responses["unit_conversions"] = FakeResponse(payload=[])
        result = await service.smart_sync()

        assert result.success
        products = {p["id"]: p for p in mock_db.products.docs}
        assert products["BEEF_80_20"]["is_active"] is False
        assert products["SALMON"]["is_active"] is True
        pairs = [(c["from_unit"], c["to_unit"]) for c in mock_db.unit_conversions.docs]
        assert ("kg", "lb") not in pairs
        assert ("lb", "oz") in pairs

    @pytest.mark.asyncio
    async def test_local_rows_never_synced_are_kept(self, mock_db, sample_product):
        service = make_service(mock_db, {})

        result = await service.smart_sync()

        assert result.success
        assert mock_db.products.docs[0]["is_active"] is True
        assert len(mock_db.unit_conversions.docs) == 5

    @pytest.mark.asyncio
    async def test_failed_table_is_not_retired(self, mock_db):
        responses = {table: FakeResponse(payload=rows) for table, rows in CLOUD_ROWS.items()}
        service = make_service(mock_db, responses)
        await service.smart_sync()

        responses["product_catalog"] = FakeResponse(status_code=500, text="boom")
        result = await service.smart_sync()

        assert not result.success
        assert all(p["is_active"] for p in mock_db.products.docs)

    @pytest.mark.asyncio
    async def test_rows_without_keys_are_skipped(self, mock_db):
        responses = {"distributors": FakeResponse(payload=[{"distributor_name": "No id"}])}
        service = make_service(mock_db, responses)

        result = await service.smart_sync()

        assert result.success
        assert result.items_synced == 0
        assert mock_db.distributors.docs == []

    @pytest.mark.asyncio
    async def test_concurrent_sync_refused(self, mock_db):
        service = make_service(mock_db, {})

        async with service._lock:
            result = await service.smart_sync()

        assert not result.success
        assert result.errors == ["Sync already in progress"]
