"""Shared fixtures: an in-memory stand-in for the motor database."""

import copy
import re
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from unit_conversion_engine import UnitConversionEngine


def _matches(doc, query):
    for key, cond in (query or {}).items():
        value = doc.get(key)
        if isinstance(cond, dict):
            if "$regex" in cond:
                flags = re.IGNORECASE if "i" in cond.get("$options", "") else 0
                if value is None or not re.search(cond["$regex"], str(value), flags):
                    return False
            if "$in" in cond and value not in cond["$in"]:
                return False
            if "$ne" in cond and value == cond["$ne"]:
                return False
            if "$exists" in cond and (key in doc) != cond["$exists"]:
                return False
        elif value != cond:
            return False
    return True


class MockCursor:
    def __init__(self, docs):
        self.docs = docs

    def sort(self, key_or_list, direction=None):
        keys = key_or_list if isinstance(key_or_list, list) else [(key_or_list, direction or 1)]
        # Stable sorts applied from the least significant key
        for key, direction in reversed(keys):
            self.docs.sort(key=lambda d: d.get(key) or "", reverse=direction == -1)
        return self

    async def to_list(self, length=None):
        docs = self.docs if length is None else self.docs[:length]
        return [copy.deepcopy(d) for d in docs]


class MockCollection:
    """Mock MongoDB collection"""
    def __init__(self):
        self.docs = []

    async def find_one(self, query, projection=None):
        for doc in self.docs:
            if _matches(doc, query):
                return copy.deepcopy(doc)
        return None

    def find(self, query=None, projection=None):
        return MockCursor([d for d in self.docs if _matches(d, query)])

    async def insert_one(self, doc):
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=doc.get("id"))

    async def insert_many(self, docs):
        for doc in docs:
            await self.insert_one(doc)
        return SimpleNamespace(inserted_ids=[d.get("id") for d in docs])

    async def update_one(self, query, update, upsert=False):
        for doc in self.docs:
            if _matches(doc, query):
                doc.update(copy.deepcopy(update.get("$set", {})))
                return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        if upsert:
            new_doc = {k: v for k, v in query.items() if not isinstance(v, dict)}
            new_doc.update(copy.deepcopy(update.get("$set", {})))
            self.docs.append(new_doc)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=new_doc.get("id"))
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def update_many(self, query, update):
        matched = [doc for doc in self.docs if _matches(doc, query)]
        for doc in matched:
            doc.update(copy.deepcopy(update.get("$set", {})))
        return SimpleNamespace(matched_count=len(matched), modified_count=len(matched))

    async def delete_many(self, query):
        kept = [doc for doc in self.docs if not _matches(doc, query)]
        deleted = len(self.docs) - len(kept)
        self.docs[:] = kept
        return SimpleNamespace(deleted_count=deleted)

    async def count_documents(self, query):
        return len([d for d in self.docs if _matches(d, query)])

    async def create_index(self, *args, **kwargs):
        return kwargs.get("name", "index")


class MockDB:
    """Mock MongoDB database; collections are created on first access"""
    def __init__(self):
        self._collections = {}

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = MockCollection()
        return self._collections[name]

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]


MEASUREMENT_TYPES = [
    {"unit": "lb", "measurement_type": "weight"},
    {"unit": "oz", "measurement_type": "weight"},
    {"unit": "kg", "measurement_type": "weight"},
    {"unit": "g", "measurement_type": "weight"},
    {"unit": "gal", "measurement_type": "volume"},
    {"unit": "fl_oz", "measurement_type": "volume"},
    {"unit": "l", "measurement_type": "volume"},
    {"unit": "each", "measurement_type": "count"},
    {"unit": "dozen", "measurement_type": "count"},
]

UNIT_CONVERSIONS = [
    {"from_unit": "kg", "to_unit": "lb", "conversion_factor": 2.20462},
    {"from_unit": "lb", "to_unit": "oz", "conversion_factor": 16.0},
    {"from_unit": "kg", "to_unit": "g", "conversion_factor": 1000.0},
    {"from_unit": "gal", "to_unit": "fl_oz", "conversion_factor": 128.0},
    {"from_unit": "dozen", "to_unit": "each", "conversion_factor": 12.0},
]


@pytest.fixture
def mock_db():
    """Mock MongoDB database seeded with unit tables"""
    db = MockDB()
    db.measurement_types.docs.extend(copy.deepcopy(MEASUREMENT_TYPES))
    db.unit_conversions.docs.extend(copy.deepcopy(UNIT_CONVERSIONS))
    return db


@pytest.fixture
def engine(mock_db):
    """Engine backed by the mock DB"""
    return UnitConversionEngine(db=mock_db)


@pytest.fixture
def sample_product(mock_db):
    """Ground beef, priced per lb"""
    product = {
        "id": "BEEF_80_20",
        "product_name": "Ground Beef 80/20",
        "preferred_measurement": "lb",
        "measurement_type": "weight",
        "is_active": True,
    }
    mock_db.products.docs.append(product)
    return product


@pytest.fixture
def sample_distributors(mock_db):
    distributors = [
        {"id": "DIST_A", "distributor_name": "Sysco", "is_active": True},
        {"id": "DIST_B", "distributor_name": "US Foods", "is_active": True},
        {"id": "DIST_C", "distributor_name": "PFG", "is_active": True},
    ]
    mock_db.distributors.docs.extend(distributors)
    return distributors
