from fastapi import FastAPI, APIRouter, HTTPException, Depends, File, UploadFile, Form, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
import asyncio
import re
from pathlib import Path
from pydantic import BaseModel, Field, ConfigDict
from typing import List, Optional, Dict, Any
import uuid
from datetime import date, datetime, timezone, timedelta
import jwt
import bcrypt

from unit_conversion_engine import (
    UnitConversionEngine,
    ConversionError,
    ConversionResult,
    MeasurementType,
)
from distributor_spec_service import (
    DistributorSpecService,
    DistributorSpecCreate,
    DistributorSpecUpdate,
    DistributorSpec,
)
from pricing_service import PricingService, PriceCreate, PriceEvent, PriceComparisonRow
from price_import import PriceImportService, PriceImportResult
from catalog_sync import CatalogSyncService, CloudCatalogClient, SyncResult, DEFAULT_SYNC_INTERVAL_SECONDS
from service_errors import ServiceError

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# MongoDB connection
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ.get('DB_NAME', 'price_compare')]

app = FastAPI(title="Restaurant Price Comparison API")

# ==================== CORS CONFIGURATION (MUST BE FIRST) ====================
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "tauri://localhost",
]

cors_origins_env = os.environ.get('CORS_ORIGINS', '')
if cors_origins_env:
    cors_origins = [origin.strip() for origin in cors_origins_env.split(',') if origin.strip()]
else:
    cors_origins = DEFAULT_CORS_ORIGINS

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=cors_origins,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With", "Accept", "Origin"],
    max_age=600,
)

# ==================== ERROR HANDLERS ====================

@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error_code": exc.error_code, "field": exc.field}
    )

@app.exception_handler(ConversionError)
async def conversion_error_handler(request: Request, exc: ConversionError):
    return JSONResponse(status_code=400, content={"detail": exc.message, **exc.to_dict()})

# ==================== HEALTH ENDPOINT (ROOT LEVEL) ====================
@app.get("/api/health")
async def health_check():
    """Health check endpoint for monitoring"""
    return {
        "ok": True,
        "time": datetime.now(timezone.utc).isoformat(),
        "service": "Restaurant Price Comparison API",
        "version": "1.0.0"
    }

api_router = APIRouter(prefix="/api")

# JWT Configuration
SECRET_KEY = os.environ.get('JWT_SECRET', 'price-compare-secret-change-in-production')
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_HOURS = 24

security = HTTPBearer()

# ==================== SERVICES ====================

conversion_engine = UnitConversionEngine(db=db)
spec_service = DistributorSpecService(db, conversion_engine)
pricing_service = PricingService(db)
price_import_service = PriceImportService(db, pricing_service)
sync_service: Optional[CatalogSyncService] = None

# ==================== MODELS ====================

ROLES = ['admin', 'owner', 'gm', 'manager', 'chef', 'viewer']
CATALOG_WRITE_ROLES = ['admin', 'owner', 'gm', 'manager']

class UserBase(BaseModel):
    email: str
    full_name: str
    role: str = "viewer"
    restaurant_id: Optional[str] = None

class UserCreate(UserBase):
    password: str

class User(UserBase):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    is_active: bool = True

class UserLogin(BaseModel):
    email: str
    password: str

class Token(BaseModel):
    access_token: str
    token_type: str
    user: Dict[str, Any]

# Product Model
class ProductCreate(BaseModel):
    product_name: str
    category_id: Optional[str] = None
    preferred_measurement: str
    measurement_type: MeasurementType
    description: Optional[str] = None

class ProductUpdate(BaseModel):
    product_name: Optional[str] = None
    category_id: Optional[str] = None
    preferred_measurement: Optional[str] = None
    measurement_type: Optional[MeasurementType] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None

class Product(ProductCreate):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    is_active: bool = True
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    updated_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

# Distributor Model
class DistributorCreate(BaseModel):
    distributor_name: str
    distributor_code: Optional[str] = None
    contact_info: Dict[str, Any] = {}

class DistributorUpdate(BaseModel):
    distributor_name: Optional[str] = None
    distributor_code: Optional[str] = None
    contact_info: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None

class Distributor(DistributorCreate):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    is_active: bool = True
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

# Unit requests
class ConvertRequest(BaseModel):
    value: float
    from_unit: str
    to_unit: str

class ConversionCreate(BaseModel):
    from_unit: str
    to_unit: str
    conversion_factor: float = Field(gt=0)

class MeasurementUnitCreate(BaseModel):
    unit: str
    measurement_type: MeasurementType

class TotalUnitsRequest(BaseModel):
    case_packs: int = Field(gt=0)
    pack_size: float = Field(gt=0)
    pack_unit: str
    preferred_unit: str

class CopySpecsRequest(BaseModel):
    from_distributor_id: str
    to_distributor_id: str
    product_ids: Optional[List[str]] = None

# ==================== HELPER FUNCTIONS ====================

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()

def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode(), hashed.encode())

def create_access_token(data: dict) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    try:
        token = credentials.credentials
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id = payload.get("sub")
        if user_id is None:
            raise HTTPException(status_code=401, detail="Invalid token")
        user = await db.users.find_one({"id": user_id}, {"_id": 0, "password": 0})
        if user is None:
            raise HTTPException(status_code=401, detail="User not found")
        if not user.get("is_active", True):
            raise HTTPException(status_code=401, detail="Account disabled")
        return user
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

def require_roles(user: dict, roles: List[str], action: str):
    if user.get("role") not in roles:
        raise HTTPException(status_code=403, detail=f"Only {'/'.join(roles)} can {action}")

def resolve_restaurant(user: dict, restaurant_id: Optional[str]) -> str:
    """Restaurant a request acts on; non-admins are limited to their own."""
    target = restaurant_id or user.get("restaurant_id")
    if not target:
        raise HTTPException(status_code=400, detail="restaurant_id is required")
    if user.get("role") != "admin" and target != user.get("restaurant_id"):
        raise HTTPException(status_code=403, detail="No access to this restaurant")
    return target

async def get_product_or_404(product_id: str) -> dict:
    product = await db.products.find_one({"id": product_id}, {"_id": 0})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product

async def ensure_unit_matches_type(unit: str, measurement_type: MeasurementType):
    if not await conversion_engine.validate_measurement_unit(unit, measurement_type):
        raise HTTPException(status_code=400, detail=f"Unit {unit} is not valid for {measurement_type.value}")

# ==================== AUTH ROUTES ====================

@api_router.post("/auth/register", response_model=User)
async def register(data: UserCreate):
    existing = await db.users.find_one({"email": data.email})
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")
    if data.role not in ROLES:
        raise HTTPException(status_code=400, detail=f"Invalid role. Must be one of: {ROLES}")

    user = User(**data.model_dump(exclude={"password"}))
    doc = user.model_dump()
    doc["password"] = hash_password(data.password)
    await db.users.insert_one(doc)
    return user

@api_router.post("/auth/login", response_model=Token)
async def login(data: UserLogin):
    user = await db.users.find_one({"email": data.email}, {"_id": 0})
    if not user or not verify_password(data.password, user["password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="Account disabled")

    token = create_access_token({"sub": user["id"], "role": user["role"]})
    user.pop("password", None)
    await db.users.update_one({"id": user["id"]}, {"$set": {"last_login": datetime.now(timezone.utc).isoformat()}})
    return Token(access_token=token, token_type="bearer", user=user)

@api_router.get("/auth/me")
async def get_me(current_user: dict = Depends(get_current_user)):
    return current_user

# ==================== UNIT ROUTES ====================

@api_router.get("/units/measurement-types")
async def get_measurement_types(current_user: dict = Depends(get_current_user)):
    return await conversion_engine.get_measurement_types()

@api_router.get("/units/conversions")
async def get_conversions(current_user: dict = Depends(get_current_user)):
    return await conversion_engine.get_all_conversions()

@api_router.get("/units/by-type/{measurement_type}", response_model=List[str])
async def get_units_by_type(measurement_type: MeasurementType, current_user: dict = Depends(get_current_user)):
    return await conversion_engine.get_units_by_type(measurement_type)

@api_router.post("/units/convert", response_model=ConversionResult)
async def convert_units(data: ConvertRequest, current_user: dict = Depends(get_current_user)):
    """Conversion failures come back as status ERROR with an error_code, not as HTTP errors"""
    return await conversion_engine.convert(data.value, data.from_unit, data.to_unit)

@api_router.post("/units/total-preferred-units", response_model=ConversionResult)
async def total_preferred_units(data: TotalUnitsRequest, current_user: dict = Depends(get_current_user)):
    return await conversion_engine.calculate_total_preferred_units(
        data.case_packs, data.pack_size, data.pack_unit, data.preferred_unit
    )

@api_router.post("/units/conversions")
async def add_conversion(data: ConversionCreate, current_user: dict = Depends(get_current_user)):
    require_roles(current_user, ["admin"], "add unit conversions")
    rows = await conversion_engine.add_conversion(data.from_unit, data.to_unit, data.conversion_factor)
    return {"message": "Conversion added", "conversions": rows}

@api_router.post("/units/measurement-types")
async def add_measurement_unit(data: MeasurementUnitCreate, current_user: dict = Depends(get_current_user)):
    require_roles(current_user, ["admin"], "add measurement units")
    return await conversion_engine.add_measurement_unit(data.unit, data.measurement_type)

# ==================== PRODUCT ROUTES ====================

@api_router.post("/products", response_model=Product)
async def create_product(data: ProductCreate, current_user: dict = Depends(get_current_user)):
    require_roles(current_user, CATALOG_WRITE_ROLES, "create products")
    existing = await db.products.find_one(
        {"product_name": {"$regex": f"^{re.escape(data.product_name)}$", "$options": "i"}}
    )
    if existing:
        raise HTTPException(status_code=400, detail="Product name already exists")
    await ensure_unit_matches_type(data.preferred_measurement, data.measurement_type)

    product = Product(**data.model_dump())
    await db.products.insert_one(product.model_dump(mode="json"))
    return product

@api_router.get("/products", response_model=List[Product])
async def get_products(
    category_id: Optional[str] = None,
    search: Optional[str] = None,
    active_only: bool = True,
    current_user: dict = Depends(get_current_user)
):
    query: Dict[str, Any] = {}
    if category_id:
        query["category_id"] = category_id
    if search:
        query["product_name"] = {"$regex": re.escape(search), "$options": "i"}
    if active_only:
        query["is_active"] = True
    return await db.products.find(query, {"_id": 0}).sort("product_name", 1).to_list(1000)

@api_router.get("/products/{product_id}", response_model=Product)
async def get_product(product_id: str, current_user: dict = Depends(get_current_user)):
    return await get_product_or_404(product_id)

@api_router.put("/products/{product_id}")
async def update_product(product_id: str, data: ProductUpdate, current_user: dict = Depends(get_current_user)):
    """Update a product; a new preferred unit recomputes every spec of it"""
    require_roles(current_user, CATALOG_WRITE_ROLES, "update products")
    product = await get_product_or_404(product_id)
    changes = data.model_dump(mode="json", exclude_unset=True, exclude_none=True)

    new_unit = changes.get("preferred_measurement", product["preferred_measurement"])
    new_type = MeasurementType(changes.get("measurement_type", product["measurement_type"]))
    unit_changed = new_unit != product["preferred_measurement"]
    if unit_changed or new_type.value != product["measurement_type"]:
        await ensure_unit_matches_type(new_unit, new_type)

    if unit_changed:
        # Reject before writing if any spec cannot convert to the new unit
        check = await spec_service.recalculate_for_product(product_id, preferred_unit=new_unit, dry_run=True)
        if check["failed"]:
            raise HTTPException(
                status_code=400,
                detail={"message": f"{len(check['failed'])} distributor spec(s) cannot convert to {new_unit}", "failed": check["failed"]}
            )

    changes["updated_at"] = datetime.now(timezone.utc).isoformat()
    await db.products.update_one({"id": product_id}, {"$set": changes})

    recalculated = None
    if unit_changed:
        recalculated = await spec_service.recalculate_for_product(product_id)
        logger.info(f"Product {product_id} preferred unit -> {new_unit}; {recalculated['updated']} spec(s) recalculated")

    return {"product": await get_product_or_404(product_id), "specs_recalculated": recalculated}

@api_router.delete("/products/{product_id}")
async def deactivate_product(product_id: str, current_user: dict = Depends(get_current_user)):
    require_roles(current_user, CATALOG_WRITE_ROLES, "deactivate products")
    result = await db.products.update_one(
        {"id": product_id},
        {"$set": {"is_active": False, "updated_at": datetime.now(timezone.utc).isoformat()}}
    )
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"success": True, "message": "Product deactivated"}

# ==================== DISTRIBUTOR ROUTES ====================

@api_router.post("/distributors", response_model=Distributor)
async def create_distributor(data: DistributorCreate, current_user: dict = Depends(get_current_user)):
    require_roles(current_user, CATALOG_WRITE_ROLES, "create distributors")
    if data.distributor_code:
        existing = await db.distributors.find_one({"distributor_code": data.distributor_code})
        if existing:
            raise HTTPException(status_code=400, detail="Distributor code already exists")
    distributor = Distributor(**data.model_dump())
    await db.distributors.insert_one(distributor.model_dump())
    return distributor

@api_router.get("/distributors", response_model=List[Distributor])
async def get_distributors(active_only: bool = True, current_user: dict = Depends(get_current_user)):
    query = {"is_active": True} if active_only else {}
    return await db.distributors.find(query, {"_id": 0}).sort("distributor_name", 1).to_list(1000)

@api_router.get("/distributors/{distributor_id}", response_model=Distributor)
async def get_distributor(distributor_id: str, current_user: dict = Depends(get_current_user)):
    distributor = await db.distributors.find_one({"id": distributor_id}, {"_id": 0})
    if not distributor:
        raise HTTPException(status_code=404, detail="Distributor not found")
    return distributor

@api_router.put("/distributors/{distributor_id}", response_model=Distributor)
async def update_distributor(distributor_id: str, data: DistributorUpdate, current_user: dict = Depends(get_current_user)):
    require_roles(current_user, CATALOG_WRITE_ROLES, "update distributors")
    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    result = await db.distributors.update_one({"id": distributor_id}, {"$set": changes})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Distributor not found")
    return await db.distributors.find_one({"id": distributor_id}, {"_id": 0})

@api_router.delete("/distributors/{distributor_id}")
async def deactivate_distributor(distributor_id: str, current_user: dict = Depends(get_current_user)):
    require_roles(current_user, CATALOG_WRITE_ROLES, "deactivate distributors")
    result = await db.distributors.update_one({"id": distributor_id}, {"$set": {"is_active": False}})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Distributor not found")
    return {"success": True, "message": "Distributor deactivated"}

# ==================== DISTRIBUTOR SPEC ROUTES ====================

@api_router.post("/distributor-specs", response_model=DistributorSpec)
async def create_distributor_spec(data: DistributorSpecCreate, current_user: dict = Depends(get_current_user)):
    require_roles(current_user, CATALOG_WRITE_ROLES, "create distributor specs")
    return await spec_service.create_spec(data)

@api_router.get("/distributor-specs")
async def get_distributor_specs(
    product_id: Optional[str] = None,
    distributor_id: Optional[str] = None,
    item_code: Optional[str] = None,
    current_user: dict = Depends(get_current_user)
):
    if item_code:
        return await spec_service.search_by_item_code(item_code, distributor_id)
    if product_id:
        return await spec_service.get_product_specs(product_id)
    if distributor_id:
        return await spec_service.get_distributor_specs(distributor_id)
    raise HTTPException(status_code=400, detail="One of product_id, distributor_id or item_code is required")

@api_router.get("/distributor-specs/{spec_id}")
async def get_distributor_spec(spec_id: str, current_user: dict = Depends(get_current_user)):
    spec = await spec_service.get_spec(spec_id)
    if not spec:
        raise HTTPException(status_code=404, detail="Spec not found")
    return spec

@api_router.put("/distributor-specs/{spec_id}")
async def update_distributor_spec(spec_id: str, data: DistributorSpecUpdate, current_user: dict = Depends(get_current_user)):
    require_roles(current_user, CATALOG_WRITE_ROLES, "update distributor specs")
    return await spec_service.update_spec(spec_id, data)

@api_router.delete("/distributor-specs/{spec_id}")
async def deactivate_distributor_spec(spec_id: str, current_user: dict = Depends(get_current_user)):
    require_roles(current_user, CATALOG_WRITE_ROLES, "deactivate distributor specs")
    await spec_service.deactivate_spec(spec_id)
    return {"success": True, "message": "Spec deactivated"}

@api_router.post("/distributor-specs/bulk-import")
async def bulk_import_distributor_specs(specs: List[DistributorSpecCreate], current_user: dict = Depends(get_current_user)):
    require_roles(current_user, CATALOG_WRITE_ROLES, "import distributor specs")
    return await spec_service.bulk_import_specs(specs)

@api_router.post("/distributor-specs/copy")
async def copy_distributor_specs(data: CopySpecsRequest, current_user: dict = Depends(get_current_user)):
    require_roles(current_user, CATALOG_WRITE_ROLES, "copy distributor specs")
    copied = await spec_service.copy_specs(data.from_distributor_id, data.to_distributor_id, data.product_ids)
    return {"copied": copied}

# ==================== PRICE ROUTES ====================

@api_router.post("/prices", response_model=PriceEvent)
async def record_price(
    data: PriceCreate,
    restaurant_id: Optional[str] = None,
    current_user: dict = Depends(get_current_user)
):
    target = resolve_restaurant(current_user, restaurant_id)
    return await pricing_service.record_price(
        restaurant_id=target,
        catalog_product_id=data.catalog_product_id,
        distributor_id=data.distributor_id,
        case_price=data.case_price,
        effective_date=data.effective_date,
        source_type=data.source_type,
    )

@api_router.get("/prices/current", response_model=List[PriceEvent])
async def get_current_prices(
    restaurant_id: Optional[str] = None,
    product_id: Optional[str] = None,
    current_user: dict = Depends(get_current_user)
):
    target = resolve_restaurant(current_user, restaurant_id)
    return await pricing_service.get_current_prices(target, product_id)

@api_router.get("/prices/comparison", response_model=List[PriceComparisonRow])
async def get_price_comparison(restaurant_id: Optional[str] = None, current_user: dict = Depends(get_current_user)):
    target = resolve_restaurant(current_user, restaurant_id)
    return await pricing_service.get_price_comparison(target)

@api_router.get("/prices/winners", response_model=Dict[str, str])
async def get_price_winners(restaurant_id: Optional[str] = None, current_user: dict = Depends(get_current_user)):
    target = resolve_restaurant(current_user, restaurant_id)
    return await pricing_service.get_winners(target)

@api_router.get("/prices/history", response_model=List[PriceEvent])
async def get_price_history(
    product_id: str,
    distributor_id: Optional[str] = None,
    restaurant_id: Optional[str] = None,
    current_user: dict = Depends(get_current_user)
):
    target = resolve_restaurant(current_user, restaurant_id)
    return await pricing_service.get_price_history(target, product_id, distributor_id)

@api_router.post("/prices/import-csv", response_model=PriceImportResult)
async def import_price_csv(
    file: UploadFile = File(...),
    distributor_id: str = Form(...),
    effective_date: Optional[date] = Form(None),
    restaurant_id: Optional[str] = Form(None),
    current_user: dict = Depends(get_current_user)
):
    """Import a distributor price list; rows are matched by distributor item code"""
    target = resolve_restaurant(current_user, restaurant_id)
    distributor = await db.distributors.find_one({"id": distributor_id}, {"_id": 0})
    if not distributor:
        raise HTTPException(status_code=404, detail="Distributor not found")

    contents = await file.read()
    return await price_import_service.import_price_csv(
        contents, file.filename or "upload.csv", target, distributor_id, effective_date
    )

# ==================== SYNC ROUTES ====================

@api_router.get("/sync/status")
async def get_sync_status(current_user: dict = Depends(get_current_user)):
    if sync_service is None:
        return {"enabled": False}
    return {"enabled": True, **sync_service.status.model_dump(mode="json")}

@api_router.post("/sync/force", response_model=SyncResult)
async def force_sync(current_user: dict = Depends(get_current_user)):
    require_roles(current_user, CATALOG_WRITE_ROLES, "force a catalog sync")
    if sync_service is None:
        raise HTTPException(status_code=503, detail="Catalog sync is not configured (CLOUD_API_URL)")
    return await sync_service.smart_sync()


app.include_router(api_router)
app.state.sync_task = None

def start_background_sync(service: CatalogSyncService, interval: int) -> asyncio.Task:
    """Start periodic sync; the task is held on app.state until shutdown."""
    app.state.sync_task = asyncio.create_task(service.run_periodic(interval))
    return app.state.sync_task

async def stop_background_sync():
    task = app.state.sync_task
    if task is None:
        return
    app.state.sync_task = None
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        logger.info("Catalog sync background task stopped")

@app.on_event("startup")
async def startup_event():
    global sync_service
    try:
        await db.distributor_product_specs.create_index(
            [("catalog_product_id", 1), ("distributor_id", 1)], unique=True, name="spec_product_distributor_unique"
        )
        await db.distributor_product_specs.create_index([("distributor_item_code", 1)], name="spec_item_code_idx")
        await db.measurement_types.create_index([("unit", 1)], unique=True, name="measurement_unit_unique")
        await db.unit_conversions.create_index([("from_unit", 1), ("to_unit", 1)], name="conversion_pair_idx")
        await db.price_events.create_index(
            [("restaurant_id", 1), ("catalog_product_id", 1), ("effective_date", -1)], name="price_current_idx"
        )
        logger.info("Indexes created")
    except Exception as e:
        logger.warning(f"Failed to create indexes: {e}")

    cloud_url = os.environ.get('CLOUD_API_URL')
    if cloud_url:
        sync_service = CatalogSyncService(
            db,
            CloudCatalogClient(cloud_url, os.environ.get('CLOUD_API_KEY', '')),
            on_units_changed=conversion_engine.invalidate_cache,
        )
        interval = int(os.environ.get('SYNC_INTERVAL_SECONDS', DEFAULT_SYNC_INTERVAL_SECONDS))
        if interval > 0:
            start_background_sync(sync_service, interval)
            logger.info(f"Started catalog sync background task (every {interval}s)")

@app.on_event("shutdown")
async def shutdown_db_client():
    await stop_background_sync()
    client.close()
