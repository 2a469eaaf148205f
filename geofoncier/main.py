"""FastAPI application for the GéoFoncier land registry.

Run with ``uvicorn geofoncier.main:create_app --factory``. Importing this module
builds nothing; the engine and collaborators exist only once ``create_app`` runs.
"""

import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import NamedTuple

import logfire
from fastapi import APIRouter, Depends, FastAPI, File, Form, Header, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session
from starlette.requests import Request

from .backends import SpatialBackend, build_backend
from .brokerage import BrokerageService, contact_to_dict
from .config import Settings
from .database import build_engine, get_db, init_db, make_session_factory
from .documents import DOCUMENT_TYPES, DocumentService, document_to_dict
from .errors import Forbidden, Unauthorized, ValidationError, register_exception_handlers
from .hierarchy import HierarchyStore, arrondissement_to_dict, department_to_dict, region_to_dict
from .integrity import cleanup_report, geographic_report, platform_stats
from .notifications import Notifier, build_notifier
from .parcels import ImageUpload, ParcelRegistry, parcel_to_dict
from .payments import (
    PaymentGateway,
    SubscriptionService,
    build_gateway,
    subscription_to_dict,
    verify_signature,
)
from .pricing import client_pricing, owner_pricing, simulate
from .schemas import (
    ArrondissementCreate,
    ContactRequest,
    ContactStatus,
    DepartmentCreate,
    DivisionUpdate,
    DocumentReview,
    DocumentTarget,
    OptimizeRequest,
    ParcelActivity,
    ParcelCreate,
    ParcelFilters,
    ParcelUpdate,
    PaymentInitiate,
    PricingSimulation,
    RegionComparison,
    RegionCreate,
    RegionsNearPoint,
    UserProfile,
)
from .spatial import SpatialQueryEngine
from .storage import ObjectStore, build_object_store
from .users import get_user, sync_profile, user_to_dict

logger = logging.getLogger(__name__)

router = APIRouter()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db(app.state.engine)
    yield
    app.state.engine.dispose()


def create_app(
    settings: Settings | None = None,
    *,
    backend: SpatialBackend | None = None,
    notifier: Notifier | None = None,
    object_store: ObjectStore | None = None,
    gateway: PaymentGateway | None = None,
) -> FastAPI:
    """Build the application. Collaborators not given are built from ``settings``."""
    settings = settings or Settings.from_env()
    engine = build_engine(settings)

    app = FastAPI(
        title="GéoFoncier API",
        description="Land-parcel registry: administrative divisions, parcels, spatial search and brokerage",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = make_session_factory(engine)
    app.state.backend = backend or build_backend(settings.backend_name)
    app.state.notifier = notifier or build_notifier(settings)
    app.state.object_store = object_store or build_object_store(settings)
    app.state.gateway = gateway or build_gateway(settings)

    # Configure Logfire for observability (after app creation)
    if settings.logfire_token:
        logfire.configure(token=settings.logfire_token)
        logfire.instrument_fastapi(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    app.include_router(router)
    logger.info("GéoFoncier API ready (spatial backend: %s)", app.state.backend.name)
    return app


# =============================================================================
# Dependencies
# =============================================================================

security = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def verify_admin(request: Request, credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Verify admin bearer token."""
    if not credentials:
        raise HTTPException(status_code=401, detail="Admin token required")
    if credentials.credentials != request.app.state.settings.admin_token:
        raise HTTPException(status_code=403, detail="Invalid admin token")
    return True


def _parse_user_id(raw: str | None) -> uuid.UUID | None:
    if not raw:
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise Unauthorized("X-User-Id is not a valid user id")


def current_user_id(x_user_id: str | None = Header(default=None)) -> uuid.UUID:
    """Caller identity, authenticated upstream and forwarded in ``X-User-Id``."""
    user_id = _parse_user_id(x_user_id)
    if user_id is None:
        raise Unauthorized("X-User-Id header required")
    return user_id


class Actor(NamedTuple):
    user_id: uuid.UUID | None
    is_admin: bool


def current_actor(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
    x_user_id: str | None = Header(default=None),
) -> Actor:
    """Either an administrator (bearer token) or an identified user."""
    is_admin = bool(credentials) and credentials.credentials == request.app.state.settings.admin_token
    user_id = _parse_user_id(x_user_id)
    if not is_admin and user_id is None:
        raise Unauthorized("X-User-Id header or admin token required")
    return Actor(user_id=user_id, is_admin=is_admin)


def require_owner(owner_id: uuid.UUID, actor: Actor) -> None:
    if not actor.is_admin and owner_id != actor.user_id:
        raise Forbidden()


def get_hierarchy(db: Session = Depends(get_db)) -> HierarchyStore:
    return HierarchyStore(db)


def get_spatial(request: Request, db: Session = Depends(get_db)) -> SpatialQueryEngine:
    return SpatialQueryEngine(db, request.app.state.backend, request.app.state.settings)


def get_registry(
    request: Request,
    db: Session = Depends(get_db),
    spatial: SpatialQueryEngine = Depends(get_spatial),
) -> ParcelRegistry:
    return ParcelRegistry(db, spatial, request.app.state.object_store, request.app.state.settings)


def get_brokerage(request: Request, db: Session = Depends(get_db)) -> BrokerageService:
    return BrokerageService(db, request.app.state.notifier, request.app.state.settings)


def get_subscriptions(request: Request, db: Session = Depends(get_db)) -> SubscriptionService:
    return SubscriptionService(db, request.app.state.gateway, request.app.state.settings)


def get_documents(request: Request, db: Session = Depends(get_db)) -> DocumentService:
    return DocumentService(db, request.app.state.object_store)


async def raw_body(request: Request) -> bytes:
    return await request.body()


@router.get("/")
def root(settings: Settings = Depends(get_settings)):
    """Health check endpoint."""
    return {"status": "ok", "service": "GéoFoncier API", "spatial_backend": settings.backend_name}


# =============================================================================
# Users
# =============================================================================


@router.put("/api/users/me")
def put_profile(
    profile: UserProfile,
    user_id: uuid.UUID = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    """Create or refresh the caller's local profile."""
    return {"success": True, "user": user_to_dict(sync_profile(db, user_id, profile))}


@router.get("/api/users/me")
def get_profile(user_id: uuid.UUID = Depends(current_user_id), db: Session = Depends(get_db)):
    return {"success": True, "user": user_to_dict(get_user(db, user_id))}


# =============================================================================
# Regions
# =============================================================================


@router.get("/api/regions")
def list_regions(hierarchy: HierarchyStore = Depends(get_hierarchy)):
    regions = [region_to_dict(r) for r in hierarchy.list_regions()]
    return {"success": True, "regions": regions, "count": len(regions)}


@router.get("/api/regions/cached")
def list_cached_regions(hierarchy: HierarchyStore = Depends(get_hierarchy)):
    """Region statistics from the cache (``source`` tells whether it was populated)."""
    regions, source = hierarchy.cached_regions()
    return {"success": True, "regions": regions, "count": len(regions), "source": source}


@router.get("/api/regions/by-name/{name}/parcels")
def region_parcels(name: str, spatial: SpatialQueryEngine = Depends(get_spatial)):
    """Active parcels whose boundary shares interior with the named region."""
    region, result = spatial.parcels_in_region(name)
    return {"success": True, "region": {"id": region.id, "name": region.name}, **result.to_dict()}


@router.get("/api/regions/{region_id}")
def get_region(region_id: int, hierarchy: HierarchyStore = Depends(get_hierarchy)):
    return {"success": True, "region": region_to_dict(hierarchy.get_region(region_id), nested=True)}


@router.get("/api/regions/{region_id}/area")
def get_region_area(region_id: int, spatial: SpatialQueryEngine = Depends(get_spatial)):
    return {"success": True, **spatial.region_area(region_id)}


@router.post("/api/regions", status_code=201, dependencies=[Depends(verify_admin)])
def create_region(data: RegionCreate, hierarchy: HierarchyStore = Depends(get_hierarchy)):
    return {"success": True, "region": region_to_dict(hierarchy.create_region(data))}


@router.put("/api/regions/{region_id}", dependencies=[Depends(verify_admin)])
def update_region(region_id: int, data: DivisionUpdate, hierarchy: HierarchyStore = Depends(get_hierarchy)):
    return {"success": True, "region": region_to_dict(hierarchy.update_region(region_id, data))}


@router.delete("/api/regions/{region_id}", dependencies=[Depends(verify_admin)])
def delete_region(region_id: int, hierarchy: HierarchyStore = Depends(get_hierarchy)):
    hierarchy.delete_region(region_id)
    return {"success": True, "deleted": region_id}


# =============================================================================
# Departments & Arrondissements
# =============================================================================


@router.get("/api/departments")
def list_departments(region_id: int | None = None, hierarchy: HierarchyStore = Depends(get_hierarchy)):
    departments = [department_to_dict(d) for d in hierarchy.list_departments(region_id)]
    return {"success": True, "departments": departments, "count": len(departments)}


@router.get("/api/departments/{department_id}")
def get_department(department_id: int, hierarchy: HierarchyStore = Depends(get_hierarchy)):
    department = hierarchy.get_department(department_id)
    return {"success": True, "department": department_to_dict(department, nested=True)}


@router.post("/api/departments", status_code=201, dependencies=[Depends(verify_admin)])
def create_department(data: DepartmentCreate, hierarchy: HierarchyStore = Depends(get_hierarchy)):
    return {"success": True, "department": department_to_dict(hierarchy.create_department(data))}


@router.put("/api/departments/{department_id}", dependencies=[Depends(verify_admin)])
def update_department(
    department_id: int, data: DivisionUpdate, hierarchy: HierarchyStore = Depends(get_hierarchy)
):
    department = hierarchy.update_department(department_id, data)
    return {"success": True, "department": department_to_dict(department)}


@router.delete("/api/departments/{department_id}", dependencies=[Depends(verify_admin)])
def delete_department(department_id: int, hierarchy: HierarchyStore = Depends(get_hierarchy)):
    hierarchy.delete_department(department_id)
    return {"success": True, "deleted": department_id}


@router.get("/api/arrondissements")
def list_arrondissements(
    region_id: int | None = None,
    department_id: int | None = None,
    hierarchy: HierarchyStore = Depends(get_hierarchy),
):
    arrondissements = [
        arrondissement_to_dict(a) for a in hierarchy.list_arrondissements(region_id, department_id)
    ]
    return {"success": True, "arrondissements": arrondissements, "count": len(arrondissements)}


@router.get("/api/arrondissements/{arrondissement_id}")
def get_arrondissement(arrondissement_id: int, hierarchy: HierarchyStore = Depends(get_hierarchy)):
    arrondissement = hierarchy.get_arrondissement(arrondissement_id)
    return {"success": True, "arrondissement": arrondissement_to_dict(arrondissement)}


@router.post("/api/arrondissements", status_code=201, dependencies=[Depends(verify_admin)])
def create_arrondissement(data: ArrondissementCreate, hierarchy: HierarchyStore = Depends(get_hierarchy)):
    arrondissement = hierarchy.create_arrondissement(data)
    return {"success": True, "arrondissement": arrondissement_to_dict(arrondissement)}


@router.put("/api/arrondissements/{arrondissement_id}", dependencies=[Depends(verify_admin)])
def update_arrondissement(
    arrondissement_id: int, data: DivisionUpdate, hierarchy: HierarchyStore = Depends(get_hierarchy)
):
    arrondissement = hierarchy.update_arrondissement(arrondissement_id, data)
    return {"success": True, "arrondissement": arrondissement_to_dict(arrondissement)}


@router.delete("/api/arrondissements/{arrondissement_id}", dependencies=[Depends(verify_admin)])
def delete_arrondissement(arrondissement_id: int, hierarchy: HierarchyStore = Depends(get_hierarchy)):
    hierarchy.delete_arrondissement(arrondissement_id)
    return {"success": True, "deleted": arrondissement_id}


@router.get("/api/divisions")
def list_divisions(hierarchy: HierarchyStore = Depends(get_hierarchy)):
    """Flattened region / department / arrondissement rows for pickers."""
    divisions = hierarchy.list_divisions()
    return {"success": True, "divisions": divisions, "count": len(divisions)}


# =============================================================================
# Spatial search
# =============================================================================


@router.get("/api/spatial/locate")
def locate(
    longitude: float = Query(ge=-180, le=180),
    latitude: float = Query(ge=-90, le=90),
    spatial: SpatialQueryEngine = Depends(get_spatial),
):
    """Divisions containing a point, finest level included."""
    return {"success": True, **spatial.locate_by_point(longitude, latitude)}


@router.get("/api/spatial/nearest")
def nearest(
    longitude: float = Query(ge=-180, le=180),
    latitude: float = Query(ge=-90, le=90),
    max_distance: float = Query(default=50_000, gt=0),
    spatial: SpatialQueryEngine = Depends(get_spatial),
):
    return {"success": True, "division": spatial.nearest_division(longitude, latitude, max_distance)}


@router.get("/api/spatial/parcels-in-bounds")
def parcels_in_bounds(
    north: float | None = None,
    south: float | None = None,
    east: float | None = None,
    west: float | None = None,
    spatial: SpatialQueryEngine = Depends(get_spatial),
):
    """Active parcels intersecting a map viewport."""
    return {"success": True, **spatial.parcels_in_bounds(north, south, east, west).to_dict()}


@router.get("/api/spatial/multi-region-parcels")
def multi_region_parcels(spatial: SpatialQueryEngine = Depends(get_spatial)):
    return {"success": True, **spatial.multi_region_parcels().to_dict()}


@router.get("/api/spatial/border-parcels")
def border_parcels(
    distance: float = Query(default=1000, gt=0, description="Metres from a region boundary."),
    spatial: SpatialQueryEngine = Depends(get_spatial),
):
    return {"success": True, **spatial.border_parcels(distance).to_dict()}


@router.post("/api/spatial/search/regions-near-point")
def regions_near_point(data: RegionsNearPoint, spatial: SpatialQueryEngine = Depends(get_spatial)):
    """Regions whose boundary lies within ``radius_km`` of the point, closest first."""
    result = spatial.regions_near_point(data.longitude, data.latitude, data.radius_km)
    return {"success": True, "radius_km": data.radius_km, **result.to_dict()}


@router.get("/api/spatial/region-centers")
def region_centers(spatial: SpatialQueryEngine = Depends(get_spatial)):
    return {"success": True, **spatial.region_centers().to_dict()}


@router.get("/api/spatial/region-distances")
def region_distances(spatial: SpatialQueryEngine = Depends(get_spatial)):
    return {"success": True, **spatial.distances_between_regions().to_dict()}


# =============================================================================
# GeoJSON import / export
# =============================================================================


@router.get("/api/export/regions")
def export_regions(spatial: SpatialQueryEngine = Depends(get_spatial)):
    return JSONResponse(spatial.export_regions(), media_type="application/geo+json")


@router.post("/api/import/regions", dependencies=[Depends(verify_admin)])
def import_regions(payload: dict, spatial: SpatialQueryEngine = Depends(get_spatial)):
    """Import a Feature or a FeatureCollection of regions, upserting by name.

    Features are handled one by one; a rejected feature is reported and does
    not stop the others.
    """
    if payload.get("type") == "FeatureCollection":
        features = payload.get("features")
        if not isinstance(features, list):
            raise ValidationError("FeatureCollection must carry a 'features' list")
    elif payload.get("type") == "Feature":
        features = [payload]
    else:
        raise ValidationError("Expected a GeoJSON Feature or FeatureCollection")

    created, updated, failed = [], [], []
    for index, feature in enumerate(features):
        try:
            region, was_created = spatial.import_region(feature)
        except ValidationError as e:
            name = (feature.get("properties") or {}).get("name") if isinstance(feature, dict) else None
            failed.append({"index": index, "name": name, "error": e.message, "code": e.code})
            continue
        (created if was_created else updated).append({"id": region.id, "name": region.name})

    logger.info("Region import: %d created, %d updated, %d failed", len(created), len(updated), len(failed))
    return {"success": not failed, "created": created, "updated": updated, "failed": failed}


# =============================================================================
# Parcels
# =============================================================================


@router.get("/api/parcels")
def list_parcels(
    division: str | None = None,
    activity: ParcelActivity | None = None,
    is_titled: bool | None = None,
    price_min: float | None = Query(default=None, ge=0),
    price_max: float | None = Query(default=None, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    registry: ParcelRegistry = Depends(get_registry),
):
    filters = ParcelFilters(
        division=division,
        activity=activity,
        is_titled=is_titled,
        price_min=price_min,
        price_max=price_max,
        limit=limit,
    )
    parcels = [parcel_to_dict(p) for p in registry.list_parcels(filters)]
    return {"success": True, "parcels": parcels, "count": len(parcels)}


@router.post("/api/parcels", status_code=201)
def create_parcel(
    data: ParcelCreate,
    user_id: uuid.UUID = Depends(current_user_id),
    registry: ParcelRegistry = Depends(get_registry),
):
    return {"success": True, "parcel": parcel_to_dict(registry.create(user_id, data))}


@router.get("/api/parcels/search")
def search_parcels(
    q: str = Query(min_length=1, description="Fragment of the matricule."),
    limit: int = Query(default=50, ge=1, le=500),
    registry: ParcelRegistry = Depends(get_registry),
):
    parcels = [parcel_to_dict(p) for p in registry.search_by_matricule(q, limit)]
    return {"success": True, "parcels": parcels, "count": len(parcels)}


@router.get("/api/parcels/{parcel_id}")
def get_parcel(parcel_id: uuid.UUID, registry: ParcelRegistry = Depends(get_registry)):
    return {"success": True, "parcel": parcel_to_dict(registry.get_by_id(parcel_id))}


@router.put("/api/parcels/{parcel_id}")
def update_parcel(
    parcel_id: uuid.UUID,
    data: ParcelUpdate,
    actor: Actor = Depends(current_actor),
    registry: ParcelRegistry = Depends(get_registry),
):
    require_owner(registry.get_by_id(parcel_id).owner_id, actor)
    return {"success": True, "parcel": parcel_to_dict(registry.update(parcel_id, data))}


@router.delete("/api/parcels/{parcel_id}")
def delete_parcel(
    parcel_id: uuid.UUID,
    actor: Actor = Depends(current_actor),
    registry: ParcelRegistry = Depends(get_registry),
):
    """Soft delete: the parcel stops being listed but stays readable by id."""
    require_owner(registry.get_by_id(parcel_id).owner_id, actor)
    parcel = registry.soft_delete(parcel_id)
    return {"success": True, "parcel": parcel_to_dict(parcel)}


@router.post("/api/parcels/{parcel_id}/images", status_code=201)
def upload_parcel_images(
    parcel_id: uuid.UUID,
    files: list[UploadFile] = File(...),
    actor: Actor = Depends(current_actor),
    registry: ParcelRegistry = Depends(get_registry),
):
    require_owner(registry.get_by_id(parcel_id).owner_id, actor)
    uploads = [
        ImageUpload(
            file_name=f.filename or "image",
            content_type=f.content_type or "application/octet-stream",
            data=f.file.read(),
        )
        for f in files
    ]
    images = registry.attach_images(parcel_id, uploads)
    return {
        "success": True,
        "images": [{"url": image.url, "position": image.position} for image in images],
    }


@router.get("/api/parcels/{parcel_id}/overlaps")
def parcel_overlaps(parcel_id: uuid.UUID, registry: ParcelRegistry = Depends(get_registry)):
    """Other active parcels overlapping this one (reported, never resolved)."""
    return {"success": True, **registry.check_overlaps(parcel_id).to_dict()}


# =============================================================================
# Contacts (brokerage)
# =============================================================================


@router.post("/api/contacts", status_code=201)
def initiate_contact(
    data: ContactRequest,
    user_id: uuid.UUID = Depends(current_user_id),
    brokerage: BrokerageService = Depends(get_brokerage),
):
    """Ask for an introduction to a parcel's owner. An administrator reviews it."""
    contact = brokerage.initiate(user_id, data.parcel_id)
    return {"success": True, "contact": contact_to_dict(contact)}


@router.get("/api/contacts/history")
def contact_history(
    user_id: uuid.UUID = Depends(current_user_id),
    brokerage: BrokerageService = Depends(get_brokerage),
):
    contacts = [contact_to_dict(c) for c in brokerage.history(user_id)]
    return {"success": True, "contacts": contacts, "count": len(contacts)}


@router.post("/api/contacts/{contact_id}/approve", dependencies=[Depends(verify_admin)])
def approve_contact(contact_id: uuid.UUID, brokerage: BrokerageService = Depends(get_brokerage)):
    contact = brokerage.approve(contact_id)
    return {"success": True, "contact": contact_to_dict(contact), "fees": brokerage.fee_schedule()}


@router.post("/api/contacts/{contact_id}/reject", dependencies=[Depends(verify_admin)])
def reject_contact(contact_id: uuid.UUID, brokerage: BrokerageService = Depends(get_brokerage)):
    return {"success": True, "contact": contact_to_dict(brokerage.reject(contact_id))}


# =============================================================================
# Payments & Pricing
# =============================================================================


@router.post("/api/payments/initiate", status_code=201)
def initiate_payment(
    data: PaymentInitiate,
    user_id: uuid.UUID = Depends(current_user_id),
    db: Session = Depends(get_db),
    subscriptions: SubscriptionService = Depends(get_subscriptions),
):
    get_user(db, user_id)
    return {"success": True, **subscriptions.initiate(user_id, data)}


@router.post("/api/payments/webhook")
def payment_webhook(
    body: bytes = Depends(raw_body),
    verif_hash: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
    subscriptions: SubscriptionService = Depends(get_subscriptions),
):
    """Gateway callback. The signature covers the raw body, so it is checked before parsing."""
    verify_signature(body, verif_hash, settings.webhook_secret)
    try:
        payload = json.loads(body)
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON")
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")
    return {"success": True, **subscriptions.handle_webhook(payload)}


@router.get("/api/payments/verify/{transaction_id}")
def verify_payment(
    transaction_id: str,
    user_id: uuid.UUID = Depends(current_user_id),
    subscriptions: SubscriptionService = Depends(get_subscriptions),
):
    return {"success": True, **subscriptions.gateway.verify_transaction(transaction_id)}


@router.get("/api/payments/history")
def payment_history(
    user_id: uuid.UUID = Depends(current_user_id),
    subscriptions: SubscriptionService = Depends(get_subscriptions),
):
    history = [subscription_to_dict(s) for s in subscriptions.history(user_id)]
    return {
        "success": True,
        "subscriptions": history,
        "count": len(history),
        "active": subscriptions.is_active(user_id),
    }


@router.get("/api/pricing/owner")
def get_owner_pricing(area_m2: float = Query(gt=0)):
    return {"success": True, "pricing": owner_pricing(area_m2)}


@router.get("/api/pricing/client")
def get_client_pricing():
    return {"success": True, "plans": client_pricing()}


@router.post("/api/pricing/simulate")
def simulate_pricing(data: PricingSimulation):
    return {"success": True, "simulation": simulate(data.user_type, data.period, data.area_m2, data.zone)}


# =============================================================================
# Documents
# =============================================================================


@router.get("/api/documents/types")
def document_types():
    return {"success": True, "types": {target.value: types for target, types in DOCUMENT_TYPES.items()}}


@router.post("/api/documents", status_code=201)
def upload_document(
    target: DocumentTarget = Form(...),
    target_id: uuid.UUID = Form(...),
    document_type: str = Form(...),
    file: UploadFile = File(...),
    user_id: uuid.UUID = Depends(current_user_id),
    documents: DocumentService = Depends(get_documents),
):
    document = documents.upload(
        user_id,
        target,
        target_id,
        document_type,
        file.filename or "document",
        file.content_type or "application/octet-stream",
        file.file.read(),
    )
    return {"success": True, "document": document_to_dict(document)}


@router.get("/api/documents/statistics", dependencies=[Depends(verify_admin)])
def document_statistics(documents: DocumentService = Depends(get_documents)):
    return {"success": True, "statistics": documents.statistics()}


@router.get("/api/documents/check-completeness/{target}/{target_id}")
def document_completeness(
    target: DocumentTarget,
    target_id: uuid.UUID,
    actor: Actor = Depends(current_actor),
    documents: DocumentService = Depends(get_documents),
):
    """Which required document types are still missing for a parcel or subscription."""
    require_owner(documents.owner_of(target, target_id), actor)
    return {"success": True, **documents.check_completeness(target, target_id)}


@router.get("/api/documents/{target}/{target_id}")
def list_documents(
    target: DocumentTarget,
    target_id: uuid.UUID,
    actor: Actor = Depends(current_actor),
    documents: DocumentService = Depends(get_documents),
):
    require_owner(documents.owner_of(target, target_id), actor)
    items = [document_to_dict(d) for d in documents.list_for(target, target_id)]
    return {"success": True, "documents": items, "count": len(items)}


# =============================================================================
# ADMIN API
# Maintenance, reporting and review queues
# =============================================================================


@router.post("/api/admin/refresh-cache", dependencies=[Depends(verify_admin)])
def refresh_cache(spatial: SpatialQueryEngine = Depends(get_spatial)):
    return {"success": True, **spatial.refresh_cache()}


@router.post("/api/admin/optimize-geometries", dependencies=[Depends(verify_admin)])
def optimize_geometries(
    data: OptimizeRequest | None = None,
    spatial: SpatialQueryEngine = Depends(get_spatial),
):
    tolerance = data.tolerance if data else OptimizeRequest().tolerance
    return {"success": True, "tolerance": tolerance, **spatial.optimize_geometries(tolerance).to_dict()}


@router.get("/api/admin/validate", dependencies=[Depends(verify_admin)])
def validate_data(spatial: SpatialQueryEngine = Depends(get_spatial)):
    """Integrity sweep. Defects are reported, never repaired."""
    issues = [issue.to_dict() for issue in spatial.validate_integrity()]
    return {"success": True, "issues": issues, "count": len(issues)}


@router.get("/api/admin/report", dependencies=[Depends(verify_admin)])
def get_geographic_report(request: Request, db: Session = Depends(get_db)):
    settings = request.app.state.settings
    report = geographic_report(db, request.app.state.backend, settings.maintenance_timeout_seconds)
    return {"success": True, "report": report}


@router.post("/api/admin/compare-regions", dependencies=[Depends(verify_admin)])
def compare_regions(data: RegionComparison, spatial: SpatialQueryEngine = Depends(get_spatial)):
    return {"success": True, "comparison": spatial.compare_regions(data.region_ids)}


@router.get("/api/admin/cleanup-report", dependencies=[Depends(verify_admin)])
def get_cleanup_report(db: Session = Depends(get_db)):
    return {"success": True, **cleanup_report(db)}


@router.get("/api/admin/stats", dependencies=[Depends(verify_admin)])
def get_platform_stats(db: Session = Depends(get_db)):
    return {"success": True, "stats": platform_stats(db)}


@router.get("/api/admin/contacts", dependencies=[Depends(verify_admin)])
def list_contacts(
    status: ContactStatus | None = None,
    brokerage: BrokerageService = Depends(get_brokerage),
):
    contacts = [contact_to_dict(c) for c in brokerage.list_all(status)]
    return {"success": True, "contacts": contacts, "count": len(contacts)}


@router.post("/api/admin/subscriptions/expire", dependencies=[Depends(verify_admin)])
def expire_due_subscriptions(subscriptions: SubscriptionService = Depends(get_subscriptions)):
    return {"success": True, "expired": subscriptions.expire_due()}


@router.post("/api/admin/subscriptions/{subscription_id}/expire", dependencies=[Depends(verify_admin)])
def expire_subscription(
    subscription_id: uuid.UUID,
    subscriptions: SubscriptionService = Depends(get_subscriptions),
):
    return {"success": True, "subscription": subscription_to_dict(subscriptions.expire(subscription_id))}


@router.get("/api/admin/documents/pending", dependencies=[Depends(verify_admin)])
def pending_documents(documents: DocumentService = Depends(get_documents)):
    items = [document_to_dict(d) for d in documents.pending()]
    return {"success": True, "documents": items, "count": len(items)}


@router.post("/api/admin/documents/{document_id}/verify", dependencies=[Depends(verify_admin)])
def verify_document(
    document_id: uuid.UUID,
    review: DocumentReview | None = None,
    documents: DocumentService = Depends(get_documents),
):
    document = documents.verify(document_id, review.notes if review else None)
    return {"success": True, "document": document_to_dict(document)}


@router.post("/api/admin/documents/{document_id}/reject", dependencies=[Depends(verify_admin)])
def reject_document(
    document_id: uuid.UUID,
    review: DocumentReview | None = None,
    documents: DocumentService = Depends(get_documents),
):
    document = documents.reject(document_id, review.notes if review else None)
    return {"success": True, "document": document_to_dict(document)}
