import logging
import os
from contextlib import asynccontextmanager
from datetime import date

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

try:
    from dotenv import load_dotenv

    load_dotenv()
except ImportError:
    pass

from db.base import Base
from db.deps import get_db
from db.session import engine_checkout
from db.transaction import run_in_transaction
from models.inventory_models import EquipmentModel, EquipmentType, EquipmentUnit
from schemas.inventory import (
    AntennaCreate,
    AntennaUpdate,
    EquipmentCreate,
    EquipmentUpdate,
    ModelCreate,
    ModelUpdate,
    RoomCreate,
    RoomUpdate,
    TypeCreate,
    TypeUpdate,
    UserCreate,
)
from schemas.reservations import ApproveReservationRequest, CloseReservationRequest, CreateReservationDto
from schemas.scans import ScanRequest
from services.availability_service import available_count, list_available_models
from services.errors import InventoryError
from services.inventory_service import (
    add_antenna,
    add_equipment_unit,
    add_model,
    add_room,
    add_type,
    get_unit_or_404,
    remove_antenna,
    remove_equipment_unit,
    remove_model,
    remove_room,
    remove_type,
    serialize_antenna,
    serialize_model,
    serialize_room,
    serialize_type,
    serialize_unit,
    update_antenna,
    update_equipment_unit,
    update_model,
    update_room,
    update_type,
)
from services.reservation_service import (
    approve_reservation,
    cancel_or_reject_reservation,
    create_reservation,
    get_reservation_or_404,
    list_user_reservations,
    serialize_reservation,
)
from services.scan_service import ingest_scan, list_scan_history, serialize_scan_event, user_usage
from services.tag_service import assign_equipment_tag, assign_user_tag, next_available_tag, normalize_namespace, tag_overview
from services.user_service import register_user, serialize_user


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _parse_bool_env(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


def _parse_int_env(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be an integer, got {raw!r}") from exc


LOG_LEVEL = (os.environ.get("LOG_LEVEL") or "INFO").strip().upper()
STUDENT_RESERVATION_CAP = _parse_int_env("STUDENT_RESERVATION_CAP", 2)
RESERVATION_COMMIT_ATTEMPTS = _parse_int_env("RESERVATION_COMMIT_ATTEMPTS", 3)
PURGE_CLOSED_RESERVATIONS = _parse_bool_env("PURGE_CLOSED_RESERVATIONS", "false")
CREATE_TABLES_ON_STARTUP = _parse_bool_env("CREATE_TABLES_ON_STARTUP", "true")

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
APP_LOGGER = logging.getLogger("tool_checkout.app")

ERROR_STATUS_CODES = {
    "Validation": 400,
    "Exhausted": 400,
    "NotFound": 404,
    "Conflict": 409,
    "Storage": 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    if CREATE_TABLES_ON_STARTUP:
        Base.metadata.create_all(bind=engine_checkout)
        APP_LOGGER.info("Database tables ensured")
    yield
    engine_checkout.dispose()


app = FastAPI(lifespan=lifespan)

_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:3000,http://localhost:3000",
)
_CORS_ALLOW_CREDENTIALS = _parse_bool_env("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials; force safe behavior.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(InventoryError)
def handle_inventory_error(request: Request, exc: InventoryError):
    status_code = ERROR_STATUS_CODES.get(exc.kind, 500)
    if status_code >= 500:
        APP_LOGGER.error("%s %s failed kind=%s: %s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "errorKind": exc.kind})


@app.exception_handler(SQLAlchemyError)
def handle_storage_error(request: Request, exc: SQLAlchemyError):
    APP_LOGGER.exception("%s %s storage failure", request.method, request.url.path)
    return JSONResponse(
        status_code=503,
        content={"detail": "There is an error while processing your information.", "errorKind": "Storage"},
    )


@app.get("/api/health")
def healthcheck_api(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


# ==================== Availability ====================


@app.get("/api/inventory/available-models")
def get_available_models(
    start_date: date = Query(..., alias="startDate"),
    end_date: date = Query(..., alias="endDate"),
    db: Session = Depends(get_db),
):
    return list_available_models(db, start_date, end_date)


@app.get("/api/inventory/models/{model_id}/availability")
def get_model_availability(
    model_id: int,
    type_id: int | None = Query(None, alias="typeID"),
    start_date: date = Query(..., alias="startDate"),
    end_date: date = Query(..., alias="endDate"),
    db: Session = Depends(get_db),
):
    return {
        "modelID": model_id,
        "startDate": start_date,
        "endDate": end_date,
        "availableCount": available_count(db, model_id, type_id, start_date, end_date),
    }


# ==================== Reservations ====================


@app.post("/api/reservations", status_code=201)
def create_reservation_route(payload: CreateReservationDto, db: Session = Depends(get_db)):
    reservation = create_reservation(
        db,
        payload.schoolID,
        payload.startDate,
        payload.endDate,
        payload.reservedEquipments,
        student_cap=STUDENT_RESERVATION_CAP,
        attempts=RESERVATION_COMMIT_ATTEMPTS,
    )
    return serialize_reservation(reservation)


@app.get("/api/reservations/{reservation_id}")
def get_reservation(reservation_id: int, db: Session = Depends(get_db)):
    return serialize_reservation(get_reservation_or_404(db, reservation_id))


@app.get("/api/users/{school_id}/reservations")
def get_user_reservations(school_id: str, status: str | None = Query(None), db: Session = Depends(get_db)):
    return [serialize_reservation(item) for item in list_user_reservations(db, school_id, status)]


@app.post("/api/reservations/{reservation_id}/approve")
def approve_reservation_route(reservation_id: int, payload: ApproveReservationRequest, db: Session = Depends(get_db)):
    reservation = approve_reservation(db, reservation_id, payload.responderID)
    return {"reservationID": reservation.ReservationID, "status": reservation.Status, "responder": reservation.Responder}


@app.post("/api/reservations/{reservation_id}/cancel")
def cancel_reservation_route(reservation_id: int, payload: CloseReservationRequest, db: Session = Depends(get_db)):
    return cancel_or_reject_reservation(
        db,
        reservation_id,
        payload.actingUserID,
        payload.reason,
        purge=PURGE_CLOSED_RESERVATIONS,
    )


# ==================== RFID tags ====================


@app.get("/api/tags")
def get_tags(db: Session = Depends(get_db)):
    return tag_overview(db)


@app.get("/api/tags/next")
def get_next_tag(namespace: str = Query(...), db: Session = Depends(get_db)):
    normalized = normalize_namespace(namespace)
    return {"namespace": normalized, "tagID": next_available_tag(db, normalized)}


@app.post("/api/equipment/{serial_id}/tag", status_code=201)
def assign_equipment_tag_route(serial_id: str, db: Session = Depends(get_db)):
    return {"serialID": serial_id, "tagID": assign_equipment_tag(db, serial_id)}


@app.post("/api/users/{school_id}/tag", status_code=201)
def assign_user_tag_route(school_id: str, db: Session = Depends(get_db)):
    return {"schoolID": school_id, "tagID": assign_user_tag(db, school_id)}


# ==================== Scans ====================


@app.post("/api/scans", status_code=201)
def ingest_scan_route(payload: ScanRequest, db: Session = Depends(get_db)):
    event = ingest_scan(db, payload.equipmentTagID, payload.readerID, payload.scanTime, payload.userTagID)
    return {"isWalkIn": bool(event.IsWalkIn), "readerID": event.ReaderID, "scanEventID": event.ScanEventID}


@app.get("/api/equipment/{serial_id}/scans")
def get_equipment_scans(serial_id: str, limit: int = Query(100), db: Session = Depends(get_db)):
    return [serialize_scan_event(event) for event in list_scan_history(db, serial_id, limit)]


@app.get("/api/users/{school_id}/usage")
def get_user_usage(school_id: str, days: int = Query(7, ge=1), db: Session = Depends(get_db)):
    return user_usage(db, school_id, window_days=days)


# ==================== Inventory administration ====================


@app.get("/api/types")
def get_types(db: Session = Depends(get_db)):
    types = db.execute(select(EquipmentType).order_by(EquipmentType.TypeName)).scalars().all()
    return [serialize_type(item) for item in types]


@app.post("/api/types", status_code=201)
def create_type(payload: TypeCreate, db: Session = Depends(get_db)):
    return serialize_type(add_type(db, payload.typeName))


@app.patch("/api/types/{type_id}")
def patch_type(type_id: int, payload: TypeUpdate, db: Session = Depends(get_db)):
    return serialize_type(update_type(db, type_id, payload.typeName))


@app.delete("/api/types/{type_id}")
def delete_type(type_id: int, db: Session = Depends(get_db)):
    remove_type(db, type_id)
    return {"typeID": type_id, "removed": True}


@app.get("/api/models")
def get_models(type_id: int | None = Query(None, alias="typeID"), db: Session = Depends(get_db)):
    stmt = select(EquipmentModel).order_by(EquipmentModel.ModelName)
    if type_id is not None:
        stmt = stmt.where(EquipmentModel.TypeID == type_id)
    return [serialize_model(item) for item in db.execute(stmt).scalars().all()]


@app.post("/api/models", status_code=201)
def create_model(payload: ModelCreate, db: Session = Depends(get_db)):
    return serialize_model(add_model(db, payload.typeID, payload.modelName, payload.photoRef))


@app.patch("/api/models/{model_id}")
def patch_model(model_id: int, payload: ModelUpdate, db: Session = Depends(get_db)):
    changes = {}
    if "photoRef" in payload.model_fields_set:
        changes["photo_ref"] = payload.photoRef
    return serialize_model(update_model(db, model_id, model_name=payload.modelName, **changes))


@app.delete("/api/models/{model_id}")
def delete_model(model_id: int, db: Session = Depends(get_db)):
    remove_model(db, model_id)
    return {"modelID": model_id, "removed": True}


@app.get("/api/equipment")
def get_equipment(model_id: int | None = Query(None, alias="modelID"), db: Session = Depends(get_db)):
    stmt = (
        select(EquipmentUnit)
        .options(selectinload(EquipmentUnit.Homes))
        .order_by(EquipmentUnit.SerialID)
    )
    if model_id is not None:
        stmt = stmt.where(EquipmentUnit.ModelID == model_id)
    return [serialize_unit(unit) for unit in db.execute(stmt).scalars().all()]


@app.get("/api/equipment/{serial_id}")
def get_equipment_item(serial_id: str, db: Session = Depends(get_db)):
    return serialize_unit(get_unit_or_404(db, serial_id))


@app.post("/api/equipment", status_code=201)
def create_equipment(payload: EquipmentCreate, db: Session = Depends(get_db)):
    unit = add_equipment_unit(
        db,
        payload.serialID,
        payload.modelID,
        payload.typeID,
        maintenance_status=payload.maintenanceStatus,
        usage_condition=payload.usageCondition,
        home_room_ids=payload.homeRoomIDs,
        purchase_cost=payload.purchaseCost,
        purchase_date=payload.purchaseDate,
        assign_tag=payload.assignTag,
    )
    return serialize_unit(unit)


@app.patch("/api/equipment/{serial_id}")
def update_equipment(serial_id: str, payload: EquipmentUpdate, db: Session = Depends(get_db)):
    unit = update_equipment_unit(
        db,
        serial_id,
        maintenance_status=payload.maintenanceStatus,
        usage_condition=payload.usageCondition,
        home_room_ids=payload.homeRoomIDs,
    )
    return serialize_unit(unit)


@app.delete("/api/equipment/{serial_id}")
def delete_equipment(serial_id: str, db: Session = Depends(get_db)):
    remove_equipment_unit(db, serial_id)
    return {"serialID": serial_id, "removed": True}


@app.post("/api/rooms", status_code=201)
def create_room(payload: RoomCreate, db: Session = Depends(get_db)):
    return serialize_room(add_room(db, payload.roomNumber, payload.description))


@app.patch("/api/rooms/{room_id}")
def patch_room(room_id: int, payload: RoomUpdate, db: Session = Depends(get_db)):
    changes = {}
    if "description" in payload.model_fields_set:
        changes["description"] = payload.description
    return serialize_room(update_room(db, room_id, room_number=payload.roomNumber, **changes))


@app.delete("/api/rooms/{room_id}")
def delete_room(room_id: int, db: Session = Depends(get_db)):
    remove_room(db, room_id)
    return {"roomID": room_id, "removed": True}


@app.post("/api/antennas", status_code=201)
def create_antenna(payload: AntennaCreate, db: Session = Depends(get_db)):
    return serialize_antenna(add_antenna(db, payload.readerID, payload.roomID))


@app.patch("/api/antennas/{reader_id}")
def patch_antenna(reader_id: str, payload: AntennaUpdate, db: Session = Depends(get_db)):
    antenna = update_antenna(db, reader_id, new_reader_id=payload.newReaderID, room_id=payload.roomID)
    return serialize_antenna(antenna)


@app.delete("/api/antennas/{reader_id}")
def delete_antenna(reader_id: str, db: Session = Depends(get_db)):
    remove_antenna(db, reader_id)
    return {"readerID": reader_id, "removed": True}


@app.post("/api/users", status_code=201)
def create_user(payload: UserCreate, db: Session = Depends(get_db)):
    def _register(session: Session):
        return register_user(
            session,
            payload.schoolID,
            payload.firstName,
            payload.lastName,
            middle_name=payload.middleName,
            email_address=payload.emailAddress,
            role=payload.role,
        )

    return serialize_user(run_in_transaction(db, _register, label="user registration"))
