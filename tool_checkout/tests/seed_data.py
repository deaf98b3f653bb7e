import os
import sys
from datetime import datetime
from pathlib import Path


os.environ.setdefault("TOOL_CHECKOUT_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("CREATE_TABLES_ON_STARTUP", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base
from db.session import build_engine, build_session_factory
from models.inventory_models import (
    Antenna,
    CheckoutUser,
    EquipmentHome,
    EquipmentModel,
    EquipmentType,
    EquipmentUnit,
    Room,
)


STUDENT_ID = "1001"
OTHER_STUDENT_ID = "1002"
FACULTY_ID = "2001"
ADMIN_ID = "3001"


def make_engine(db_url: str = "sqlite+pysqlite:///:memory:"):
    engine = build_engine(db_url)
    Base.metadata.create_all(bind=engine)
    return engine


def make_session(db_url: str = "sqlite+pysqlite:///:memory:"):
    engine = make_engine(db_url)
    return engine, build_session_factory(engine)


def seed_catalog(db) -> dict:
    """Two barometer models (2 and 3 Ready units), one hygrometer, two rooms with one antenna each."""
    now = datetime.now()
    barometer = EquipmentType(TypeName="Barometer", CreatedDate=now)
    hygrometer = EquipmentType(TypeName="Hygrometer", CreatedDate=now)
    db.add_all([barometer, hygrometer])
    db.flush()

    model_x = EquipmentModel(TypeID=barometer.TypeID, ModelName="Barometer-X", CreatedDate=now, UpdatedDate=now)
    model_y = EquipmentModel(TypeID=barometer.TypeID, ModelName="Barometer-Y", CreatedDate=now, UpdatedDate=now)
    model_h = EquipmentModel(TypeID=hygrometer.TypeID, ModelName="Hygro-1", CreatedDate=now, UpdatedDate=now)
    db.add_all([model_x, model_y, model_h])
    db.flush()

    lab = Room(RoomNumber="ENG-101", Description="Fluids lab")
    store = Room(RoomNumber="ENG-102", Description="Store room")
    db.add_all([lab, store])
    db.flush()
    db.add_all([Antenna(ReaderID="ANT-A", RoomID=lab.RoomID), Antenna(ReaderID="ANT-B", RoomID=store.RoomID)])

    units = []
    for model, count in ((model_x, 2), (model_y, 3), (model_h, 1)):
        for index in range(1, count + 1):
            unit = EquipmentUnit(
                SerialID=f"{model.ModelName}-{index:02d}",
                ModelID=model.ModelID,
                TypeID=model.TypeID,
                MaintenanceStatus="Ready",
                UsageCondition="New",
            )
            unit.Homes.append(EquipmentHome(RoomID=lab.RoomID))
            units.append(unit)
    db.add_all(units)

    db.add_all(
        [
            CheckoutUser(SchoolID=STUDENT_ID, FirstName="Ana", LastName="Silva", UserRole="Student"),
            CheckoutUser(SchoolID=OTHER_STUDENT_ID, FirstName="Ben", LastName="Okafor", UserRole="Student"),
            CheckoutUser(SchoolID=FACULTY_ID, FirstName="Carla", MiddleName="M", LastName="Reyes", UserRole="Faculty"),
            CheckoutUser(SchoolID=ADMIN_ID, FirstName="Dev", LastName="Patel", UserRole="Admin"),
        ]
    )
    db.commit()
    return {
        "barometer": barometer.TypeID,
        "hygrometer": hygrometer.TypeID,
        "model_x": model_x.ModelID,
        "model_y": model_y.ModelID,
        "model_h": model_h.ModelID,
        "lab": lab.RoomID,
        "store": store.RoomID,
    }


def line(model_id: int, type_id: int, quantity: int = 1) -> dict:
    return {"modelID": model_id, "typeID": type_id, "quantity": quantity}
