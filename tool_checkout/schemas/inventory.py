from datetime import date
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict


class TypeCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    typeName: str


class ModelCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    typeID: int
    modelName: str
    photoRef: Optional[str] = None


class EquipmentCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    serialID: str
    modelID: int
    typeID: int
    maintenanceStatus: Literal["Ready", "UnderRepair"] = "Ready"
    usageCondition: Literal["New", "Used"] = "New"
    homeRoomIDs: List[int] = []
    purchaseCost: Optional[float] = None
    purchaseDate: Optional[date] = None
    assignTag: bool = False


class EquipmentUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    maintenanceStatus: Optional[Literal["Ready", "UnderRepair"]] = None
    usageCondition: Optional[Literal["New", "Used"]] = None
    homeRoomIDs: Optional[List[int]] = None


class RoomCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    roomNumber: str
    description: Optional[str] = None


class AntennaCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    readerID: str
    roomID: int


class UserCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    schoolID: str
    firstName: str
    lastName: str
    middleName: Optional[str] = None
    emailAddress: Optional[str] = None
    role: Literal["Student", "Faculty", "Admin"] = "Student"


class TypeUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    typeName: str


class ModelUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    modelName: Optional[str] = None
    photoRef: Optional[str] = None


class RoomUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    roomNumber: Optional[str] = None
    description: Optional[str] = None


class AntennaUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    newReaderID: Optional[str] = None
    roomID: Optional[int] = None
