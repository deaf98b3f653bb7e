from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class CreateReservationLineDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    modelID: int
    typeID: int
    quantity: int


class CreateReservationDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    schoolID: str
    startDate: date
    endDate: date
    reservedEquipments: List[CreateReservationLineDto] = []


class ApproveReservationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    responderID: str


class CloseReservationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    actingUserID: str
    reason: Optional[str] = None
