from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ScanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentTagID: str
    readerID: str
    scanTime: Optional[datetime] = None
    userTagID: Optional[str] = None
