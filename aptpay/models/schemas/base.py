# models/schemas/base.py
from pydantic import BaseModel, ConfigDict
from datetime import datetime


class TimestampModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    created_at: datetime
    updated_at: datetime
