from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field


class ExchangeRate(BaseModel):
    from_currency: str = Field(examples=["USDC"])
    to_currency: str = Field(examples=["INR"])
    rate: Decimal = Field(examples=["84.12"])
    timestamp: datetime
