from fastapi import APIRouter, Depends, HTTPException, status

from aptpay.database.dependencies import get_rate_converter
from aptpay.models.schemas.rate import ExchangeRate
from aptpay.services.rates import RateConverter

router = APIRouter(prefix="/rates", tags=["Rates"])


@router.get("/{from_currency}/{to_currency}", response_model=ExchangeRate)
async def get_exchange_rate(
    from_currency: str,
    to_currency: str,
    converter: RateConverter = Depends(get_rate_converter),
):
    try:
        [rate] = await converter.get_multiple_rates([(from_currency, to_currency)])
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return rate
