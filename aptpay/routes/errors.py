from fastapi import HTTPException

from aptpay.services.base import ServiceError


def to_http_error(e: ServiceError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)
