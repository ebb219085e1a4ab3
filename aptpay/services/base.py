# services/base.py
from typing import Callable, Generic, TypeVar
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from aptpay.utils.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


class ServiceError(Exception):
    """Base exception for service errors, carries an HTTP-ish status code"""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ConstraintViolationError(ServiceError):
    status_code = 400


class DatabaseError(ServiceError):
    status_code = 500


class BaseService(Generic[T]):
    def __init__(self, db: Session):
        self.db = db

    def _handle_db_operation(self, operation: Callable[[], T]) -> T:
        try:
            result = operation()
            self.db.commit()
            return result
        except IntegrityError as e:
            self.db.rollback()
            logger.error("Database integrity error: {}", str(e))
            raise ConstraintViolationError("Database constraint violation") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Database operation error: {}", str(e))
            raise DatabaseError("Internal server error") from e
