"""Driver error mapping shared by every service that talks to the store."""

import functools
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy.exc import (
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.orm import Session

from access_manager.core.exceptions import ConflictError, StorageUnavailable

logger = logging.getLogger("access_manager.store")

UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, DisconnectionError)


def rollback_quietly(db: Session) -> None:
    try:
        db.rollback()
    except SQLAlchemyError as e:
        logger.warning("Rollback failed: %s", e)


@contextmanager
def storage_guard(db: Session, operation: str, conflict_message: Optional[str] = None) -> Iterator[None]:
    """Roll back and re-raise driver failures as domain errors.

    Connection-level failures become ``StorageUnavailable``; the driver text
    is logged here and never reaches a response. Integrity violations become
    ``ConflictError`` only when the caller names the conflict.
    """
    try:
        yield
    except IntegrityError as e:
        rollback_quietly(db)
        if conflict_message is None:
            raise
        raise ConflictError(conflict_message) from e
    except UNAVAILABLE_ERRORS as e:
        logger.error("Store unavailable during %s: %s", operation, e)
        rollback_quietly(db)
        raise StorageUnavailable() from e


def guarded(conflict_message: Optional[str] = None):
    """Method decorator form of ``storage_guard`` for objects holding ``self.db``."""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(self, *args, **kwargs):
            with storage_guard(self.db, func.__name__, conflict_message):
                return func(self, *args, **kwargs)

        return wrapper

    return decorator
