"""Persistence helpers shared by the domain repositories"""

import logging
from enum import Enum
from typing import Callable, Optional, TypeVar

from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..errors import ConcurrentModification

logger = logging.getLogger(__name__)

T = TypeVar("T")


def column_values(model: BaseModel, exclude: Optional[set] = None) -> dict:
    """Dump a snapshot to column values (enums stored by value)"""
    return {
        key: value.value if isinstance(value, Enum) else value
        for key, value in model.model_dump(exclude=exclude).items()
    }


def update_if_unchanged(db: Session, model_cls, entity_id: str, expected_version: int, values: dict) -> None:
    """
    Write ``values`` only if the row still carries ``expected_version``.

    Raises:
        ConcurrentModification: another writer updated the row first
    """
    values = dict(values)
    values["version"] = expected_version + 1
    changed = (
        db.query(model_cls)
        .filter(model_cls.id == entity_id, model_cls.version == expected_version)
        .update(values, synchronize_session=False)
    )
    if changed != 1:
        db.rollback()
        raise ConcurrentModification(
            f"{model_cls.__name__} {entity_id} was modified by another request"
        )
    db.commit()


def with_retry(operation: Callable[[], T], attempts: int = 3) -> T:
    """
    Run a read-transition-write operation, retrying on optimistic conflicts.

    ``operation`` must re-read the entity on every call.
    """
    for attempt in range(attempts):
        try:
            return operation()
        except ConcurrentModification:
            logger.warning(f"🔄 Concurrent update, retry {attempt + 1}/{attempts}")
            if attempt == attempts - 1:
                raise
    raise ConcurrentModification("Retries exhausted")
