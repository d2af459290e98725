"""
approval_kernel.selectors.base -- Shared plumbing for read-only query objects.

Selectors run inside a session owned by the caller and only read: they
never add, flush or commit.  Whatever they return is a frozen domain
record (or a computed summary), never a live ORM instance, so nothing a
caller does with a result can leak back into the session.
"""

from abc import ABC
from typing import Any, Generic, TypeVar

from sqlalchemy import Select
from sqlalchemy.orm import Session

from approval_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseSelector(ABC, Generic[ModelType]):
    def __init__(self, session: Session):
        self.session = session

    def _dtos(self, stmt: Select) -> list[Any]:
        """Run ``stmt`` and convert every row model with ``to_dto()``."""
        return [model.to_dto() for model in self.session.execute(stmt).scalars()]

    def _dto_or_none(self, stmt: Select) -> Any | None:
        model = self.session.execute(stmt).scalar_one_or_none()
        return model.to_dto() if model is not None else None
