"""
BaseService -- what every kernel service shares.

A kernel service works inside a transaction it did not open.  It reads
and writes through the Session it was given, pushes its changes with
``flush()``, and leaves commit and rollback to whoever owns the unit of
work (the orchestrator in production, the fixture in tests).

Versioned rows (configurations, seats, delegations, solicitations) are
flushed through ``_flush``; if another transaction bumped the version
first, the caller sees OptimisticLockError and must roll back and retry
the whole unit of work.
"""

from abc import ABC
from typing import Any

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.exceptions import OptimisticLockError


class BaseService(ABC):
    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self._clock = clock or SystemClock()

    def _flush(self, entity_type: str, entity_id: Any) -> None:
        """Flush pending changes; a lost version race becomes OptimisticLockError."""
        try:
            self.session.flush()
        except StaleDataError as exc:
            raise OptimisticLockError(entity_type, str(entity_id)) from exc
