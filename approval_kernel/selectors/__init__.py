"""Read-only query surfaces.  Selectors never mutate."""

from approval_kernel.selectors.base import BaseSelector
from approval_kernel.selectors.solicitation_selector import (
    SolicitationSelector,
    SolicitationStatistics,
)

__all__ = [
    "BaseSelector",
    "SolicitationSelector",
    "SolicitationStatistics",
]
