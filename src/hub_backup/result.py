from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconciliation cycle; ``requeue_after`` of None means wait for a change."""

    requeue_after: Optional[timedelta] = None

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None
