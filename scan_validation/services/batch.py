from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence

from ..codes import ResultCode, message_for
from .engine import Admitted, Failed, ValidationEngine, ValidationRequest, ValidationResult

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class BatchOutcome:
    batch_id: str
    results: list[ValidationResult]
    processed_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def admitted(self) -> int:
        return sum(1 for r in self.results if isinstance(r, Admitted))

    @property
    def rejected(self) -> int:
        return self.total - self.admitted

    @property
    def success_rate(self) -> float:
        return round(self.admitted / self.total * 100, 2) if self.total else 0.0

    def summary(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "admitted": self.admitted,
            "rejected": self.rejected,
            "success_rate": self.success_rate,
        }

def new_batch_id(now: datetime) -> str:
    return f"batch_{int(now.timestamp() * 1000)}"

async def validate_batch(
    engine: ValidationEngine,
    items: Sequence[ValidationRequest],
    *,
    batch_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> BatchOutcome:
    """
    Each item runs through the engine in its own transaction, in input order, so an
    item that fails never undoes an earlier admission. Results keep the input order.
    """
    results: list[ValidationResult] = []
    for req in items:
        try:
            results.append(await engine.validate(req))
        except Exception:
            error_id = str(uuid.uuid4())
            logger.exception("batch item failed ticket=%s error_id=%s", req.ticket_id, error_id)
            results.append(
                Failed(code=ResultCode.INTERNAL_ERROR, reason=message_for(ResultCode.INTERNAL_ERROR), error_id=error_id)
            )
    now = engine.clock.now()
    return BatchOutcome(
        batch_id=batch_id or new_batch_id(now),
        results=results,
        processed_at=now,
        metadata=dict(metadata or {}),
    )
