"""
Error taxonomy for the simulation core.

Engines raise these; the outer boundaries (player actions, the tick trigger)
catch them and hand an ``ActionResult`` back to the caller instead.
"""
from __future__ import annotations
from typing import Any, Optional

from pydantic import BaseModel


class SimulationError(Exception):
    code = "simulation_error"
    retryable = False

    def __init__(self, detail: str = "", **context: Any):
        super().__init__(detail)
        self.detail = detail
        self.context = context

    def to_info(self) -> ErrorInfo:
        return ErrorInfo(
            code=self.code,
            detail=self.detail,
            retryable=self.retryable,
            context={k: str(v) for k, v in self.context.items()},
        )


class ValidationError(SimulationError):
    """Malformed or out-of-range input. Raised before any state is touched."""
    code = "validation_error"


class InsufficientFunds(SimulationError):
    code = "insufficient_funds"


class InsufficientSupply(SimulationError):
    code = "insufficient_supply"


class ConcurrentUpdateConflict(SimulationError):
    code = "concurrent_update_conflict"
    retryable = True


class CreditDenied(SimulationError):
    code = "credit_denied"


class SkippedTick(SimulationError):
    """Operational: the tick did not commit; the next one starts from the last commit."""
    code = "skipped_tick"
    retryable = True


class UnknownGoodReference(SimulationError):
    code = "unknown_good_reference"


class ErrorInfo(BaseModel):
    code: str
    detail: str
    retryable: bool = False
    context: dict[str, str] = {}


class ActionResult(BaseModel):
    success: bool
    record: Optional[Any] = None
    error: Optional[ErrorInfo] = None

    @classmethod
    def ok(cls, record: Any = None) -> ActionResult:
        return cls(success=True, record=record)

    @classmethod
    def fail(cls, err: SimulationError) -> ActionResult:
        return cls(success=False, error=err.to_info())
