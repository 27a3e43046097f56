"""
Typed exception hierarchy for the credit engine.

Every error carries a machine-readable ``code`` class attribute and keeps its
context as attributes, so the presentation layer can map it without parsing
messages:

    CreditEngineError
    +-- ValidationError          malformed or missing input, raised before any write
    +-- PrivilegeError           discount or manual rate requested by a non-privileged actor
    +-- ConflictError            lifecycle invariant violation
    |   +-- OpenCycleCapExceededError
    +-- NotFoundError            referenced credit/installment/payment method absent
    +-- TransientStorageError    persistence failure inside a unit of work
"""

from typing import Any, Dict, Optional


class CreditEngineError(Exception):
    """Base exception for all credit engine errors."""

    code: str = "CREDIT_ENGINE_ERROR"

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "detail": str(self)}


class ValidationError(CreditEngineError):
    """Input is malformed or incomplete."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        return result


class PrivilegeError(CreditEngineError):
    """Acting user lacks the privilege level the operation requires."""

    code: str = "PRIVILEGE_ERROR"

    def __init__(self, message: str, user_id: Optional[str] = None):
        self.user_id = user_id
        super().__init__(message)


class ConflictError(CreditEngineError):
    """Operation would violate a credit lifecycle invariant."""

    code: str = "CONFLICT"

    def __init__(self, message: str, credit_id: Optional[str] = None):
        self.credit_id = credit_id
        super().__init__(message)


class OpenCycleCapExceededError(ConflictError):
    """
    An open-modality credit went past its last allowed cycle with principal
    still outstanding. Only payoff or refinancing is accepted.
    """

    code: str = "OPEN_CYCLE_CAP_EXCEEDED"

    def __init__(self, credit_id: str, cycle_cap: int):
        self.cycle_cap = cycle_cap
        super().__init__(
            f"Credit {credit_id} exceeded {cycle_cap} open cycles: settle or refinance it",
            credit_id=credit_id,
        )


class NotFoundError(CreditEngineError):
    """Referenced entity does not exist."""

    code: str = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class TransientStorageError(CreditEngineError):
    """A persistence call failed mid unit of work; nothing was committed."""

    code: str = "TRANSIENT_STORAGE_ERROR"
