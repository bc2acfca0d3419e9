from __future__ import annotations


class StratosError(Exception):
    """Base error for Stratos."""

    code = "STRATOS_ERROR"

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(StratosError):
    """Malformed input such as a negative usage delta."""

    code = "VALIDATION_ERROR"


class CatalogValidationError(ValidationError):
    """Plan catalog violates its invariants; details list every problem."""

    code = "CATALOG_INVALID"

    def __init__(self, problems: list[str]) -> None:
        super().__init__("Plan catalog is invalid", details={"problems": list(problems)})
        self.problems = list(problems)


class NotFoundError(StratosError):
    """Unknown client id or missing document."""

    code = "NOT_FOUND"


class UnknownTierError(NotFoundError):
    """Client references a tier absent from the plan catalog; never defaulted."""

    code = "UNKNOWN_TIER"

    def __init__(self, tier: str, *, client_id: str | None = None) -> None:
        super().__init__(
            f"Tier not present in plan catalog: {tier}",
            details={"tier": tier, "client_id": client_id},
        )
        self.tier = tier
        self.client_id = client_id


class ConflictError(StratosError):
    """Optimistic concurrency clash or duplicate document key."""

    code = "CONFLICT"


class StoreUnavailableError(StratosError):
    """Document store failure; retry policy belongs to the caller."""

    code = "STORE_UNAVAILABLE"


class OperationTimeoutError(StratosError, TimeoutError):
    """Caller deadline elapsed before the operation completed."""

    code = "TIMEOUT"
