"""Error taxonomy for the configuration store and the hot-reload coordinator."""


class ConfigCenterError(Exception):
    """Base class for every configcenter error."""


class DuplicateKeyError(ConfigCenterError):
    """An entry (or metadata row) already exists at the given coordinate."""

    def __init__(self, category: str, key: str, environment: str | None = None) -> None:
        self.category = category
        self.key = key
        self.environment = environment
        where = f"category '{category}'"
        if environment:
            where += f", environment '{environment}'"
        super().__init__(f"Configuration key '{key}' already exists in {where}")


class NotFoundError(ConfigCenterError):
    """No row matches the requested id or coordinate."""

    def __init__(
        self,
        entity: str,
        id: int | None = None,
        category: str | None = None,
        key: str | None = None,
        environment: str | None = None,
    ) -> None:
        self.entity = entity
        self.id = id
        self.category = category
        self.key = key
        self.environment = environment
        if id is not None:
            detail = f"id {id}"
        else:
            detail = f"{category}/{key}" + (f" ({environment})" if environment else "")
        super().__init__(f"{entity} with {detail} not found")


class ValidationFailedError(ConfigCenterError):
    """A candidate value violates the metadata validation rules of its key."""

    def __init__(self, category: str, key: str, violations: list[str]) -> None:
        self.category = category
        self.key = key
        self.violations = violations
        super().__init__(
            f"Validation failed for {category}/{key}: " + "; ".join(violations)
        )


class TargetNotEmptyError(ConfigCenterError):
    """Metadata clone target already has rows and overwrite was not requested."""

    def __init__(self, target_category: str) -> None:
        self.target_category = target_category
        super().__init__(
            f"Target category '{target_category}' already has metadata. "
            "Use overwrite=True to replace."
        )


class HandlerTimeoutError(ConfigCenterError):
    """A reload handler did not settle within its timeout."""

    def __init__(self, timeout_s: float, operation: str = "handler") -> None:
        self.timeout_s = timeout_s
        self.operation = operation
        super().__init__(f"{operation} timeout after {int(timeout_s * 1000)}ms")


class HandlerError(ConfigCenterError):
    """A reload handler kept failing after every retry attempt."""

    def __init__(self, attempts: int, cause: BaseException) -> None:
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"Handler failed after {attempts} attempts: {cause}")


class StoreUnavailableError(ConfigCenterError):
    """The relational backing store could not be reached."""


class CacheUnavailableError(ConfigCenterError):
    """The cache backend failed; callers degrade to a cache miss."""
