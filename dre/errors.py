from __future__ import annotations


class ReconcileError(Exception):
    """Base for every error raised by the engine."""


class ValidationError(ReconcileError):
    """Declared state is inconsistent; blocks only the affected resource."""


class DuplicateKeyError(ValidationError):
    def __init__(self, config_set: str, key: str, first: str, second: str):
        self.config_set = config_set
        self.key = key
        self.first = first
        self.second = second
        super().__init__(
            f"ConfigSet '{config_set}': key '{key}' defined by both fragment '{first}' and fragment '{second}'"
        )


class DuplicateFieldError(ValidationError):
    """A document maps the same key twice; the later value is never kept."""

    def __init__(self, key: str, where: str = ""):
        self.key = key
        self.where = where
        super().__init__(f"Key '{key}' is defined more than once{f' ({where})' if where else ''}")


class MissingConfigKeyError(ValidationError):
    def __init__(self, workload: str, alias: str, key: str):
        self.workload = workload
        self.alias = alias
        self.key = key
        super().__init__(f"Workload '{workload}': alias '{alias}' points at unknown config key '{key}'")


class ResourceUnavailableError(ReconcileError):
    """Something the resource depends on does not exist yet; retried next pass."""


class NoMatchingPoolError(ResourceUnavailableError):
    def __init__(self, claim: str, capacity: int, access_mode: str):
        self.claim = claim
        self.capacity = capacity
        self.access_mode = access_mode
        super().__init__(f"No volume pool can serve claim '{claim}' ({capacity} bytes, {access_mode})")


class NoHealthyBackends(ResourceUnavailableError):
    pass


class DataLossRefused(ReconcileError):
    pass
