"""
Exception hierarchy.

Construction and configuration errors are fatal and raised before anything is
provisioned. Resolution errors are scoped to one resource and recorded on it;
they never abort the walk of independent branches.
"""
from typing import List, Optional, Sequence


class StackError(Exception):
    """Base class for every error raised by stackgraph."""


# ------------------------------------------------------------------ construction
class GraphConstructionError(StackError):
    pass


class InvalidNameError(GraphConstructionError):
    pass


class InvalidAttributeError(GraphConstructionError):
    pass


class DuplicateResourceError(GraphConstructionError):
    def __init__(self, name: str):
        super().__init__(f"Resource '{name}' is declared more than once")
        self.name = name


class UnknownResourceError(GraphConstructionError):
    def __init__(self, name: str, referenced_by: Optional[str] = None):
        where = f" (referenced by '{referenced_by}')" if referenced_by else ""
        super().__init__(f"Reference to undeclared resource '{name}'{where}")
        self.name = name
        self.referenced_by = referenced_by


class CycleError(GraphConstructionError):
    def __init__(self, cycle: Sequence[str]):
        super().__init__("Dependency cycle detected: " + " -> ".join(cycle))
        self.cycle = list(cycle)


class StackFileError(GraphConstructionError):
    pass


# ------------------------------------------------------------------ configuration
class ConfigError(StackError):
    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


# ------------------------------------------------------------------ resolution
class ProvisionerError(StackError):
    """Raised by a provisioner to report that a resource could not be provisioned."""


class ResolutionError(StackError):
    """
    Permanent failure of one resource (or one deferred value).

    ``chain`` is the path from the resource that reports the error down to the
    resource where the failure originated, e.g. ``["service", "cluster", "vpc"]``.
    """

    def __init__(self, message: str, resource: str = "", chain: Optional[List[str]] = None):
        super().__init__(message)
        self.resource = resource
        self.chain = list(chain) if chain else ([resource] if resource else [])

    @property
    def origin(self) -> str:
        return self.chain[-1] if self.chain else self.resource


class ProvisionFailedError(ResolutionError):
    def __init__(self, resource: str, reason: str):
        super().__init__(f"Resource '{resource}' failed to provision: {reason}", resource)
        self.reason = reason


class DependencyFailedError(ResolutionError):
    def __init__(self, resource: str, cause: ResolutionError):
        chain = [resource] + cause.chain
        if isinstance(cause, MissingOutputError):
            # the target resolved; it was the consumer that failed
            reason = f"depends on '{cause.resource}' which failed: {cause}"
        else:
            reason = f"depends on failed resource '{cause.origin}'"
        super().__init__(
            f"Resource '{resource}' {reason} (via {' -> '.join(chain)})",
            resource,
            chain,
        )
        self.cause = cause


class MissingOutputError(ResolutionError):
    """A reference names an attribute the resolved resource does not expose."""

    def __init__(self, target: str, attribute: str, consumer: Optional[str] = None):
        chain = [consumer, target] if consumer else [target]
        super().__init__(
            f"Resource '{target}' has no output '{attribute}'", consumer or target, chain
        )
        self.target = target
        self.attribute = attribute


class ResolutionCancelledError(ResolutionError):
    def __init__(self, resource: str):
        super().__init__(f"Resolution of '{resource}' was cancelled", resource)
