import re
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from stackgraph.models.errors import InvalidAttributeError, ResolutionError
from stackgraph.models.output import Reference

# Attribute names: "vpcId", "publicSubnetIds", "dns_name"
ATTRIBUTE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ResourceStatus(str, Enum):
    PENDING   = "pending"
    CREATING  = "creating"
    RESOLVED  = "resolved"
    FAILED    = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (ResourceStatus.RESOLVED, ResourceStatus.FAILED, ResourceStatus.CANCELLED)


@dataclass
class Resource:
    resource_type: str     # type token, e.g. "aws:ec2/vpc:Vpc"
    name: str              # logical name, unique within the stack
    inputs: Dict[str, Any] = field(default_factory=dict)
    kind: str = "managed"  # "managed" or "data" (lookup of existing infrastructure)
    protect: bool = False
    depends_on: List[str] = field(default_factory=list)
    secret_attributes: List[str] = field(default_factory=list)
    status: ResourceStatus = ResourceStatus.PENDING
    error: Optional[ResolutionError] = None
    resolution_count: int = 0
    _outputs: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def outputs(self) -> Mapping[str, Any]:
        return MappingProxyType(self._outputs)

    @property
    def qualified_name(self) -> str:
        return f"{self.resource_type}::{self.name}"

    def mark_creating(self) -> None:
        self._check_unsettled()
        self.status = ResourceStatus.CREATING

    def settle(self, outputs: Mapping[str, Any]) -> None:
        """Populate outputs. Allowed exactly once per resource."""
        self._check_unsettled()
        self._outputs.update(outputs)
        self.resolution_count += 1
        self.status = ResourceStatus.RESOLVED

    def fail(self, error: ResolutionError) -> None:
        self._check_unsettled()
        self.error = error
        self.status = ResourceStatus.FAILED

    def cancel(self, error: ResolutionError) -> None:
        if self.status.terminal:
            return
        self.error = error
        self.status = ResourceStatus.CANCELLED

    def _check_unsettled(self) -> None:
        if self.status.terminal:
            raise ResolutionError(
                f"Resource '{self.name}' is already {self.status.value}", self.name
            )


class ResourceHandle:
    """
    Returned by ``Stack.declare``. Attribute lookups give deferred references
    usable as inputs of later declarations or as stack outputs.
    """

    def __init__(self, resource: Resource, owner: Any):
        self._resource = resource
        self._owner = owner

    @property
    def name(self) -> str:
        return self._resource.name

    @property
    def resource_type(self) -> str:
        return self._resource.resource_type

    @property
    def resource(self) -> Resource:
        return self._resource

    def output(self, attribute: str) -> Reference:
        if not isinstance(attribute, str) or not ATTRIBUTE_RE.match(attribute):
            raise InvalidAttributeError(
                f"Invalid output attribute {attribute!r} on resource '{self.name}'"
            )
        return Reference(
            self.name,
            attribute,
            owner=self._owner,
            secret=attribute in self._resource.secret_attributes,
        )

    def __getitem__(self, attribute: str) -> Reference:
        return self.output(attribute)

    @property
    def id(self) -> Reference:
        return self.output("id")

    @property
    def arn(self) -> Reference:
        return self.output("arn")

    def __repr__(self) -> str:
        return f"<ResourceHandle {self.resource_type} '{self.name}'>"
