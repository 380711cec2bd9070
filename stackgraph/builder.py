"""
Resource graph builder.

``Stack.declare`` records a resource and returns a handle immediately; the
handle's attributes are deferred references usable as inputs of later
declarations. ``Stack.build`` reifies the implied dependency graph and rejects
undeclared references and cycles before anything is provisioned.
"""
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from stackgraph.config import StackConfig
from stackgraph.graph import ResourceGraph
from stackgraph.models.errors import (
    CycleError,
    DuplicateResourceError,
    GraphConstructionError,
    InvalidAttributeError,
    InvalidNameError,
    UnknownResourceError,
)
from stackgraph.models.output import Reference, contains_secrets, iter_references
from stackgraph.models.resource import ATTRIBUTE_RE, Resource, ResourceHandle

# Logical names: "vpc", "sxsyd-listener-443", "test-web-dev.image"
NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._\-]*$")

Dependency = Union[ResourceHandle, str]


class Stack:
    def __init__(self, name: str, config: Optional[StackConfig] = None):
        if not isinstance(name, str) or not NAME_RE.match(name):
            raise InvalidNameError(f"Invalid stack name {name!r}")
        self.name = name
        self.config = config or StackConfig(stack=name)
        self._resources: Dict[str, Resource] = {}
        self._exports: Dict[str, Any] = {}
        self._graph: Optional[ResourceGraph] = None

    def __len__(self) -> int:
        return len(self._resources)

    @property
    def resources(self) -> List[Resource]:
        return list(self._resources.values())

    @property
    def exports(self) -> Dict[str, Any]:
        return dict(self._exports)

    # ---------------------------------------------------------------- declaration
    def declare(
        self,
        resource_type: str,
        name: str,
        inputs: Optional[Dict[str, Any]] = None,
        *,
        protect: bool = False,
        depends_on: Iterable[Dependency] = (),
    ) -> ResourceHandle:
        """Declare a managed resource."""
        return self._register(resource_type, name, inputs, "managed", protect, depends_on)

    def read(
        self,
        resource_type: str,
        name: str,
        args: Optional[Dict[str, Any]] = None,
        *,
        depends_on: Iterable[Dependency] = (),
    ) -> ResourceHandle:
        """Declare a lookup of existing infrastructure (a data source)."""
        return self._register(resource_type, name, args, "data", False, depends_on)

    def export(self, name: str, value: Any) -> None:
        self._check_open()
        if not isinstance(name, str) or not NAME_RE.match(name):
            raise InvalidNameError(f"Invalid stack output name {name!r}")
        if name in self._exports:
            raise GraphConstructionError(f"Stack output '{name}' is exported more than once")
        for reference in iter_references(value):
            self._check_reference(reference, f"output:{name}")
        self._exports[name] = value

    def _register(
        self,
        resource_type: str,
        name: str,
        inputs: Optional[Dict[str, Any]],
        kind: str,
        protect: bool,
        depends_on: Iterable[Dependency],
    ) -> ResourceHandle:
        self._check_open()
        if not isinstance(name, str) or not NAME_RE.match(name):
            raise InvalidNameError(f"Invalid resource name {name!r}")
        if not isinstance(resource_type, str) or not resource_type.strip() or " " in resource_type:
            raise InvalidNameError(f"Invalid type token {resource_type!r} for resource '{name}'")
        if name in self._resources:
            raise DuplicateResourceError(name)

        if inputs is not None and not isinstance(inputs, Mapping):
            raise GraphConstructionError(
                f"Inputs of '{name}' must be a mapping, got {type(inputs).__name__}"
            )
        inputs = dict(inputs or {})
        for key in inputs:
            if not isinstance(key, str) or not ATTRIBUTE_RE.match(key):
                raise InvalidAttributeError(f"Invalid input attribute {key!r} on resource '{name}'")
        for reference in iter_references(inputs):
            self._check_reference(reference, name)

        resource = Resource(
            resource_type=resource_type,
            name=name,
            inputs=inputs,
            kind=kind,
            protect=bool(protect),
            depends_on=[self._dependency_name(d, name) for d in depends_on],
            secret_attributes=sorted(k for k, v in inputs.items() if contains_secrets(v)),
        )
        self._resources[name] = resource
        return ResourceHandle(resource, owner=self)

    def _check_open(self) -> None:
        if self._graph is not None:
            raise GraphConstructionError(
                f"Stack '{self.name}' has already been built; declare resources before build()"
            )

    def _check_reference(self, reference: Reference, referenced_by: str) -> None:
        if not isinstance(reference.attribute, str) or not ATTRIBUTE_RE.match(reference.attribute):
            raise InvalidAttributeError(
                f"Invalid output attribute {reference.attribute!r} referenced by '{referenced_by}'"
            )
        if reference.owner is not None and reference.owner is not self:
            raise UnknownResourceError(reference.resource, referenced_by)

    def _dependency_name(self, dependency: Dependency, referenced_by: str) -> str:
        if isinstance(dependency, ResourceHandle):
            if dependency._owner is not self:
                raise UnknownResourceError(dependency.name, referenced_by)
            return dependency.name
        if isinstance(dependency, str):
            return dependency
        raise GraphConstructionError(
            f"depends_on of '{referenced_by}' must hold handles or names, got {dependency!r}"
        )

    # ---------------------------------------------------------------- build
    def build(self) -> ResourceGraph:
        """
        Reify the dependency graph and validate it. Returns the same graph on
        repeated calls; the stack is sealed afterwards.
        """
        if self._graph is not None:
            return self._graph

        graph = ResourceGraph(self.name)
        for resource in self._resources.values():
            graph.add_resource(resource)

        for resource in self._resources.values():
            needed = [ref.resource for ref in iter_references(resource.inputs)]
            needed.extend(resource.depends_on)
            for dependency in needed:
                if dependency not in self._resources:
                    raise UnknownResourceError(dependency, resource.name)
                if dependency == resource.name:
                    raise CycleError([resource.name, resource.name])
                graph.add_edge(dependency, resource.name)

        for export_name, value in self._exports.items():
            for reference in iter_references(value):
                if reference.resource not in self._resources:
                    raise UnknownResourceError(reference.resource, f"output:{export_name}")

        graph.exports = dict(self._exports)
        graph.validate()
        self._graph = graph
        return graph
