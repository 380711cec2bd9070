"""
Reified dependency graph.

Built once by ``Stack.build()`` from the references found in resource inputs,
validated for acyclicity, then handed to the deployment engine.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from stackgraph.models.errors import CycleError
from stackgraph.models.resource import Resource


@dataclass
class ResourceGraph:
    stack: str
    resources: Dict[str, Resource] = field(default_factory=dict)   # declaration order
    dependencies: Dict[str, Set[str]] = field(default_factory=dict)  # name -> what it needs
    dependents: Dict[str, Set[str]] = field(default_factory=dict)    # adjacency list, edge B -> A
    exports: Dict[str, Any] = field(default_factory=dict)

    def add_resource(self, resource: Resource) -> None:
        self.resources[resource.name] = resource
        self.dependencies.setdefault(resource.name, set())
        self.dependents.setdefault(resource.name, set())

    def add_edge(self, dependency: str, dependent: str) -> None:
        self.dependencies[dependent].add(dependency)
        self.dependents[dependency].add(dependent)

    @property
    def edges(self) -> List[Tuple[str, str]]:
        """Every (dependency, dependent) pair, in declaration order."""
        order = self._index()
        return sorted(
            ((src, dst) for src, targets in self.dependents.items() for dst in targets),
            key=lambda e: (order[e[0]], order[e[1]]),
        )

    def _index(self) -> Dict[str, int]:
        return {name: i for i, name in enumerate(self.resources)}

    def _sorted(self, names) -> List[str]:
        order = self._index()
        return sorted(names, key=order.__getitem__)

    # ---------------------------------------------------------------- validation
    def find_cycle(self) -> Optional[List[str]]:
        """Return one dependency cycle as a closed path, or None."""
        white, grey, black = 0, 1, 2
        color = {name: white for name in self.resources}
        order = self._index()

        def successors(name: str):
            return iter(sorted(self.dependencies[name], key=order.__getitem__))

        # Iterative DFS: chain depth is unbounded
        for root in self.resources:
            if color[root] != white:
                continue
            color[root] = grey
            path: List[str] = [root]
            pending = [successors(root)]
            while pending:
                nxt = next(pending[-1], None)
                if nxt is None:
                    color[path.pop()] = black
                    pending.pop()
                elif color[nxt] == grey:
                    return path[path.index(nxt):] + [nxt]
                elif color[nxt] == white:
                    color[nxt] = grey
                    path.append(nxt)
                    pending.append(successors(nxt))
        return None

    def validate(self) -> None:
        cycle = self.find_cycle()
        if cycle:
            raise CycleError(cycle)

    # ---------------------------------------------------------------- ordering
    def layers(self) -> List[List[str]]:
        """
        Kahn's algorithm, grouped: every resource in layer N depends only on
        resources of earlier layers. Within a layer, declaration order.
        """
        order = self._index()
        remaining = {name: len(deps) for name, deps in self.dependencies.items()}
        current = [name for name in self.resources if remaining[name] == 0]
        result: List[List[str]] = []
        seen = 0
        while current:
            result.append(current)
            seen += len(current)
            ready = set()
            for name in current:
                for dependent in self.dependents[name]:
                    remaining[dependent] -= 1
                    if remaining[dependent] == 0:
                        ready.add(dependent)
            current = sorted(ready, key=order.__getitem__)
        if seen != len(self.resources):
            self.validate()
        return result

    def order(self) -> List[str]:
        return [name for layer in self.layers() for name in layer]

    def transitive_dependents(self, name: str) -> List[str]:
        found: Set[str] = set()
        todo = [name]
        while todo:
            for dependent in self.dependents[todo.pop()]:
                if dependent not in found:
                    found.add(dependent)
                    todo.append(dependent)
        return self._sorted(found)

    def to_dict(self) -> dict:
        return {
            "stack": self.stack,
            "resources": [
                {
                    "name": r.name,
                    "type": r.resource_type,
                    "kind": r.kind,
                    "protect": r.protect,
                    "depends_on": self._sorted(self.dependencies[r.name]),
                }
                for r in self.resources.values()
            ],
            "edges": [list(e) for e in self.edges],
            "exports": list(self.exports),
        }
