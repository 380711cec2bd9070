"""
Preview and apply.

``preview`` walks the validated graph without provisioning anything.
``Deployment.run`` resolves it: one task per resource, each suspended until
every resource it references has settled, provisioning bounded by a
semaphore. A failure is recorded on the resource that failed and on every
transitive dependent; independent branches keep going.
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set

from rich.console import Console

from stackgraph.engine.context import ResolutionContext
from stackgraph.engine.provisioners import Provisioner
from stackgraph.graph import ResourceGraph
from stackgraph.models.errors import (
    DependencyFailedError,
    GraphConstructionError,
    MissingOutputError,
    ProvisionFailedError,
    ResolutionCancelledError,
    ResolutionError,
)
from stackgraph.models.output import contains_secrets, peek_nested, resolve_nested
from stackgraph.models.resource import Resource, ResourceStatus

console = Console(stderr=True)


# ------------------------------------------------------------------ preview
@dataclass
class PlanStep:
    layer: int
    name: str
    resource_type: str
    kind: str
    protect: bool
    depends_on: List[str]
    inputs: Dict[str, Any]


class _GraphView:
    """Peek-only context backed by the outputs already stored on resources."""

    def __init__(self, graph: ResourceGraph):
        self.graph = graph

    def peek(self, name: str) -> Optional[Mapping[str, Any]]:
        resource = self.graph.resources.get(name)
        if resource is None or resource.status != ResourceStatus.RESOLVED:
            return None
        return resource.outputs

    async def wait(self, name: str) -> Mapping[str, Any]:
        raise RuntimeError("preview never waits for resources")


def preview(graph: ResourceGraph) -> List[PlanStep]:
    view = _GraphView(graph)
    steps: List[PlanStep] = []
    for index, layer in enumerate(graph.layers()):
        for name in layer:
            r = graph.resources[name]
            steps.append(PlanStep(
                layer=index,
                name=name,
                resource_type=r.resource_type,
                kind=r.kind,
                protect=r.protect,
                depends_on=graph._sorted(graph.dependencies[name]),
                inputs={
                    k: "[secret]" if k in r.secret_attributes else v
                    for k, v in peek_nested(r.inputs, view).items()
                },
            ))
    return steps


# ------------------------------------------------------------------ apply
@dataclass
class ApplyResult:
    stack: str
    resources: List[Resource]
    outputs: Dict[str, Any] = field(default_factory=dict)
    output_errors: Dict[str, ResolutionError] = field(default_factory=dict)
    secret_outputs: Set[str] = field(default_factory=set)
    cancelled: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return (
            not self.cancelled
            and not self.output_errors
            and all(r.status == ResourceStatus.RESOLVED for r in self.resources)
        )

    @property
    def failed(self) -> List[Resource]:
        return [r for r in self.resources if r.status == ResourceStatus.FAILED]

    def counts(self) -> Dict[str, int]:
        return {s.value: sum(1 for r in self.resources if r.status == s) for s in ResourceStatus}

    def display_outputs(self, show_secrets: bool = False) -> Dict[str, Any]:
        return {
            name: value if show_secrets or name not in self.secret_outputs else "[secret]"
            for name, value in self.outputs.items()
        }

    def to_dict(self, show_secrets: bool = False) -> dict:
        return {
            "stack": self.stack,
            "ok": self.ok,
            "cancelled": self.cancelled,
            "summary": self.counts(),
            "resources": [
                {
                    "name": r.name,
                    "type": r.resource_type,
                    "kind": r.kind,
                    "protect": r.protect,
                    "status": r.status.value,
                    "outputs": _masked(r, show_secrets),
                    "error": str(r.error) if r.error else None,
                    "failure_chain": r.error.chain if r.error else [],
                }
                for r in self.resources
            ],
            "outputs": self.display_outputs(show_secrets),
            "output_errors": {name: str(exc) for name, exc in self.output_errors.items()},
        }


def _masked(resource: Resource, show_secrets: bool) -> Dict[str, Any]:
    return {
        k: v if show_secrets or k not in resource.secret_attributes else "[secret]"
        for k, v in resource.outputs.items()
    }


class Deployment:
    def __init__(
        self,
        graph: ResourceGraph,
        provisioner: Provisioner,
        parallel: int = 10,
        verbose: bool = False,
    ):
        if parallel < 1:
            raise ValueError("parallel must be at least 1")
        self.graph = graph
        self.provisioner = provisioner
        self.parallel = parallel
        self.verbose = verbose
        self.ctx: Optional[ResolutionContext] = None

    async def run(self, timeout: Optional[float] = None) -> ApplyResult:
        """
        Resolve every resource, then the stack outputs.

        On timeout, unsettled resources are marked cancelled and the result
        has ``cancelled`` set. If the calling task itself is cancelled, the
        same marking happens before ``CancelledError`` propagates.
        """
        stale = [r.name for r in self.graph.resources.values() if r.status != ResourceStatus.PENDING]
        if stale:
            raise GraphConstructionError(
                f"Stack '{self.graph.stack}' has already been applied; rebuild it to apply again"
            )

        started = time.monotonic()
        self.ctx = ResolutionContext(self.graph.resources)
        self._semaphore = asyncio.Semaphore(self.parallel)
        tasks = [asyncio.ensure_future(self._resolve_one(name)) for name in self.graph.order()]

        cancelled = False
        try:
            pending = set()
            if tasks:
                _, pending = await asyncio.wait(tasks, timeout=timeout)
            if pending:
                cancelled = True
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._cancel_unsettled()
            raise
        self._cancel_unsettled()

        result = ApplyResult(stack=self.graph.stack, resources=list(self.graph.resources.values()))
        result.cancelled = cancelled
        await self._resolve_exports(result)
        result.duration = time.monotonic() - started
        return result

    async def _resolve_one(self, name: str) -> None:
        resource = self.graph.resources[name]
        try:
            outputs = await self._provision(resource)
        except asyncio.CancelledError:
            self._cancel(resource)
            raise
        except ResolutionCancelledError:
            self._cancel(resource)
            return
        except ResolutionError as exc:
            self._fail(resource, exc)
            return
        except Exception as exc:
            self._fail(resource, ResolutionError(f"Failed to resolve '{name}': {exc!r}", name))
            return

        resource.settle(outputs)
        self.ctx.settle(name, outputs)
        if self.verbose:
            console.print(f"  [green]+[/green] {resource.resource_type} [bold]{name}[/bold]")

    async def _provision(self, resource: Resource) -> Dict[str, Any]:
        name = resource.name

        # 1. Wait for every dependency; the first failure in declaration order wins
        for dependency in self.graph._sorted(self.graph.dependencies[name]):
            try:
                await self.ctx.wait(dependency)
            except ResolutionCancelledError:
                raise ResolutionCancelledError(name)
            except ResolutionError as exc:
                raise DependencyFailedError(name, exc)

        # 2. Resolve inputs; every referenced resource has settled by now
        try:
            inputs = await resolve_nested(resource.inputs, self.ctx)
        except MissingOutputError as exc:
            raise MissingOutputError(exc.target, exc.attribute, consumer=name)
        except ResolutionCancelledError:
            raise ResolutionCancelledError(name)
        except ResolutionError as exc:
            raise DependencyFailedError(name, exc)
        except Exception as exc:
            raise ResolutionError(f"Failed to compute inputs of '{name}': {exc}", name)

        # 3. Hand over to the engine
        async with self._semaphore:
            resource.mark_creating()
            if self.verbose:
                console.print(f"  [dim]…[/dim] {resource.resource_type} [bold]{name}[/bold]")
            try:
                if resource.kind == "data":
                    outputs = await self.provisioner.read(resource, inputs)
                else:
                    outputs = await self.provisioner.create(resource, inputs)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                raise ProvisionFailedError(name, str(exc) or exc.__class__.__name__)

        if not isinstance(outputs, Mapping):
            raise ProvisionFailedError(name, f"engine returned {type(outputs).__name__}, not a mapping")
        return dict(outputs)

    def _fail(self, resource: Resource, error: ResolutionError) -> None:
        resource.fail(error)
        self.ctx.fail(resource.name, error)
        console.print(f"  [red]x[/red] {resource.resource_type} [bold]{resource.name}[/bold]: {error}")

    def _cancel(self, resource: Resource) -> None:
        resource.cancel(ResolutionCancelledError(resource.name))
        self.ctx.cancel(resource.name)

    def _cancel_unsettled(self) -> None:
        for resource in self.graph.resources.values():
            if not resource.status.terminal:
                self._cancel(resource)

    async def _resolve_exports(self, result: ApplyResult) -> None:
        for export_name, value in self.graph.exports.items():
            if contains_secrets(value):
                result.secret_outputs.add(export_name)
            try:
                result.outputs[export_name] = await resolve_nested(value, self.ctx)
            except ResolutionError as exc:
                result.output_errors[export_name] = exc
            except Exception as exc:
                result.output_errors[export_name] = ResolutionError(
                    f"Failed to compute stack output '{export_name}': {exc}"
                )


def apply(
    graph: ResourceGraph,
    provisioner: Provisioner,
    parallel: int = 10,
    timeout: Optional[float] = None,
    verbose: bool = False,
) -> ApplyResult:
    """Synchronous entry point: run a deployment on a fresh event loop."""
    return asyncio.run(Deployment(graph, provisioner, parallel, verbose).run(timeout))
