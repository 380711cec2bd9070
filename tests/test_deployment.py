"""
Deployment tests — concurrent resolution, partial failure, cancellation.
"""
import asyncio

import pytest

from stackgraph.builder import Stack
from stackgraph.engine import deployment
from stackgraph.engine.deployment import Deployment
from stackgraph.engine.provisioners import Provisioner, SimulatedProvisioner
from stackgraph.models.errors import (
    DependencyFailedError,
    GraphConstructionError,
    MissingOutputError,
    ProvisionFailedError,
    ResolutionCancelledError,
    ResolutionError,
)
from stackgraph.models.output import UNKNOWN, Output, ref
from stackgraph.models.resource import ResourceStatus


class RecordingProvisioner(Provisioner):
    """Echoes inputs and records the order of calls."""

    def __init__(self):
        self.log = []

    async def create(self, resource, inputs):
        self.log.append(("create", resource.name))
        return dict(inputs, id=f"{resource.name}-id")

    async def read(self, resource, args):
        self.log.append(("read", resource.name))
        return dict(args, id=f"{resource.name}-existing")


class SlowProvisioner(SimulatedProvisioner):
    """Never finishes provisioning the resources named in ``slow``."""

    def __init__(self, slow, **kwargs):
        super().__init__(**kwargs)
        self.slow = set(slow)

    async def create(self, resource, inputs):
        if resource.name in self.slow:
            await asyncio.sleep(30)
        return await super().create(resource, inputs)


class NoOutputsProvisioner(SimulatedProvisioner):
    """Returns nothing at all for the resources named in ``broken``."""

    def __init__(self, broken, **kwargs):
        super().__init__(**kwargs)
        self.broken = set(broken)

    async def create(self, resource, inputs):
        if resource.name in self.broken:
            return None
        return await super().create(resource, inputs)


def _branches_stack():
    """
    base -> left -> left-app
         -> right -> right-app
    """
    stack = Stack("dev")
    base = stack.declare("awsx:ec2:Vpc", "base")
    left = stack.declare("aws:ec2/subnet:Subnet", "left", {"vpcId": base["vpcId"]})
    stack.declare("aws:ec2/instance:Instance", "left-app", {"subnetId": left.id})
    right = stack.declare("aws:ec2/subnet:Subnet", "right", {"vpcId": base["vpcId"]})
    right_app = stack.declare("aws:ec2/instance:Instance", "right-app", {"subnetId": right.id})
    stack.export("rightDns", right_app["publicDns"])
    stack.export("leftSubnet", left.id)
    return stack


def _failing(*names, reason="quota exceeded"):
    return SimulatedProvisioner({"resources": {n: {"fail": reason} for n in names}})


def _status(result):
    return {r.name: r.status for r in result.resources}


class TestApply:
    def test_everything_resolves(self):
        result = deployment.apply(_branches_stack().build(), SimulatedProvisioner())
        assert result.ok
        assert not result.cancelled
        assert set(_status(result).values()) == {ResourceStatus.RESOLVED}
        assert result.outputs["rightDns"].startswith("ec2-203-0-113-")
        assert result.counts()["resolved"] == 5

    def test_inputs_are_resolved_before_provisioning(self):
        graph = _branches_stack().build()
        deployment.apply(graph, SimulatedProvisioner())
        base = graph.resources["base"]
        left = graph.resources["left"]
        assert left.outputs["vpcId"] == base.outputs["vpcId"]
        assert left.outputs["vpcId"].startswith("vpc-")

    def test_dependencies_are_provisioned_first(self):
        provisioner = RecordingProvisioner()
        graph = _branches_stack().build()
        deployment.apply(graph, provisioner, parallel=1)
        order = [name for _, name in provisioner.log]
        for dependency, dependent in graph.edges:
            assert order.index(dependency) < order.index(dependent)

    def test_data_sources_are_read(self):
        stack = Stack("dev")
        zone = stack.read("aws:route53/getZone:getZone", "zone", {"name": "example.com"})
        stack.declare("aws:route53/record:Record", "www", {"zoneId": zone.id, "type": "A"})
        provisioner = RecordingProvisioner()
        result = deployment.apply(stack.build(), provisioner)
        assert result.ok
        assert provisioner.log == [("read", "zone"), ("create", "www")]
        assert result.resources[1].outputs["zoneId"] == "zone-existing"

    def test_http_url_from_load_balancer(self):
        stack = Stack("dev")
        alb = stack.declare("aws:lb/loadBalancer:LoadBalancer", "alb")
        stack.export("url", Output.concat("http://", alb["dnsName"]))
        state = {"resources": {"alb": {"outputs": {"dnsName": "host.example.com"}}}}
        result = deployment.apply(stack.build(), SimulatedProvisioner(state))
        assert result.outputs["url"] == "http://host.example.com"

    def test_empty_stack(self):
        result = deployment.apply(Stack("empty").build(), SimulatedProvisioner())
        assert result.ok
        assert result.resources == []

    def test_graph_applies_once(self):
        graph = _branches_stack().build()
        deployment.apply(graph, SimulatedProvisioner())
        with pytest.raises(GraphConstructionError, match="already been applied"):
            deployment.apply(graph, SimulatedProvisioner())

    def test_parallel_must_be_positive(self):
        with pytest.raises(ValueError):
            Deployment(_branches_stack().build(), SimulatedProvisioner(), parallel=0)


class TestPartialFailure:
    def test_failure_is_scoped_to_dependents(self):
        result = deployment.apply(_branches_stack().build(), _failing("left"))
        status = _status(result)
        assert status["base"] == ResourceStatus.RESOLVED
        assert status["left"] == ResourceStatus.FAILED
        assert status["left-app"] == ResourceStatus.FAILED
        assert status["right"] == ResourceStatus.RESOLVED
        assert status["right-app"] == ResourceStatus.RESOLVED
        assert not result.ok
        assert [r.name for r in result.failed] == ["left", "left-app"]

    def test_origin_error_and_chain(self):
        graph = _branches_stack().build()
        deployment.apply(graph, _failing("left"))
        left = graph.resources["left"]
        left_app = graph.resources["left-app"]
        assert isinstance(left.error, ProvisionFailedError)
        assert "quota exceeded" in str(left.error)
        assert isinstance(left_app.error, DependencyFailedError)
        assert left_app.error.chain == ["left-app", "left"]
        assert left_app.error.origin == "left"

    def test_chain_reaches_root_failure(self):
        graph = _branches_stack().build()
        result = deployment.apply(graph, _failing("base"))
        assert all(r.status == ResourceStatus.FAILED for r in result.resources)
        assert graph.resources["right-app"].error.chain == ["right-app", "right", "base"]
        assert "via right-app -> right -> base" in str(graph.resources["right-app"].error)

    def test_failed_resource_has_no_outputs(self):
        graph = _branches_stack().build()
        deployment.apply(graph, _failing("left"))
        assert graph.resources["left"].outputs == {}
        assert graph.resources["left-app"].resolution_count == 0

    def test_stack_outputs_of_failed_resources(self):
        result = deployment.apply(_branches_stack().build(), _failing("left"))
        assert "rightDns" in result.outputs
        assert "leftSubnet" not in result.outputs
        assert isinstance(result.output_errors["leftSubnet"], ProvisionFailedError)

    def test_missing_output_attribute(self):
        stack = Stack("dev")
        vpc = stack.declare("aws:ec2/vpc:Vpc", "vpc")
        stack.declare("aws:ec2/subnet:Subnet", "subnet", {"vpcId": vpc["doesNotExist"]})
        graph = stack.build()
        deployment.apply(graph, SimulatedProvisioner())
        subnet = graph.resources["subnet"]
        assert graph.resources["vpc"].status == ResourceStatus.RESOLVED
        assert subnet.status == ResourceStatus.FAILED
        assert isinstance(subnet.error, MissingOutputError)
        assert subnet.error.chain == ["subnet", "vpc"]
        assert "no output 'doesNotExist'" in str(subnet.error)

    def test_dependent_of_missing_output_names_the_consumer(self):
        stack = Stack("dev")
        vpc = stack.declare("aws:ec2/vpc:Vpc", "vpc")
        subnet = stack.declare("aws:ec2/subnet:Subnet", "subnet", {"vpcId": vpc["doesNotExist"]})
        stack.declare("aws:ec2/instance:Instance", "server", {"subnetId": subnet.id})
        graph = stack.build()
        deployment.apply(graph, SimulatedProvisioner())
        error = graph.resources["server"].error
        assert isinstance(error, DependencyFailedError)
        assert error.chain == ["server", "subnet", "vpc"]
        assert "depends on 'subnet' which failed" in str(error)
        assert "failed resource 'vpc'" not in str(error)

    def test_error_in_derived_value(self):
        stack = Stack("dev")
        vpc = stack.declare("aws:ec2/vpc:Vpc", "vpc")
        stack.declare("aws:ec2/subnet:Subnet", "subnet", {"cidr": vpc.id.apply(lambda v: 1 / 0)})
        graph = stack.build()
        deployment.apply(graph, SimulatedProvisioner())
        error = graph.resources["subnet"].error
        assert type(error) is ResolutionError
        assert "division by zero" in str(error)

    def test_engine_returning_no_outputs_fails_the_resource(self):
        stack = Stack("dev")
        bad = stack.declare("test:index:Thing", "bad")
        stack.declare("test:index:Thing", "child", {"parent": bad.id})
        stack.declare("test:index:Thing", "free")
        graph = stack.build()
        result = deployment.apply(graph, NoOutputsProvisioner(["bad"]))
        assert not result.cancelled
        assert _status(result) == {
            "bad": ResourceStatus.FAILED,
            "child": ResourceStatus.FAILED,
            "free": ResourceStatus.RESOLVED,
        }
        assert isinstance(graph.resources["bad"].error, ProvisionFailedError)
        assert "engine returned NoneType" in str(graph.resources["bad"].error)
        assert graph.resources["child"].error.chain == ["child", "bad"]

    def test_first_failed_dependency_in_declaration_order(self):
        stack = Stack("dev")
        a = stack.declare("test:index:Thing", "a")
        b = stack.declare("test:index:Thing", "b")
        stack.declare("test:index:Thing", "c", {"x": b.id, "y": a.id})
        graph = stack.build()
        deployment.apply(graph, _failing("a", "b"))
        assert graph.resources["c"].error.chain == ["c", "a"]


class TestConcurrency:
    def _wide_stack(self, width=6):
        stack = Stack("dev")
        base = stack.declare("awsx:ec2:Vpc", "base")
        for i in range(width):
            stack.declare("aws:ec2/subnet:Subnet", f"leaf-{i}", {"vpcId": base["vpcId"]})
        return stack

    def test_independent_resources_run_concurrently(self):
        provisioner = SimulatedProvisioner(delay=0.02)
        result = deployment.apply(self._wide_stack().build(), provisioner, parallel=10)
        assert result.ok
        assert provisioner.max_in_flight > 1

    def test_parallel_limit(self):
        provisioner = SimulatedProvisioner(delay=0.01)
        deployment.apply(self._wide_stack().build(), provisioner, parallel=2)
        assert provisioner.max_in_flight <= 2

    def test_each_resource_resolves_at_most_once(self):
        provisioner = SimulatedProvisioner(delay=0.01)
        graph = self._wide_stack(8).build()
        deployment.apply(graph, provisioner, parallel=4)
        assert all(r.resolution_count == 1 for r in graph.resources.values())
        assert set(provisioner.calls.values()) == {1}

    def test_resource_cannot_settle_twice(self):
        graph = _branches_stack().build()
        deployment.apply(graph, SimulatedProvisioner())
        with pytest.raises(ResolutionError, match="already resolved"):
            graph.resources["base"].settle({"vpcId": "vpc-other"})

    def test_idempotent_outputs(self):
        first = deployment.apply(_branches_stack().build(), SimulatedProvisioner())
        second = deployment.apply(_branches_stack().build(), SimulatedProvisioner())
        assert first.outputs == second.outputs
        assert [dict(r.outputs) for r in first.resources] == [dict(r.outputs) for r in second.resources]


class TestCancellation:
    def _stack(self):
        stack = Stack("dev")
        stack.declare("test:index:Thing", "fast")
        slow = stack.declare("test:index:Thing", "slow")
        stack.declare("test:index:Thing", "after", {"peer": slow.id})
        return stack

    def test_timeout_marks_unsettled_resources(self):
        graph = self._stack().build()
        result = deployment.apply(graph, SlowProvisioner(["slow"]), timeout=0.2)
        status = _status(result)
        assert result.cancelled
        assert not result.ok
        assert status["fast"] == ResourceStatus.RESOLVED
        assert status["slow"] == ResourceStatus.CANCELLED
        assert status["after"] == ResourceStatus.CANCELLED
        assert isinstance(graph.resources["slow"].error, ResolutionCancelledError)
        assert result.counts()["cancelled"] == 2

    def test_external_cancellation(self):
        graph = self._stack().build()

        async def scenario():
            task = asyncio.ensure_future(Deployment(graph, SlowProvisioner(["slow"])).run())
            await asyncio.sleep(0.1)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())
        assert graph.resources["fast"].status == ResourceStatus.RESOLVED
        assert graph.resources["slow"].status == ResourceStatus.CANCELLED
        assert graph.resources["after"].status == ResourceStatus.CANCELLED

    def test_cancel_never_overrides_resolution(self):
        graph = self._stack().build()
        deployment.apply(graph, SlowProvisioner(["slow"]), timeout=0.2)
        fast = graph.resources["fast"]
        fast.cancel(ResolutionCancelledError("fast"))
        assert fast.status == ResourceStatus.RESOLVED
        assert fast.error is None


class TestPreview:
    def test_plan_layers_and_pending_inputs(self):
        steps = deployment.preview(_branches_stack().build())
        assert [(s.layer, s.name) for s in steps] == [
            (0, "base"),
            (1, "left"),
            (1, "right"),
            (2, "left-app"),
            (2, "right-app"),
        ]
        left = steps[1]
        assert left.depends_on == ["base"]
        assert left.inputs == {"vpcId": UNKNOWN}

    def test_plan_with_failing_callback(self):
        stack = Stack("dev")
        stack.declare("test:index:Thing", "thing", {"x": Output.from_value({}).apply(lambda v: v["x"])})
        graph = stack.build()
        steps = deployment.preview(graph)
        assert steps[0].inputs == {"x": UNKNOWN}
        result = deployment.apply(graph, SimulatedProvisioner())
        assert type(graph.resources["thing"].error) is ResolutionError
        assert not result.ok

    def test_plan_keeps_known_inputs(self):
        stack = Stack("dev")
        stack.declare("aws:ec2/vpc:Vpc", "vpc", {"cidrBlock": "10.0.0.0/16"}, protect=True)
        steps = deployment.preview(stack.build())
        assert steps[0].inputs == {"cidrBlock": "10.0.0.0/16"}
        assert steps[0].protect

    def test_plan_masks_secret_inputs(self):
        stack = Stack("dev")
        stack.declare("aws:ec2/keyPair:KeyPair", "key", {"publicKey": Output.secret("ssh-rsa AAAA")})
        steps = deployment.preview(stack.build())
        assert steps[0].inputs == {"publicKey": "[secret]"}

    def test_preview_does_not_provision(self):
        graph = _branches_stack().build()
        deployment.preview(graph)
        assert all(r.status == ResourceStatus.PENDING for r in graph.resources.values())


class TestSecrets:
    def _stack(self):
        stack = Stack("dev")
        db = stack.declare(
            "aws:rds/instance:Instance", "db", {"password": Output.secret("hunter2"), "engine": "postgres"}
        )
        stack.export("password", db["password"])
        stack.export("engine", db["engine"])
        stack.export("connection", Output.format("postgres://admin:{}@db", db["password"]))
        return stack

    def test_secret_exports_are_masked(self):
        result = deployment.apply(self._stack().build(), SimulatedProvisioner())
        assert result.secret_outputs == {"password", "connection"}
        shown = result.display_outputs()
        assert shown["password"] == "[secret]"
        assert shown["connection"] == "[secret]"
        assert shown["engine"] == "postgres"
        assert result.display_outputs(show_secrets=True)["password"] == "hunter2"

    def test_secret_resource_attributes_are_masked(self):
        result = deployment.apply(self._stack().build(), SimulatedProvisioner())
        db = result.to_dict()["resources"][0]
        assert db["outputs"]["password"] == "[secret]"
        assert db["outputs"]["engine"] == "postgres"
        assert "hunter2" not in str(result.to_dict())
