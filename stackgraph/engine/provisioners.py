"""
Reconciliation engine contract and a deterministic simulated engine.

The deployment walk only ever talks to a ``Provisioner``: it hands over the
resource with fully resolved inputs and gets back the resource's outputs, or
an exception meaning the resource failed permanently.
"""
import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from hashlib import sha1
from typing import Any, Dict, Mapping, Optional

import yaml

from stackgraph.models.errors import ProvisionerError, StackFileError
from stackgraph.models.resource import Resource


class Provisioner(ABC):
    @abstractmethod
    async def create(self, resource: Resource, inputs: Dict[str, Any]) -> Dict[str, Any]:
        """Provision a managed resource and return its outputs."""

    @abstractmethod
    async def read(self, resource: Resource, args: Dict[str, Any]) -> Dict[str, Any]:
        """Look up existing infrastructure and return its attributes."""


# Attributes the simulated engine derives per type token, on top of
# id / arn / urn and the echoed inputs. Strings are format templates.
_DERIVED_OUTPUTS: Dict[str, Dict[str, Any]] = {
    "awsx:ec2:Vpc": {
        "vpcId": "vpc-{short}",
        "publicSubnetIds": ["subnet-{short}a", "subnet-{short}b"],
        "privateSubnetIds": ["subnet-{short}c", "subnet-{short}d"],
    },
    "aws:ec2/vpc:Vpc":                    {"id": "vpc-{short}"},
    "aws:ec2/subnet:Subnet":              {"id": "subnet-{short}"},
    "aws:ec2/internetGateway:InternetGateway": {"id": "igw-{short}"},
    "aws:ec2/routeTable:RouteTable":      {"id": "rtb-{short}"},
    "aws:ec2/securityGroup:SecurityGroup": {"id": "sg-{short}"},
    "aws:ec2/keyPair:KeyPair":            {"keyName": "{physical}"},
    "aws:ec2/launchTemplate:LaunchTemplate": {"id": "lt-{short}", "latestVersion": 1},
    "aws:ec2/instance:Instance": {
        "id": "i-{short}",
        "publicIp": "{ip}",
        "publicDns": "ec2-{ip_dashed}.{region}.compute.amazonaws.com",
        "privateIp": "10.0.{octet}.{octet}",
    },
    "aws:ec2/eip:Eip":                    {"publicIp": "{ip}", "allocationId": "eipalloc-{short}"},
    "aws:ec2/getAmi:getAmi":              {"id": "ami-{short}"},
    "aws:ec2/getVpc:getVpc":              {"cidrBlock": "10.0.0.0/16"},
    "awsx:lb:ApplicationLoadBalancer": {
        "loadBalancer": {
            "arn": "{arn}",
            "dnsName": "{physical}-{octet}.{region}.elb.amazonaws.com",
            "zoneId": "Z{upper}",
        },
    },
    "aws:lb/getLoadBalancer:getLoadBalancer": {
        "dnsName": "{physical}-{octet}.{region}.elb.amazonaws.com",
        "zoneId": "Z{upper}",
    },
    "aws:lb/listener:Listener":           {},
    "aws:lb/getListener:getListener":     {},
    "aws:acm/getCertificate:getCertificate": {
        "arn": "arn:aws:acm:{region}:{account}:certificate/{digest}",
    },
    "aws:cloudwatch/logGroup:LogGroup":   {"name": "{physical}"},
    "aws:ecs/cluster:Cluster":            {"name": "{physical}"},
    "aws:ecs/getCluster:getCluster":      {},
    "aws:autoscaling/group:Group":        {"name": "{physical}"},
    "aws:ecs/capacityProvider:CapacityProvider": {"name": "{physical}"},
    "aws:ecr/repository:Repository": {
        "name": "{physical}",
        "repositoryUrl": "{account}.dkr.ecr.{region}.amazonaws.com/{physical}",
    },
    "awsx:ecr:Image":                     {"imageUri": "{repositoryUrl}@sha256:{digest}"},
    "aws:iam/role:Role": {
        "name": "{physical}",
        "arn": "arn:aws:iam::{account}:role/{physical}",
    },
    "aws:iam/instanceProfile:InstanceProfile": {"name": "{physical}"},
    "aws:route53/zone:Zone":              {"zoneId": "Z{upper}"},
    "aws:route53/getZone:getZone":        {"zoneId": "Z{upper}"},
    "aws:route53/record:Record":          {"fqdn": "{name}.{zone}"},
    "aws:lb/targetGroup:TargetGroup":     {},
    "awsx:ecs:EC2TaskDefinition": {
        "taskDefinition": {"family": "{family}", "arn": "{arn}"},
    },
    "awsx:ecs:EC2Service":                {"service": {"name": "{physical}"}},
}


class _Placeholders(dict):
    def __missing__(self, key: str) -> str:
        return ""


def _service(resource_type: str) -> str:
    # "aws:ec2/vpc:Vpc" -> "ec2"
    parts = resource_type.split(":")
    module = parts[1] if len(parts) > 1 else resource_type
    return module.split("/")[0] or parts[0]


def _render(template: Any, values: Mapping[str, Any]) -> Any:
    if isinstance(template, str):
        return template.format_map(values)
    if isinstance(template, dict):
        return {k: _render(v, values) for k, v in template.items()}
    if isinstance(template, list):
        return [_render(v, values) for v in template]
    return template


class SimulatedProvisioner(Provisioner):
    """
    Deterministic stand-in for a cloud engine.

    Identifiers are derived from a SHA-1 of the type token and logical name,
    so the same declarations always produce the same outputs. ``state``
    supplies canned outputs or failures per resource::

        resources:
          server:
            outputs: {publicDns: web.example.com}
          web-image:
            fail: docker build failed
    """

    def __init__(
        self,
        state: Optional[Mapping[str, Any]] = None,
        region: str = "us-west-2",
        account_id: str = "123456789012",
        stack: str = "dev",
        delay: float = 0.0,
    ):
        self.state = dict((state or {}).get("resources", {}) or {})
        self.region = region
        self.account_id = account_id
        self.stack = stack
        self.delay = delay
        self.calls: Dict[str, int] = defaultdict(int)
        self.in_flight = 0
        self.max_in_flight = 0

    async def create(self, resource: Resource, inputs: Dict[str, Any]) -> Dict[str, Any]:
        return await self._provision(resource, inputs)

    async def read(self, resource: Resource, args: Dict[str, Any]) -> Dict[str, Any]:
        return await self._provision(resource, args)

    async def _provision(self, resource: Resource, inputs: Dict[str, Any]) -> Dict[str, Any]:
        self.calls[resource.name] += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            entry = self.state.get(resource.name) or {}
            if entry.get("fail"):
                raise ProvisionerError(str(entry["fail"]))
            outputs = self._outputs_for(resource, inputs)
            outputs.update(entry.get("outputs") or {})
            return outputs
        finally:
            self.in_flight -= 1

    def _outputs_for(self, resource: Resource, inputs: Dict[str, Any]) -> Dict[str, Any]:
        digest = sha1(f"{resource.resource_type}:{resource.name}".encode("utf-8")).hexdigest()
        octet = int(digest[:2], 16) % 254 + 1
        given_name = inputs.get("name")
        physical = given_name if isinstance(given_name, str) and given_name else f"{resource.name}-{digest[:7]}"
        service = _service(resource.resource_type)
        arn = f"arn:aws:{service}:{self.region}:{self.account_id}:{resource.name}/{digest[:12]}"
        ip = f"203.0.113.{octet}"

        values = _Placeholders(
            {k: v for k, v in inputs.items() if isinstance(v, (str, int, float))}
        )
        values.update(
            name=physical,
            physical=physical,
            digest=digest,
            short=digest[:8],
            upper=digest[:13].upper(),
            octet=octet,
            ip=ip,
            ip_dashed=ip.replace(".", "-"),
            region=self.region,
            account=self.account_id,
            arn=arn,
            zone=inputs.get("zoneId", ""),
        )

        outputs: Dict[str, Any] = {
            "id": f"{resource.name}-{digest[:8]}",
            "arn": arn,
            "urn": f"urn:stackgraph:{self.stack}::{resource.resource_type}::{resource.name}",
        }
        outputs.update(inputs)
        outputs.update(_render(_DERIVED_OUTPUTS.get(resource.resource_type, {}), values))
        return outputs


def load_state(filepath: str) -> Dict[str, Any]:
    try:
        with open(filepath, encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise StackFileError(f"Failed to read state file {filepath}: {exc}")
    if not isinstance(data, dict):
        raise StackFileError(f"State file {filepath} must contain a mapping")
    return data
