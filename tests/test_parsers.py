"""
Stack definition parser tests — verify resources, references and config interpolation.
"""
import os

import pytest

from stackgraph.config import StackConfig, load_config
from stackgraph.engine import deployment
from stackgraph.engine.provisioners import SimulatedProvisioner, load_state
from stackgraph.models.errors import (
    ConfigError,
    CycleError,
    StackFileError,
    UnknownResourceError,
)
from stackgraph.models.output import Output, Reference, iter_references
from stackgraph.models.resource import ResourceStatus

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")


def _fixture(name):
    return os.path.join(FIXTURES, name)


# --------------------------------------------------------- YAML
class TestYamlStack:
    def setup_method(self):
        from stackgraph.parsers import stack_yaml
        self.parser = stack_yaml
        self.config = load_config(_fixture("dev_config.yaml"))

    def _stack(self):
        return self.parser.parse_file(_fixture("web_stack.yaml"), self.config)

    def test_resource_count_and_order(self):
        stack = self._stack()
        assert stack.name == "web"
        assert [r.name for r in stack.resources] == ["image", "repo", "zone", "server", "record"]

    def test_options(self):
        resources = {r.name: r for r in self._stack().resources}
        assert resources["repo"].protect
        assert not resources["image"].protect
        assert resources["zone"].kind == "data"
        assert resources["server"].depends_on == ["image"]

    def test_forward_reference_edges(self):
        graph = self._stack().build()
        assert graph.edges == [
            ("image", "server"),
            ("repo", "image"),
            ("repo", "server"),
            ("zone", "record"),
            ("server", "record"),
        ]
        assert graph.layers() == [["repo", "zone"], ["image"], ["server"], ["record"]]

    def test_whole_expression_keeps_reference(self):
        image = {r.name: r for r in self._stack().resources}["image"]
        value = image.inputs["repositoryUrl"]
        assert isinstance(value, Reference)
        assert (value.resource, value.attribute) == ("repo", "repositoryUrl")

    def test_mixed_string_becomes_concat(self):
        server = {r.name: r for r in self._stack().resources}["server"]
        user_data = server.inputs["userData"]
        assert isinstance(user_data, Output)
        assert [(r.resource, r.attribute) for r in iter_references(user_data)] == [
            ("repo", "repositoryUrl")
        ]

    def test_config_values_are_substituted(self):
        server = {r.name: r for r in self._stack().resources}["server"]
        assert server.inputs["instanceType"] == "t3.micro"

    def test_secure_config_values_stay_secret(self):
        server = {r.name: r for r in self._stack().resources}["server"]
        assert server.secret_attributes == ["keyName"]

    def test_missing_config_value(self):
        with pytest.raises(ConfigError) as exc:
            self.parser.parse_file(_fixture("web_stack.yaml"), StackConfig())
        assert exc.value.key == "hostedZone"

    def test_apply(self):
        graph = self._stack().build()
        result = deployment.apply(graph, SimulatedProvisioner(region="eu-west-1"))
        assert result.ok
        assert result.outputs["serverUrl"].startswith("http://ec2-")
        assert result.outputs["serverUrl"].endswith(".eu-west-1.compute.amazonaws.com")
        assert result.outputs["imageUri"].startswith("123456789012.dkr.ecr.eu-west-1.amazonaws.com/")
        assert result.display_outputs()["publicKey"] == "[secret]"
        server = graph.resources["server"]
        record = graph.resources["record"]
        assert server.outputs["userData"].startswith("docker pull 123456789012.dkr.ecr.")
        assert record.outputs["records"] == [server.outputs["publicIp"]]

    def test_apply_with_failing_state(self):
        graph = self._stack().build()
        state = load_state(_fixture("failing_state.yaml"))
        result = deployment.apply(graph, SimulatedProvisioner(state))
        status = {r.name: r.status for r in result.resources}
        assert status == {
            "image": ResourceStatus.FAILED,
            "repo": ResourceStatus.RESOLVED,
            "zone": ResourceStatus.RESOLVED,
            "server": ResourceStatus.FAILED,
            "record": ResourceStatus.FAILED,
        }
        assert graph.resources["record"].error.chain == ["record", "server", "image"]
        assert graph.resources["zone"].outputs["zoneId"] == "Z0123456789"
        assert set(result.output_errors) == {"imageUri", "serverUrl"}
        assert "publicKey" in result.outputs


# --------------------------------------------------------- JSON
class TestJsonStack:
    def setup_method(self):
        from stackgraph.parsers import stack_yaml
        self.parser = stack_yaml

    def test_json_document(self):
        stack = self.parser.parse_file(_fixture("web_stack.json"))
        assert stack.name == "web-json"
        assert stack.build().edges == [("repo", "image")]


# --------------------------------------------------------- Errors
class TestInvalidStacks:
    def setup_method(self):
        from stackgraph.parsers import stack_yaml
        self.parser = stack_yaml

    def test_cycle(self):
        stack = self.parser.parse_file(_fixture("cycle_stack.yaml"))
        with pytest.raises(CycleError) as exc:
            stack.build()
        assert exc.value.cycle == ["a", "c", "b", "a"]

    def test_undeclared_reference(self):
        stack = self.parser.parse_file(_fixture("undeclared_stack.yaml"))
        with pytest.raises(UnknownResourceError, match="'subnet'"):
            stack.build()

    def test_unknown_resource_keys(self):
        with pytest.raises(StackFileError, match="unknown keys: propertys"):
            self.parser.parse_file(_fixture("bad_keys_stack.yaml"))

    def test_malformed_yaml(self):
        with pytest.raises(StackFileError):
            self.parser.parse_file(_fixture("malformed.yaml"))

    def test_missing_file(self):
        with pytest.raises(StackFileError):
            self.parser.parse_file(_fixture("does_not_exist.yaml"))

    def test_missing_type(self):
        with pytest.raises(StackFileError, match="missing 'type'"):
            self.parser.parse_document({"resources": {"vpc": {"properties": {}}}})

    @pytest.mark.parametrize(
        "definition, message",
        [
            ({"options": "protect"}, "options must be a mapping"),
            ({"options": ["protect"]}, "options must be a mapping"),
            ({"properties": [1, 2]}, "properties must be a mapping"),
            ({"properties": "cidr"}, "properties must be a mapping"),
            ({"options": {"dependsOn": {"vpc": True}}}, "dependsOn must be a name or a list"),
            ({"options": {"dependsOn": ["vpc", 3]}}, "dependsOn must be a name or a list"),
        ],
    )
    def test_malformed_resource_entry(self, definition, message):
        doc = {
            "resources": {
                "vpc": {"type": "aws:ec2/vpc:Vpc"},
                "subnet": dict(definition, type="aws:ec2/subnet:Subnet"),
            }
        }
        with pytest.raises(StackFileError, match=message):
            self.parser.parse_document(doc)

    @pytest.mark.parametrize("expr", ["${vpc}", "${vpc.}", "${config.}", "${.id}"])
    def test_malformed_reference(self, expr):
        doc = {"resources": {"subnet": {"type": "aws:ec2/subnet:Subnet", "properties": {"vpcId": expr}}}}
        with pytest.raises(StackFileError, match="Malformed"):
            self.parser.parse_document(doc)


# --------------------------------------------------------- Interpolation
class TestInterpolation:
    def setup_method(self):
        from stackgraph.parsers import stack_yaml
        self.parser = stack_yaml
        self.config = StackConfig(values={"env": "dev", "port": 8080})

    def _inputs(self, properties):
        doc = {
            "resources": {
                "alb": {"type": "awsx:lb:ApplicationLoadBalancer"},
                "vpc": {"type": "awsx:ec2:Vpc"},
                "thing": {"type": "test:index:Thing", "properties": properties},
            }
        }
        stack = self.parser.parse_document(doc, self.config)
        return {r.name: r for r in stack.resources}["thing"].inputs

    def test_config_only_string_is_plain(self):
        inputs = self._inputs({"name": "web-${config.env}", "port": "${config.port}"})
        assert inputs == {"name": "web-dev", "port": 8080}

    def test_nested_attribute_path(self):
        inputs = self._inputs({"dns": "${alb.loadBalancer.dnsName}"})
        refs = list(iter_references(inputs))
        assert [(r.resource, r.attribute) for r in refs] == [("alb", "loadBalancer")]

    def test_list_index_path(self):
        doc = {
            "resources": {
                "vpc": {"type": "awsx:ec2:Vpc"},
                "thing": {"type": "test:index:Thing", "properties": {"subnet": "${vpc.publicSubnetIds.0}"}},
            }
        }
        result = deployment.apply(self.parser.parse_document(doc).build(), SimulatedProvisioner())
        thing = result.resources[1]
        assert thing.outputs["subnet"].startswith("subnet-")
        assert thing.outputs["subnet"].endswith("a")

    def test_values_in_lists_and_maps(self):
        inputs = self._inputs({"tags": {"Env": "${config.env}"}, "groups": ["${vpc.id}", "static"]})
        assert inputs["tags"] == {"Env": "dev"}
        assert isinstance(inputs["groups"][0], Reference)
        assert inputs["groups"][1] == "static"
