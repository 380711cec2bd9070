import json
import os
import re
from typing import Any, Dict, List, Optional

import yaml

from stackgraph.builder import Stack
from stackgraph.config import StackConfig
from stackgraph.models.errors import StackFileError
from stackgraph.models.output import Output, ref

# ${vpc.id}, ${alb.loadBalancer.dnsName}, ${config.instanceType}
_EXPR_RE = re.compile(r"\$\{([^}]*)\}")

_RESOURCE_KEYS = {"type", "properties", "options", "read"}


def _expression(expr: str, config: StackConfig, where: str) -> Any:
    if expr.startswith("config."):
        key = expr[len("config."):]
        if not key:
            raise StackFileError(f"Malformed config reference '${{{expr}}}' in {where}")
        value = config.require(key)
        return Output.secret(value) if config.is_secret(key) else value

    segments = expr.split(".")
    if len(segments) < 2 or not all(segments):
        raise StackFileError(f"Malformed reference '${{{expr}}}' in {where}")
    out = ref(segments[0], segments[1])
    for segment in segments[2:]:
        out = out[int(segment) if segment.isdigit() else segment]
    return out


def _interpolate(text: str, config: StackConfig, where: str) -> Any:
    matches = list(_EXPR_RE.finditer(text))
    if not matches:
        return text

    # a string that is exactly one expression keeps the referenced value's type
    if len(matches) == 1 and matches[0].span() == (0, len(text)):
        return _expression(matches[0].group(1).strip(), config, where)

    parts: List[Any] = []
    pos = 0
    for m in matches:
        if m.start() > pos:
            parts.append(text[pos:m.start()])
        parts.append(_expression(m.group(1).strip(), config, where))
        pos = m.end()
    if pos < len(text):
        parts.append(text[pos:])

    if not any(isinstance(p, Output) for p in parts):
        return "".join(str(p) for p in parts)
    return Output.concat(*parts)


def _convert(val: Any, config: StackConfig, where: str) -> Any:
    """Recursively replace ${...} expressions with references or config values."""
    if isinstance(val, str):
        return _interpolate(val, config, where)
    if isinstance(val, dict):
        return {k: _convert(v, config, where) for k, v in val.items()}
    if isinstance(val, list):
        return [_convert(item, config, where) for item in val]
    return val


def _load_document(filepath: str) -> Dict[str, Any]:
    _, ext = os.path.splitext(filepath.lower())
    try:
        with open(filepath, encoding="utf-8") as fh:
            if ext == ".json":
                data = json.load(fh)
            else:
                data = yaml.safe_load(fh)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise StackFileError(f"Failed to parse {filepath}: {exc}")
    if not isinstance(data, dict):
        raise StackFileError(f"{filepath} does not contain a stack definition mapping")
    return data


def parse_document(data: Dict[str, Any], config: Optional[StackConfig] = None, source: str = "<document>") -> Stack:
    config = config or StackConfig()
    name = data.get("name") or config.stack
    stack = Stack(str(name), config)

    resources = data.get("resources", {}) or {}
    if not isinstance(resources, dict):
        raise StackFileError(f"'resources' in {source} must be a mapping")

    for logical_name, definition in resources.items():
        where = f"{source}: resources.{logical_name}"
        if not isinstance(definition, dict):
            raise StackFileError(f"{where} must be a mapping")
        unknown = set(definition) - _RESOURCE_KEYS
        if unknown:
            raise StackFileError(f"{where} has unknown keys: {', '.join(sorted(unknown))}")
        resource_type = definition.get("type")
        if not resource_type:
            raise StackFileError(f"{where} is missing 'type'")

        properties = definition.get("properties", {}) or {}
        if not isinstance(properties, dict):
            raise StackFileError(f"{where}.properties must be a mapping")
        properties = _convert(properties, config, where)
        options = definition.get("options", {}) or {}
        if not isinstance(options, dict):
            raise StackFileError(f"{where}.options must be a mapping")
        depends_on = options.get("dependsOn", []) or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
            raise StackFileError(f"{where}.options.dependsOn must be a name or a list of names")

        if definition.get("read"):
            stack.read(resource_type, str(logical_name), properties, depends_on=depends_on)
        else:
            stack.declare(
                resource_type,
                str(logical_name),
                properties,
                protect=bool(options.get("protect", False)),
                depends_on=depends_on,
            )

    outputs = data.get("outputs", {}) or {}
    if not isinstance(outputs, dict):
        raise StackFileError(f"'outputs' in {source} must be a mapping")
    for output_name, value in outputs.items():
        stack.export(str(output_name), _convert(value, config, f"{source}: outputs.{output_name}"))

    return stack


def parse_file(filepath: str, config: Optional[StackConfig] = None) -> Stack:
    """Load a YAML or JSON stack definition into an unbuilt Stack."""
    return parse_document(_load_document(filepath), config, source=filepath)
