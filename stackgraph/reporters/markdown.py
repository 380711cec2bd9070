"""
Markdown + Mermaid apply report generator.
"""
import json
import re
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List

from jinja2 import Environment

from stackgraph import __version__
from stackgraph.engine.deployment import ApplyResult
from stackgraph.graph import ResourceGraph
from stackgraph.models.resource import Resource, ResourceStatus

_STATUS_EMOJI = {
    "resolved": "🟢",
    "failed": "🔴",
    "cancelled": "⚪",
    "creating": "🟡",
    "pending": "⚪",
}

_STATUS_ASCII = {
    "resolved": "[OK]",
    "failed": "[FAILED]",
    "cancelled": "[CANCELLED]",
    "creating": "[CREATING]",
    "pending": "[PENDING]",
}

_CATEGORY_MAP = {
    # "module" part of the type token -> subgraph label
    "ec2/vpc": "Networking",
    "ec2/subnet": "Networking",
    "ec2/internetGateway": "Networking",
    "ec2/routeTable": "Networking",
    "ec2/securityGroup": "Networking",
    "ec2/getVpc": "Networking",
    "ec2/eip": "Networking",
    "lb": "Networking",
    "alb": "Networking",
    "route53": "DNS",
    "ec2": "Compute",
    "ecs": "Compute",
    "autoscaling": "Compute",
    "ecr": "Registry",
    "iam": "Identity",
    "acm": "Security",
    "cloudwatch": "Observability",
}

_SUBGRAPH_ORDER = ["Networking", "DNS", "Compute", "Registry", "Identity", "Security", "Observability", "Other"]

_STATUS_STYLE = {
    ResourceStatus.FAILED: "fill:#ff4444,color:#fff",
    ResourceStatus.CANCELLED: "fill:#bbbbbb,color:#000",
}


def _sanitize_node_id(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_]", "_", name)


def _resource_subgraph(r: Resource) -> str:
    parts = r.resource_type.split(":")
    module = parts[1] if len(parts) > 1 else ""
    # most specific prefix first
    for prefix in sorted(_CATEGORY_MAP, key=len, reverse=True):
        if module == prefix or module.startswith(prefix + "/"):
            return _CATEGORY_MAP[prefix]
    return "Other"


def _node_shape(r: Resource) -> str:
    label = r.name
    if r.kind == "data":
        return f"[/{label}/]"
    if r.protect:
        return f"[[{label}]]"
    return f"[{label}]"


def build_mermaid(graph: ResourceGraph) -> str:
    subgraphs: Dict[str, List[Resource]] = defaultdict(list)
    for r in graph.resources.values():
        subgraphs[_resource_subgraph(r)].append(r)

    lines = ["flowchart LR"]
    for sg_name in _SUBGRAPH_ORDER:
        sg_resources = subgraphs.get(sg_name, [])
        if not sg_resources:
            continue
        lines.append(f"    subgraph {sg_name}")
        for r in sg_resources:
            lines.append(f"        {_sanitize_node_id(r.name)}{_node_shape(r)}")
        lines.append("    end")

    for src, dst in graph.edges:
        lines.append(f"    {_sanitize_node_id(src)} --> {_sanitize_node_id(dst)}")

    for r in graph.resources.values():
        style = _STATUS_STYLE.get(r.status)
        if style:
            lines.append(f"    style {_sanitize_node_id(r.name)} {style}")

    return "\n".join(lines)


def _format_value(value) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


_TEMPLATE = """\
# Apply Report: {{ stack }}

**Generated:** {{ generated }}
**Source:** {{ source }}
**Tool:** stackgraph v{{ version }}

---

## Summary

Applied **{{ resource_count }} resources** with **{{ edge_count }} dependency edges** in {{ duration }}s:
{% for status in ["resolved", "failed", "cancelled"] %}
- **{{ status }}**: {{ counts[status] }}{% endfor %}

{% if cancelled %}
The apply was cancelled before every resource settled.
{% elif failed %}
Some resources failed; resources without a dependency path to a failure were still applied.
{% else %}
Every resource resolved.
{% endif %}

---

## Resources

| # | Resource | Type | Kind | Protected | Status |
|---|----------|------|------|-----------|--------|
{% for r in resources %}| {{ loop.index }} | `{{ r.name }}` | `{{ r.resource_type }}` | {{ r.kind }} | {{ "yes" if r.protect else "no" }} | {{ icon[r.status.value] }} {{ r.status.value }} |
{% endfor %}
{% if failed %}
---

## Failures

{% for r in failed %}
### {{ r.name }}

**Type:** `{{ r.resource_type }}`
**Error:** {{ r.error }}
{% if r.error.chain|length > 1 %}**Dependency chain:** {{ r.error.chain|join(" → ") }}
{% endif %}
{% endfor %}
{% endif %}
---

## Stack Outputs

| Name | Value |
|------|-------|
{% for name, value in outputs.items() %}| `{{ name }}` | `{{ fmt(value) }}` |
{% endfor %}{% for name, err in output_errors.items() %}| `{{ name }}` | ❌ {{ err }} |
{% endfor %}

## Dependency Graph

```mermaid
{{ mermaid }}
```
"""


def build_report(
    graph: ResourceGraph,
    result: ApplyResult,
    source_path: str,
    ascii_mode: bool = False,
    show_secrets: bool = False,
) -> str:
    env = Environment(autoescape=False)
    template = env.from_string(_TEMPLATE)

    return template.render(
        stack=result.stack,
        generated=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        source=source_path,
        version=__version__,
        resource_count=len(result.resources),
        edge_count=len(graph.edges),
        duration=f"{result.duration:.2f}",
        counts=result.counts(),
        cancelled=result.cancelled,
        failed=result.failed,
        resources=result.resources,
        icon=_STATUS_ASCII if ascii_mode else _STATUS_EMOJI,
        outputs=result.display_outputs(show_secrets),
        output_errors={name: str(exc) for name, exc in result.output_errors.items()},
        fmt=_format_value,
        mermaid=build_mermaid(graph),
    )
