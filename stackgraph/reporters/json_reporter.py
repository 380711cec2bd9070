"""
JSON apply report generator.
"""
import json
from datetime import datetime, timezone

from stackgraph import __version__
from stackgraph.engine.deployment import ApplyResult
from stackgraph.graph import ResourceGraph


def build_report(
    graph: ResourceGraph, result: ApplyResult, source_path: str, show_secrets: bool = False
) -> str:
    body = result.to_dict(show_secrets=show_secrets)
    report = {
        "meta": {
            "generated": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "source": source_path,
            "tool": "stackgraph",
            "version": __version__,
            "duration_seconds": round(result.duration, 3),
        },
        "summary": body["summary"],
        "ok": body["ok"],
        "cancelled": body["cancelled"],
        "edges": [list(e) for e in graph.edges],
        "resources": body["resources"],
        "outputs": body["outputs"],
        "output_errors": body["output_errors"],
    }
    return json.dumps(report, indent=2, default=str)
