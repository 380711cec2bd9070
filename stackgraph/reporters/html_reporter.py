"""
HTML + Mermaid apply report generator.
"""
from datetime import datetime, timezone

from jinja2 import Environment

from stackgraph import __version__
from stackgraph.engine.deployment import ApplyResult
from stackgraph.graph import ResourceGraph
from stackgraph.reporters import markdown

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Apply Report - {{ stack }}</title>
    <script src="https://cdn.jsdelivr.net/npm/mermaid/dist/mermaid.min.js"></script>
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif; line-height: 1.6; color: #333; max-width: 1200px; margin: 0 auto; padding: 2rem; background: #f9f9f9; }
        header { border-bottom: 2px solid #ddd; margin-bottom: 2rem; padding-bottom: 1rem; }
        h1 { color: #1565c0; margin-bottom: 0; }
        .meta { color: #666; font-size: 0.9rem; margin-bottom: 2rem; }
        .summary-cards { display: grid; grid-template-columns: repeat(auto-fit, minmax(150px, 1fr)); gap: 1rem; margin-bottom: 2rem; }
        .card { background: white; padding: 1rem; border-radius: 8px; box-shadow: 0 2px 4px rgba(0,0,0,0.1); text-align: center; border-left: 5px solid #ddd; }
        .card.resolved { border-left-color: #4caf50; }
        .card.failed { border-left-color: #f44336; }
        .card.cancelled { border-left-color: #9e9e9e; }
        .card-num { font-size: 2rem; font-weight: bold; margin-bottom: 0.2rem; }
        .card-label { color: #666; font-size: 0.8rem; text-transform: uppercase; }
        .mermaid-container { background: white; padding: 2rem; border-radius: 8px; box-shadow: 0 2px 4px rgba(0,0,0,0.1); margin-bottom: 2rem; overflow-x: auto; }
        table { width: 100%; border-collapse: collapse; background: white; border-radius: 8px; overflow: hidden; box-shadow: 0 2px 4px rgba(0,0,0,0.1); margin-bottom: 2rem; }
        th, td { padding: 0.8rem 1rem; text-align: left; border-bottom: 1px solid #eee; }
        th { background: #f5f5f5; font-weight: 600; }
        .status { font-weight: bold; padding: 0.2rem 0.5rem; border-radius: 4px; font-size: 0.8rem; }
        .st-resolved { background: #e8f5e9; color: #2e7d32; }
        .st-failed { background: #ffebee; color: #c62828; }
        .st-cancelled, .st-pending, .st-creating { background: #eeeeee; color: #616161; }
        .chain { font-family: monospace; font-size: 0.85rem; color: #666; margin-top: 0.3rem; }
        footer { margin-top: 4rem; text-align: center; color: #999; font-size: 0.8rem; }
    </style>
</head>
<body>
    <header>
        <h1>Apply Report: {{ stack }}</h1>
        <div class="meta">Generated: {{ generated }} | Source: {{ source }} | stackgraph v{{ version }}</div>
    </header>

    <div class="summary-cards">
        <div class="card resolved"><div class="card-num">{{ counts.resolved }}</div><div class="card-label">resolved</div></div>
        <div class="card failed"><div class="card-num">{{ counts.failed }}</div><div class="card-label">failed</div></div>
        <div class="card cancelled"><div class="card-num">{{ counts.cancelled }}</div><div class="card-label">cancelled</div></div>
    </div>

    <h2>Dependency Graph</h2>
    <div class="mermaid-container">
        <div class="mermaid">
{{ mermaid }}
        </div>
    </div>

    <h2>Resources</h2>
    <table>
        <thead>
            <tr><th>Resource</th><th>Type</th><th>Kind</th><th>Status</th></tr>
        </thead>
        <tbody>
            {% for r in resources %}
            <tr>
                <td><strong>{{ r.name }}</strong>{% if r.protect %} &#128274;{% endif %}</td>
                <td>{{ r.resource_type }}</td>
                <td>{{ r.kind }}</td>
                <td>
                    <span class="status st-{{ r.status.value }}">{{ r.status.value }}</span>
                    {% if r.error %}
                    <div>{{ r.error }}</div>
                    {% if r.error.chain|length > 1 %}<div class="chain">{{ r.error.chain|join(" → ") }}</div>{% endif %}
                    {% endif %}
                </td>
            </tr>
            {% endfor %}
        </tbody>
    </table>

    <h2>Stack Outputs</h2>
    <table>
        <thead><tr><th>Name</th><th>Value</th></tr></thead>
        <tbody>
            {% for name, value in outputs.items() %}
            <tr><td>{{ name }}</td><td><code>{{ value }}</code></td></tr>
            {% endfor %}
            {% for name, err in output_errors.items() %}
            <tr><td>{{ name }}</td><td>{{ err }}</td></tr>
            {% endfor %}
        </tbody>
    </table>

    <footer>
        stackgraph v{{ version }}
    </footer>

    <script>
        mermaid.initialize({ startOnLoad: true, theme: 'neutral', securityLevel: 'loose' });
    </script>
</body>
</html>
"""


def build_report(
    graph: ResourceGraph, result: ApplyResult, source_path: str, show_secrets: bool = False
) -> str:
    env = Environment(autoescape=True)
    template = env.from_string(_HTML_TEMPLATE)

    return template.render(
        stack=result.stack,
        generated=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        source=source_path,
        version=__version__,
        counts=result.counts(),
        resources=result.resources,
        outputs=result.display_outputs(show_secrets),
        output_errors={name: str(exc) for name, exc in result.output_errors.items()},
        mermaid=markdown.build_mermaid(graph),
    )
