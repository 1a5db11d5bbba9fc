"""CLI entry point for agentdeck."""

import json
import logging
import sys

import click
import uvicorn

from .backends import ProviderRegistry
from .codex_config import configure_tool_server, remove_tool_server
from .errors import AgentDeckError
from .gateway import TOOL_NAME, ToolGateway
from .tool_server import create_server


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def main(verbose: bool):
    """Run coding-agent CLIs against your projects and track their features."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@main.command()
@click.option("--port", default=8080, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
def serve(port: int, host: str):
    """Start the web API."""
    click.echo(f"Starting agentdeck on http://{host}:{port}")
    uvicorn.run("agentdeck.server:app", host=host, port=port, reload=False)


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON.")
def providers(as_json: bool):
    """Show which agent CLIs are installed and authenticated."""
    status = ProviderRegistry().status()
    if as_json:
        click.echo(json.dumps(status, indent=2))
        return
    for provider_id, info in status.items():
        installed = "installed" if info["installed"] else "missing"
        auth = f"auth:{info['auth_method']}" if info["authenticated"] else "not authenticated"
        version = f" {info['version']}" if info["version"] else ""
        click.echo(f"{provider_id:<12} {installed:<9} {auth:<20}{version}")
        if not info["installed"] or info["method"] == "api-key-only":
            click.echo(" " * 13 + info["installation"]["recommendation"])


@main.command()
@click.option("--provider", "provider_id", default=None, help="Only list this provider's models.")
def models(provider_id: str | None):
    """List the model catalog."""
    registry = ProviderRegistry()
    if provider_id is not None and registry.get(provider_id) is None:
        raise click.BadParameter(f"unknown provider {provider_id!r}", param_hint="--provider")
    for model in registry.list_models(provider_id):
        vision = " vision" if model.supports_vision else ""
        click.echo(f"{model.id:<32} {model.provider:<12} {model.context_window:>8}{vision}")


@main.command()
@click.argument("project_path", type=click.Path(exists=True, file_okay=False), default=".")
def features(project_path: str):
    """Print a project's feature list."""
    try:
        items = ToolGateway().list_features(project_path)
    except AgentDeckError as e:
        raise click.ClickException(str(e))
    for feature in items:
        summary = f"  {feature.summary}" if feature.summary else ""
        click.echo(f"{feature.status:<12} {feature.feature_id}{summary}")


@main.command("update-feature")
@click.argument("feature_id")
@click.argument("status", type=click.Choice(["backlog", "in_progress", "verified"]))
@click.option("--summary", default=None, help="What was done.")
@click.option(
    "--project", "project_path",
    type=click.Path(exists=True, file_okay=False), default=".",
    help="Project checkout (defaults to the current directory).",
)
def update_feature(feature_id: str, status: str, summary: str | None, project_path: str):
    """Update one feature's status through the tool gateway."""
    arguments = {"featureId": feature_id, "status": status}
    if summary is not None:
        arguments["summary"] = summary
    try:
        result = ToolGateway().call_tool(TOOL_NAME, arguments, project_path)
    except AgentDeckError as e:
        raise click.ClickException(str(e))
    if result["restoredFromBackup"]:
        click.echo("Feature list was empty; restored from backup.", err=True)
    click.echo(f"{feature_id} -> {status} ({result['featureCount']} features)")


@main.command("tool-server")
@click.option(
    "--project", "project_path",
    type=click.Path(exists=True, file_okay=False), default=".",
    help="Project whose feature list the tool updates.",
)
def tool_server(project_path: str):
    """Serve UpdateFeatureStatus over MCP stdio."""
    create_server(project_path).run(transport="stdio")


@main.command("configure-codex")
@click.option(
    "--project", "project_path",
    type=click.Path(exists=True, file_okay=False), default=".",
    help="Project the tool server is bound to.",
)
@click.option("--remove", is_flag=True, help="Remove the tool server entry instead.")
def configure_codex(project_path: str, remove: bool):
    """Register (or remove) the feature tool server in Codex's config.toml."""
    if remove:
        path = remove_tool_server(project_path)
        click.echo(f"Removed tool server from {path}" if path else "No tool server entry found")
        return
    path = configure_tool_server(project_path)
    click.echo(f"Configured tool server in {path}")
