"""Proxy server CLI command."""

import click

from ..config import ProxyConfig
from ..exceptions import ConfigurationError
from .main import main


@main.command()
@click.option("--host", default=None, help="Host to bind to (default: 127.0.0.1)")
@click.option("--port", "-p", default=None, type=int, help="Port to bind to (default: 8787)")
@click.option("--upstream", "upstream_url", default=None, help="Upstream API base URL")
@click.option(
    "--upstream-api-key",
    default=None,
    envvar="PROMPTMETER_UPSTREAM_API_KEY",
    help="Send this key upstream instead of the caller's Authorization header",
)
@click.option("--db-path", default=None, help="SQLite file for the log, keys and cache")
@click.option(
    "--cache-backend",
    type=click.Choice(["memory", "sqlite"]),
    default=None,
    help="Response cache backend (default: sqlite)",
)
@click.option("--cache-ttl", "cache_ttl_seconds", type=int, default=None, help="Cache TTL seconds")
@click.option("--no-single-flight", is_flag=True, help="Let concurrent identical misses all go upstream")
@click.option("--no-log-bodies", is_flag=True, help="Do not store request and response bodies")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
)
def proxy(
    host: str | None,
    port: int | None,
    upstream_url: str | None,
    upstream_api_key: str | None,
    db_path: str | None,
    cache_backend: str | None,
    cache_ttl_seconds: int | None,
    no_single_flight: bool,
    no_log_bodies: bool,
    log_level: str | None,
) -> None:
    """Start the metering proxy server.

    Options not given on the command line are read from PROMPTMETER_*
    environment variables.

    \b
    Examples:
        promptmeter proxy                          Start proxy on port 8787
        promptmeter proxy --port 8080              Start proxy on port 8080
        promptmeter proxy --cache-backend memory   Keep the cache in memory

    \b
    Usage with OpenAI-compatible clients:
        OPENAI_BASE_URL=http://localhost:8787/v1 your-app
        (send your promptmeter key as  X-Api-Key: Bearer <key>)
    """
    from ..proxy.server import run_server

    overrides = {
        "host": host,
        "port": port,
        "upstream_url": upstream_url,
        "upstream_api_key": upstream_api_key,
        "db_path": db_path,
        "cache_backend": cache_backend,
        "cache_ttl_seconds": cache_ttl_seconds,
        "log_level": log_level,
    }
    if no_single_flight:
        overrides["single_flight"] = False
    if no_log_bodies:
        overrides["log_bodies"] = False

    try:
        config = ProxyConfig.from_env(**overrides)
    except ConfigurationError as e:
        raise click.UsageError(str(e)) from None

    try:
        run_server(config)
    except KeyboardInterrupt:
        click.echo("\nShutting down proxy...")
