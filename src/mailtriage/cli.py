"""Command-line interface for mailtriage."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from mailtriage import __version__
from mailtriage.cache import CategoryCache
from mailtriage.categories import Category
from mailtriage.categorizer import Categorizer
from mailtriage.config import Config, load_config
from mailtriage.errors import AccountConnectionError
from mailtriage.imap_client import IMAPClient
from mailtriage.llm_client import LLMClient
from mailtriage.registry import AccountRegistry
from mailtriage.rules_engine import RulesEngine
from mailtriage.storage import Storage

console = Console(width=200, soft_wrap=False)
logger = logging.getLogger("mailtriage")


def setup_logging(level: str, log_file: str | None = None) -> None:
    """Configure logging."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [
        RichHandler(
            console=console,
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
            markup=False,
        )
    ]

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
        force=True,
    )

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _load(config: str | None) -> Config:
    return load_config(config) if config else Config()


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """mailtriage - Sync IMAP accounts and categorize email with a local LLM."""
    pass


@cli.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    default=None,
    help="Path to configuration YAML file",
)
@click.option("--host", default=None, help="Bind address (overrides config)")
@click.option("--port", "-p", type=int, default=None, help="Port (overrides config)")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def serve(config: str | None, host: str | None, port: int | None, verbose: bool) -> None:
    """Run the HTTP API."""
    import uvicorn

    from mailtriage.web.app import create_app

    try:
        cfg = _load(config)
    except Exception as e:
        console.print(f"[red]Error loading config: {e}[/red]")
        sys.exit(1)

    setup_logging("DEBUG" if verbose else cfg.logging.level, cfg.logging.log_file)

    bind_host = host or cfg.web.host
    bind_port = port or cfg.web.port
    console.print(f"[bold blue]mailtriage v{__version__}[/bold blue]")
    console.print(f"Ollama: {cfg.ollama.base_url} ({cfg.ollama.model})")
    console.print(f"Serving on http://{bind_host}:{bind_port}")

    uvicorn.run(create_app(config), host=bind_host, port=bind_port, log_config=None)


@cli.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    default=None,
    help="Path to configuration YAML file",
)
@click.option("--subject", "-s", default="", help="Email subject")
@click.option("--body", "-b", default="", help="Email body (use '-' to read stdin)")
@click.option("--offline", is_flag=True, help="Skip the LLM and use the keyword rules only")
def classify(config: str | None, subject: str, body: str, offline: bool) -> None:
    """Categorize a single email."""
    cfg = _load(config)
    setup_logging(cfg.logging.level)

    if body == "-":
        body = sys.stdin.read()

    rules = RulesEngine()

    async def _run():
        llm = None if offline else LLMClient(cfg.ollama)
        categorizer = Categorizer(llm=llm, rules=rules, cache=CategoryCache(1))
        try:
            return await categorizer.categorize(subject, body)
        finally:
            if llm:
                await llm.close()

    result = asyncio.run(_run())

    table = Table(title="Classification")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Subject", subject or "-")
    table.add_row("Category", f"[bold]{result.category.value}[/bold]")
    table.add_row("Source", result.source)
    for match in rules.evaluate_all(subject, body):
        table.add_row("Rule match", f"{match.rule_name} ({match.keyword}) -> {match.category.value}")
    console.print(table)


@cli.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    default=None,
    help="Path to configuration YAML file",
)
def accounts(config: str | None) -> None:
    """Show saved account configurations."""
    cfg = _load(config)
    registry = AccountRegistry(cfg.storage.accounts_file)
    registry.load_on_startup()
    saved = registry.list_saved_configs()

    if not saved:
        console.print("[yellow]No saved accounts[/yellow]")
        return

    table = Table(title=f"Saved accounts ({cfg.storage.accounts_file})")
    table.add_column("Email", style="cyan")
    table.add_column("Host")
    table.add_column("Port", justify="right")
    table.add_column("TLS")
    for account in saved:
        table.add_row(account.email, account.host, str(account.port), "yes" if account.secure else "no")
    console.print(table)


@cli.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    default=None,
    help="Path to configuration YAML file",
)
@click.option("--account", "-a", default=None, help="Only count emails of this account")
def stats(config: str | None, account: str | None) -> None:
    """Show stored email counts per category."""
    cfg = _load(config)
    if not Path(cfg.storage.database_path).exists():
        console.print(f"[yellow]No database at {cfg.storage.database_path}[/yellow]")
        return

    statistics = Storage(cfg.storage.database_path).get_statistics(account)

    table = Table(title=f"Stored emails ({account or 'all accounts'})")
    table.add_column("Category", style="cyan")
    table.add_column("Count", justify="right")
    for category in Category:
        table.add_row(category.value, str(statistics["by_category"].get(category.value, 0)))
    table.add_row("[bold]Total[/bold]", f"[bold]{statistics['total']}[/bold]")
    console.print(table)


@cli.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    default=None,
    help="Path to configuration YAML file",
)
@click.option("--account", "-a", default=None, help="Saved account to test an IMAP login for")
def check(config: str | None, account: str | None) -> None:
    """Check configuration and connectivity."""
    try:
        cfg = _load(config)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    console.print("[green][OK] Configuration valid[/green]")

    console.print(f"\nChecking Ollama at {cfg.ollama.base_url}...")

    async def _check_ollama() -> tuple[bool, list[str]]:
        async with LLMClient(cfg.ollama) as llm:
            if not await llm.check_health():
                return False, []
            return True, await llm.list_models()

    available, models = asyncio.run(_check_ollama())
    if available:
        console.print("[green][OK] Ollama available[/green]")
        console.print(f"  Available models: {', '.join(models[:5])}")
        if cfg.ollama.model not in models and f"{cfg.ollama.model}:latest" not in models:
            console.print(f"  [yellow]?[/yellow] Model {cfg.ollama.model} is not pulled")
    else:
        console.print("[red]x Ollama not available, the keyword rules will be used[/red]")

    registry = AccountRegistry(cfg.storage.accounts_file)
    registry.load_on_startup()
    console.print(f"\n{len(registry.list_saved_configs())} saved account(s)")

    if not account:
        return

    saved = registry.get_saved_config(account)
    if saved is None:
        console.print(f"[red]No saved configuration for {account}[/red]")
        sys.exit(1)

    password = click.prompt(f"Password for {account}", hide_input=True)
    console.print(f"\nChecking IMAP connection to {saved.host}:{saved.port}...")
    client = IMAPClient(
        email=saved.email,
        password=password,
        host=saved.host,
        port=saved.port,
        secure=saved.secure,
        settings=cfg.imap,
    )
    try:
        client.connect()
        count = client.select_folder(cfg.imap.mailbox)
        console.print("[green][OK] IMAP login successful[/green]")
        console.print(f"  {cfg.imap.mailbox}: {count} messages")
        console.print(f"  IDLE: {'supported' if client.supports_idle else 'not supported, NOOP heartbeat'}")
    except AccountConnectionError as e:
        console.print(f"[red]x IMAP connection failed: {e}[/red]")
        sys.exit(1)
    finally:
        client.disconnect()


@cli.command("init-config")
@click.option(
    "--output",
    "-o",
    default="config.yml",
    help="Output path for the sample configuration",
)
def init_config(output: str) -> None:
    """Write a sample configuration file."""
    if Path(output).exists():
        console.print(f"[red]Error: {output} already exists[/red]")
        sys.exit(1)

    sample_config = """# mailtriage configuration

imap:
  mailbox: INBOX
  backlog_days: 30
  timeout: 30
  idle_timeout: 1740
  heartbeat_interval: 600

ollama:
  base_url: http://localhost:11434
  model: llama3
  timeout: 30
  temperature: 0.0

categorizer:
  cache_size: 1000

notifications:
  slack_webhook_url: null
  interested_webhook_url: null
  timeout: 10

storage:
  database_path: mailtriage.db
  accounts_file: config/accounts.json

logging:
  level: INFO
  log_file: null
  audit_file: audit.jsonl

web:
  host: 127.0.0.1
  port: 5000
"""
    Path(output).write_text(sample_config)
    console.print(f"[green]Sample configuration written to {output}[/green]")
    console.print("\nNext steps:")
    console.print("1. Point ollama.base_url at your Ollama server")
    console.print("2. Optionally set the Slack and webhook URLs")
    console.print("3. Run: mailtriage serve --config " + output)
    console.print("4. POST /api/accounts with email, password, host, port and secure")


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
