"""CLI entry point for ZBRS repository tools."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table

from zbrs import __version__
from zbrs.config import ConfigError, Settings, load_settings
from zbrs.db.connection import get_connection
from zbrs.db.store import SQLiteRepositoryStore
from zbrs.repository.discovery import RepositoryDiscoveryService, path_to_url
from zbrs.repository.models import ImportResult, ValidationResult
from zbrs.repository.progress import ImportProgress
from zbrs.repository.service import RepositoryService
from zbrs.repository.validator import ZBRSValidator, load_json_bytes, sha256_digest

console = Console()


def to_url(location: str) -> str:
    """Accept a URL or a local path; local paths become file:// URLs."""
    if "://" in location:
        return location
    return path_to_url(location)


def print_issues(result: ValidationResult | ImportResult) -> None:
    for err in result.errors:
        console.print(f"  [red]✗ {escape(str(err))}[/red]")
    for warn in result.warnings:
        console.print(f"  [yellow]⚠ {escape(str(warn))}[/yellow]")


class RichProgressSink:
    """Shows importer progress as a rich progress bar."""

    def __init__(self, progress: Progress):
        self._progress = progress
        self._task = progress.add_task("Importing", total=100)

    def report(self, event: ImportProgress) -> None:
        self._progress.update(
            self._task,
            completed=event.progress,
            description=f"[cyan]{event.stage.value}[/cyan] {event.message}",
        )


def open_service(settings: Settings) -> RepositoryService:
    conn = get_connection(settings.db_path)
    store = SQLiteRepositoryStore(conn)
    store.ensure_schema()
    return RepositoryService(
        settings.security,
        store,
        sources=settings.sources,
        **settings.discovery_options(),
    )


async def _with_service(settings: Settings, action):
    service = open_service(settings)
    async with service:
        try:
            return await action(service)
        finally:
            service.store.conn.close()


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Config file (default: $ZBRS_CONFIG or ~/.zbrs/config.yaml)",
)
@click.option(
    "--db",
    "db_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Database file (default: ~/.zbrs/zbrs.db)",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    help="Logging verbosity",
)
@click.pass_context
def cli(
    ctx: click.Context, config_path: Path | None, db_path: Path | None, log_level: str
):
    """ZBRS - discover, validate and import Bible repositories."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    try:
        ctx.obj = load_settings(config_path, db_path)
    except ConfigError as e:
        console.print(f"[red]Config error: {escape(str(e))}[/red]")
        sys.exit(1)


@cli.command()
@click.pass_obj
def init(settings: Settings):
    """Create the repository database."""
    conn = get_connection(settings.db_path)
    SQLiteRepositoryStore(conn).ensure_schema()
    conn.close()
    console.print(f"[green]✓ Database initialized at {settings.db_path}[/green]")


@cli.command()
@click.argument("location")
@click.pass_obj
def validate(settings: Settings, location: str):
    """Fetch and validate a repository manifest (URL or local path)."""
    url = to_url(location)
    result = asyncio.run(
        _with_service(settings, lambda s: s.validate_repository_url(url))
    )

    if result.valid:
        console.print(f"[green]✓ Valid manifest: {url}[/green]")
    else:
        console.print(f"[red]✗ Invalid manifest: {url}[/red]")
    print_issues(result)
    if not result.valid:
        sys.exit(1)


@cli.command("validate-book")
@click.argument("book_file", type=click.Path(exists=True, path_type=Path))
@click.option("--order", type=int, default=None, help="Expected canonical order")
@click.pass_obj
def validate_book(settings: Settings, book_file: Path, order: int | None):
    """Validate a single book file."""
    try:
        raw = load_json_bytes(book_file.read_bytes())
    except ValueError as e:
        console.print(f"[red]✗ Cannot parse {book_file}: {escape(str(e))}[/red]")
        sys.exit(1)

    result = ZBRSValidator(settings.security).validate_book(raw, order)
    if result.valid:
        console.print(f"[green]✓ Valid book: {book_file}[/green]")
    else:
        console.print(f"[red]✗ Invalid book: {book_file}[/red]")
    print_issues(result)
    if not result.valid:
        sys.exit(1)


@cli.command()
@click.pass_obj
def discover(settings: Settings):
    """List repositories offered by the enabled sources."""

    async def run(service: RepositoryService):
        entries = await service.discover_repositories()
        return entries, dict(service.discovery.source_errors)

    entries, source_errors = asyncio.run(_with_service(settings, run))

    for url, message in source_errors.items():
        console.print(f"[yellow]⚠ {url}: {escape(message)}[/yellow]")

    if not entries:
        console.print("[yellow]No repositories found[/yellow]")
        return

    table = Table(title="Available Repositories")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Language")
    table.add_column("License", style="yellow")
    table.add_column("Verified")
    table.add_column("URL", style="dim")
    for entry in entries:
        table.add_row(
            entry.id,
            entry.name,
            entry.language,
            entry.license,
            "[green]✓[/green]" if entry.verified else "",
            entry.url,
        )
    console.print(table)


@cli.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option(
    "--hierarchical", is_flag=True, help="Treat PATH as a parent repository"
)
@click.pass_obj
def scan(settings: Settings, path: Path, hierarchical: bool):
    """Scan a local directory for repositories."""
    discovery = RepositoryDiscoveryService(settings.security, sources=[])

    if hierarchical:
        result = discovery.scan_hierarchical_repository(path)
        for message in result.errors:
            console.print(f"[red]✗ {escape(message)}[/red]")
        if result.root is None:
            sys.exit(1)

        if result.root.validation.valid:
            status = "[green]valid[/green]"
        else:
            status = "[red]invalid[/red]"
        console.print(f"[bold]{result.root.path}[/bold] ({status})")
        print_issues(result.root.validation)

        table = Table(title="Translations")
        table.add_column("ID", style="cyan")
        table.add_column("Directory")
        table.add_column("Status")
        for t in result.translations:
            if t.ok:
                state = "[green]✓ valid[/green]"
            elif t.error:
                state = f"[red]✗ {escape(t.error)}[/red]"
            else:
                state = f"[red]✗ {len(t.validation.errors)} error(s)[/red]"
            table.add_row(t.reference.id, t.reference.directory, state)
        console.print(table)
        return

    result = discovery.scan_directory_for_repositories(path)
    table = Table(title=f"Repositories in {path}")
    table.add_column("Path", style="cyan")
    table.add_column("Kind")
    table.add_column("Valid")
    table.add_column("Errors")
    table.add_column("Warnings")
    for repo in result.repositories:
        table.add_row(
            repo.path,
            repo.kind.value if repo.kind else "unknown",
            "[green]✓[/green]" if repo.validation.valid else "[red]✗[/red]",
            str(len(repo.validation.errors)),
            str(len(repo.validation.warnings)),
        )
    console.print(table)
    for message in result.errors:
        console.print(f"[red]✗ {escape(message)}[/red]")


@cli.command("import")
@click.argument("location")
@click.option(
    "--translation",
    "-t",
    "translations",
    multiple=True,
    help="Import only this translation of a parent repository (repeatable)",
)
@click.option("--no-checksums", is_flag=True, help="Skip book checksum verification")
@click.option("--overwrite", is_flag=True, help="Replace already imported translations")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_obj
def import_(
    settings: Settings,
    location: str,
    translations: tuple[str, ...],
    no_checksums: bool,
    overwrite: bool,
    as_json: bool,
):
    """Import a repository (URL or local path) into the database."""
    url = to_url(location)

    async def run(service: RepositoryService, sink) -> ImportResult:
        options = service.create_import_options(
            url,
            validate_checksums=not no_checksums,
            overwrite_existing=overwrite,
        )
        if translations:
            return await service.import_repository_hierarchical(
                url, translations, options, sink
            )
        return await service.import_repository(options, sink)

    if as_json:
        result = asyncio.run(_with_service(settings, lambda s: run(s, None)))
        click.echo(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    else:
        with Progress(
            TextColumn("{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>3.0f}%"),
            console=console,
            transient=True,
        ) as progress:
            sink = RichProgressSink(progress)
            result = asyncio.run(_with_service(settings, lambda s: run(s, sink)))

        if result.success:
            console.print(
                f"[green]✓ Imported {result.repository_id}: "
                f"{result.books_imported} book(s) in {result.duration_ms} ms[/green]"
            )
        else:
            console.print(f"[red]✗ Import of {result.repository_id or url} failed[/red]")
        if result.translations_imported:
            console.print(f"  Translations: {', '.join(result.translations_imported)}")
        if result.translations_skipped:
            console.print(
                f"  [dim]Skipped: {', '.join(result.translations_skipped)}[/dim]"
            )
        print_issues(result)

    if not result.success:
        sys.exit(1)


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def checksum(file: Path):
    """Print the sha256 checksum of a file in manifest format."""
    console.print(sha256_digest(file.read_bytes()))


@cli.command()
@click.argument("parent_id")
@click.pass_obj
def translations(settings: Settings, parent_id: str):
    """List translations imported under a parent repository."""
    conn = get_connection(settings.db_path)
    store = SQLiteRepositoryStore(conn)
    store.ensure_schema()
    links = store.get_translations(parent_id)
    conn.close()

    if not links:
        console.print(f"[yellow]No translations imported for {parent_id}[/yellow]")
        return

    table = Table(title=f"Translations of {parent_id}")
    table.add_column("ID", style="cyan")
    table.add_column("Directory")
    table.add_column("Language")
    table.add_column("Status")
    for link in links:
        table.add_row(
            link.translation_id, link.directory, link.language or "", link.status
        )
    console.print(table)


def main():
    cli()


if __name__ == "__main__":
    main()
