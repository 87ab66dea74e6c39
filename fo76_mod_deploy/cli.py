"""Command-line interface for fo76-mod-deploy."""

import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .api import NexusAPI, NexusAPIError
from .archive import ARCHIVE2_EXE_NAME, Archive2Packer, list_staged_files
from .deploy import ReconcileResult, ReconcileStatus
from .disk_state import (
    ArchiveCompression,
    ArchiveFormat,
    DeploymentMethod,
    DiskState,
    LooseDeployment,
)
from .errors import ModManagerError
from .extractor import ExtractionError
from .mod import ManagedMod
from .paths import GameLayout
from .service import ModDeploymentService
from .steam import find_game_dir

console = Console()

STATUS_STYLES = {
    ReconcileStatus.NOOP: "dim",
    ReconcileStatus.OK: "green",
    ReconcileStatus.PARTIAL: "yellow",
    ReconcileStatus.FAILED: "red",
    ReconcileStatus.CANCELLED: "yellow",
    ReconcileStatus.REJECTED: "yellow",
}


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/red] {message}")
    sys.exit(1)


@click.group()
@click.option(
    "--game-dir",
    envvar="FO76_GAME_DIR",
    type=click.Path(path_type=Path),
    help="Fallout 76 install directory (auto-detected from Steam if not specified)",
)
@click.option(
    "--archive2",
    envvar="FO76_ARCHIVE2",
    type=click.Path(path_type=Path),
    help=f"Path to {ARCHIVE2_EXE_NAME} (default: <game dir>/Archive2/{ARCHIVE2_EXE_NAME})",
)
@click.option(
    "--wrapper",
    envvar="FO76_ARCHIVE2_WRAPPER",
    help="Command to run Archive2 through, e.g. wine",
)
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging")
@click.pass_context
def main(
    ctx: click.Context,
    game_dir: Path | None,
    archive2: Path | None,
    wrapper: str | None,
    verbose: bool,
) -> None:
    """Manage and deploy Fallout 76 mods."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    ctx.ensure_object(dict)
    ctx.obj["game_dir"] = game_dir
    ctx.obj["archive2"] = archive2
    ctx.obj["wrapper"] = wrapper


def _open_service(ctx: click.Context) -> ModDeploymentService:
    game_dir = ctx.obj.get("game_dir")
    if game_dir is None:
        game_dir = find_game_dir()
        if game_dir is None:
            _fail("Could not find Fallout 76. Use --game-dir to specify it manually.")
    if not game_dir.exists():
        _fail(f"Game directory does not exist: {game_dir}")

    archive2 = ctx.obj.get("archive2") or game_dir / "Archive2" / ARCHIVE2_EXE_NAME
    wrapper = ctx.obj.get("wrapper")
    packer = Archive2Packer(archive2, wrapper=[wrapper] if wrapper else None)

    try:
        service = ModDeploymentService.open(GameLayout(game_dir), packer)
    except ModManagerError as e:
        _fail(str(e))

    for error in service.registry.load_errors:
        console.print(
            f"[yellow]Skipped mod record #{error.index} ({error.uuid}):[/yellow] {error.message}"
        )
    return service


def _resolve_mod(service: ModDeploymentService, uuid_prefix: str) -> ManagedMod:
    """Find a mod by (a prefix of) its UUID."""
    matches = [
        m for m in service.list_mods() if str(m.uuid).startswith(uuid_prefix.lower())
    ]
    if not matches:
        _fail(f"No mod matches '{uuid_prefix}'")
    if len(matches) > 1:
        _fail(f"'{uuid_prefix}' is ambiguous ({len(matches)} mods match)")
    return matches[0]


def _describe_state(state: DiskState) -> str:
    if not state.enabled:
        return "[dim]disabled[/dim]"
    text = state.method.value
    if state.loose:
        text += f" -> {state.loose.root_folder or 'Data'} ({len(state.loose.files)} files)"
    elif state.archive:
        text += f" -> {state.archive.archive_name}"
        if state.archive.frozen:
            text += " [cyan](frozen)[/cyan]"
    return text


def _print_result(title: str, result: ReconcileResult) -> None:
    style = STATUS_STYLES[result.status]
    console.print(f"  [{style}]{result.status.value:>9}[/{style}]  {title}")
    for path in result.missing_files[:10]:
        console.print(f"             [yellow]missing[/yellow] {path}")
    for error in result.errors[:10]:
        console.print(f"             [red]x[/red] {error}")


@main.command(name="list")
@click.pass_context
def list_mods(ctx: click.Context) -> None:
    """List all managed mods."""
    service = _open_service(ctx)
    mods = service.list_mods()
    if not mods:
        console.print("[yellow]No mods installed.[/yellow]")
        return

    table = Table(title="Managed Mods")
    table.add_column("UUID", style="cyan")
    table.add_column("Title")
    table.add_column("Version")
    table.add_column("Deployed")
    table.add_column("Pending")

    for mod in mods:
        table.add_row(
            str(mod.uuid)[:8],
            mod.title[:40],
            mod.version,
            _describe_state(mod.current),
            _describe_state(mod.pending) if mod.is_dirty else "[dim]-[/dim]",
        )
    console.print(table)


@main.command()
@click.argument("title")
@click.option("--url", default="", help="Nexus Mods page of the mod")
@click.option("--version", "mod_version", default="1.0", help="Mod version")
@click.option(
    "--archive",
    type=click.Path(exists=True, path_type=Path),
    help="Downloaded mod archive to install into the managed folder",
)
@click.pass_context
def add(ctx: click.Context, title: str, url: str, mod_version: str, archive: Path | None) -> None:
    """
    Register a new mod.

    TITLE: Display name of the mod
    """
    service = _open_service(ctx)
    mod = service.add_mod(title=title, url=url, version=mod_version)
    console.print(f"[green]Added[/green] {mod.title} ({mod.uuid})")

    if archive:
        try:
            files = service.install_archive(mod.uuid, archive)
        except ExtractionError as e:
            _fail(str(e))
        console.print(f"  Installed {len(files)} files from {archive.name}")


@main.command()
@click.argument("uuid_prefix")
@click.pass_context
def show(ctx: click.Context, uuid_prefix: str) -> None:
    """Show a mod's deployed and pending state."""
    service = _open_service(ctx)
    mod = _resolve_mod(service, uuid_prefix)

    console.print(f"[bold]Title:[/bold] {mod.title}")
    console.print(f"[bold]UUID:[/bold] {mod.uuid}")
    console.print(f"[bold]Version:[/bold] {mod.version}")
    if mod.nexus_id >= 0:
        console.print(f"[bold]Nexus Mods:[/bold] {mod.url} (id {mod.nexus_id})")
    console.print(f"[bold]Deployed:[/bold] {_describe_state(mod.current)}")
    console.print(f"[bold]Pending:[/bold] {_describe_state(mod.pending)}")
    if mod.is_dirty:
        console.print("[yellow]Changes pending, run 'deploy' to apply them.[/yellow]")


@main.command(name="set")
@click.argument("uuid_prefix")
@click.option(
    "--method",
    type=click.Choice([m.value for m in DeploymentMethod], case_sensitive=False),
    help="Deployment method",
)
@click.option("--enable/--disable", default=None, help="Enable or disable the mod")
@click.option("--root-folder", help="Loose: destination folder (relative to the game directory)")
@click.option("--file", "files", multiple=True, help="Loose: relative file path (repeatable)")
@click.option("--all-files", is_flag=True, help="Loose: deploy every file in the managed folder")
@click.option("--archive-name", help="Separate archive: file name in Data/")
@click.option(
    "--format",
    "archive_format",
    type=click.Choice([f.value for f in ArchiveFormat], case_sensitive=False),
    help="Separate archive: format",
)
@click.option(
    "--compression",
    type=click.Choice([c.value for c in ArchiveCompression], case_sensitive=False),
    help="Separate archive: compression",
)
@click.option("--freeze/--unfreeze", default=None, help="Separate archive: pin the archive")
@click.pass_context
def set_pending(
    ctx: click.Context,
    uuid_prefix: str,
    method: str | None,
    enable: bool | None,
    root_folder: str | None,
    files: tuple[str, ...],
    all_files: bool,
    archive_name: str | None,
    archive_format: str | None,
    compression: str | None,
    freeze: bool | None,
) -> None:
    """Change how a mod will be deployed next time."""
    service = _open_service(ctx)
    mod = _resolve_mod(service, uuid_prefix)
    state = mod.pending

    if method:
        state.switch_method(DeploymentMethod(_canonical(method, DeploymentMethod)))
    if enable is not None:
        state.enabled = enable

    if isinstance(state.target, LooseDeployment):
        if root_folder is not None:
            state.target.root_folder = root_folder
        if all_files:
            managed = service.layout.managed_path(mod.managed_folder_name)
            files = tuple(p.as_posix() for p in list_staged_files(managed))
        if files:
            state.target.clear_files()
            for path in files:
                state.target.add_file(path)
    elif root_folder is not None or files or all_files:
        _fail("--root-folder and --file only apply to the Loose method")

    if state.archive:
        if archive_name is not None and not state.archive.set_archive_name(archive_name):
            console.print("[yellow]Ignoring empty archive name.[/yellow]")
        if archive_format:
            state.archive.format = ArchiveFormat(_canonical(archive_format, ArchiveFormat))
        if compression:
            state.archive.compression = ArchiveCompression(
                _canonical(compression, ArchiveCompression)
            )
        if freeze is not None:
            state.archive.frozen = freeze
    elif archive_name or archive_format or compression or freeze is not None:
        _fail("Archive options only apply to the SeparateBA2 method")

    try:
        service.set_pending(mod.uuid, state)
    except ModManagerError as e:
        _fail(str(e))
    console.print(f"[bold]Pending:[/bold] {_describe_state(state)}")


def _canonical(value: str, enum_cls) -> str:
    """Map a case-insensitive click choice back to the enum token."""
    for member in enum_cls:
        if member.value.lower() == value.lower():
            return member.value
    return value


@main.command()
@click.argument("uuid_prefixes", nargs=-1)
@click.option("--workers", type=int, default=4, help="Mods deployed in parallel")
@click.option("--rebuild-bundle", is_flag=True, help="Always repack the bundled archives")
@click.pass_context
def deploy(
    ctx: click.Context,
    uuid_prefixes: tuple[str, ...],
    workers: int,
    rebuild_bundle: bool,
) -> None:
    """
    Apply pending changes to the game directory.

    UUID_PREFIXES: Only deploy these mods (default: all)
    """
    service = _open_service(ctx)

    if uuid_prefixes:
        failed = False
        for prefix in uuid_prefixes:
            mod = _resolve_mod(service, prefix)
            result = service.reconcile_one(mod.uuid, wait=True)
            _print_result(mod.title, result)
            failed |= not result.succeeded
        if service.registry.bundle_dirty or rebuild_bundle:
            bundle = service.rebuild_bundle()
            for error in bundle.errors:
                console.print(f"  [red]x[/red] {error}")
            failed |= bool(bundle.errors)
        if failed:
            sys.exit(1)
        return

    titles = {str(m.uuid): m.title for m in service.list_mods()}
    with console.status("[bold]Deploying mods...[/bold]") as status:
        batch = service.reconcile_all(
            max_workers=workers,
            rebuild_bundle=True if rebuild_bundle else None,
            on_progress=lambda event, pct, msg: status.update(f"[bold]{msg}[/bold]"),
        )

    for result in batch.results:
        _print_result(titles.get(result.uuid, result.uuid), result)

    if batch.bundle:
        for name in batch.bundle.archives:
            console.print(f"  [green]Packed[/green] {name}")
        for name in batch.bundle.removed:
            console.print(f"  [dim]Removed[/dim] {name}")
        for error in batch.bundle.errors:
            console.print(f"  [red]x[/red] {error}")

    summary = ", ".join(f"{count} {status}" for status, count in batch.summary().items())
    console.print(f"\n[bold]Done:[/bold] {summary or 'nothing to do'}")
    if not batch.succeeded:
        sys.exit(1)


@main.command()
@click.argument("uuid_prefix")
@click.pass_context
def delete(ctx: click.Context, uuid_prefix: str) -> None:
    """Delete a mod and its managed folder (it must be disabled and deployed first)."""
    service = _open_service(ctx)
    mod = _resolve_mod(service, uuid_prefix)
    try:
        service.delete_mod(mod.uuid)
    except ModManagerError as e:
        _fail(str(e))
    console.print(f"[green]Deleted[/green] {mod.title}")


@main.command()
@click.argument("uuid_prefix")
@click.option(
    "--api-key",
    envvar="NEXUS_API_KEY",
    help="Nexus Mods API key (or set NEXUS_API_KEY env var)",
)
@click.pass_context
def info(ctx: click.Context, uuid_prefix: str, api_key: str | None) -> None:
    """Show a mod's Nexus Mods page details."""
    service = _open_service(ctx)
    mod = _resolve_mod(service, uuid_prefix)
    try:
        remote = service.fetch_remote_info(mod.uuid, NexusAPI(api_key))
    except NexusAPIError as e:
        _fail(str(e))

    console.print(f"[bold]Name:[/bold] {remote.get('name', '-')}")
    console.print(f"[bold]Author:[/bold] {remote.get('author', '-')}")
    console.print(f"[bold]Latest version:[/bold] {remote.get('version', '-')}")
    if remote.get("version") and remote.get("version") != mod.version:
        console.print(f"[yellow]Installed version is {mod.version}.[/yellow]")
    if remote.get("summary"):
        console.print(f"\n{remote['summary']}")
