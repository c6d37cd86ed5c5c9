"""CLI interface for Reclaim."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click

from reclaim.core.disks import get_disks
from reclaim.core.engine import ReclaimEngine
from reclaim.core.ownership import Identity, IdentityError, Verdict
from reclaim.core.registry import SourceRegistry
from reclaim.core.safety import confirmation_for
from reclaim.core.scanner import InvalidRootError, NodeBusyError, ScanEngine, ScanOptions, ScanSession
from reclaim.core.source_loader import load_sources
from reclaim.models.source import ActionSource
from reclaim.models.tree import ScanState, TreeNode
from reclaim.settings import Settings
from reclaim.utils import bytes_to_human, path_size, remove_paths


def _setup_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def _build_engine() -> ReclaimEngine:
    try:
        identity = Identity.current()
    except IdentityError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    registry = SourceRegistry()
    load_sources(registry)
    scanner = ScanEngine(ScanOptions.from_settings(Settings.instance()))
    return ReclaimEngine(registry, identity, scanner=scanner)


@click.group()
@click.option("-v", "--verbose", count=True, help="Increase verbosity (-v info, -vv debug)")
def main(verbose: int) -> None:
    """Reclaim: find what fills your disk and get the space back."""
    _setup_logging(verbose)


# ── list ─────────────────────────────────────────────────────────────────

@main.command("list")
@click.option("--category", "-c", default=None, help="Filter by category")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def list_cmd(category: str | None, as_json: bool) -> None:
    """List the storage sources present on this system."""
    engine = _build_engine()
    sources = engine.registry.get_available()
    if category:
        sources = [s for s in sources if s.category == category]

    if as_json:
        data = [
            {
                "id": s.id,
                "name": s.name,
                "description": s.description,
                "category": s.category,
                "requires_root": s.requires_root,
                "removable": s.removable,
            }
            for s in sources
        ]
        click.echo(json.dumps(data, indent=2))
        return

    if not sources:
        click.echo("No sources available.")
        return

    current = None
    for source in sources:
        if source.category != current:
            current = source.category
            click.echo(f"\n  {click.style(current.capitalize(), fg='blue', bold=True)}")
        root_tag = click.style(" [requires root]", fg="yellow") if source.requires_root else ""
        info_tag = click.style(" [informational]", fg="bright_black") if not source.removable else ""
        click.echo(f"    {click.style(source.id, fg='cyan', bold=True):30s}  {source.name}{root_tag}{info_tag}")
        click.echo(f"      {source.description}")
    click.echo()


# ── measure ──────────────────────────────────────────────────────────────

@main.command()
@click.argument("source_ids", nargs=-1)
@click.option("--category", "-c", default=None, help="Measure all sources in this category")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def measure(source_ids: tuple[str, ...], category: str | None, as_json: bool) -> None:
    """Measure categorized sources (never deletes anything)."""
    engine = _build_engine()
    ids = list(source_ids) if source_ids else None

    def on_progress(source_id: str, status: str) -> None:
        if not as_json and status == "error":
            click.echo(f"  {click.style('✗', fg='red')} {source_id:35s} — error while measuring")

    reports = engine.measure(source_ids=ids, category=category, on_progress=on_progress)

    if as_json:
        click.echo(json.dumps([r.as_dict() for r in reports], indent=2))
        return

    click.echo()
    for report in reports:
        source = engine.registry.get(report.source_id)
        root_tag = click.style(" [requires root]", fg="yellow") if (source and source.requires_root) else ""
        if report.total_bytes > 0:
            click.echo(
                f"  {click.style('✓', fg='green')} {report.source_name:35s} — "
                f"{click.style(bytes_to_human(report.total_bytes), fg='green', bold=True)} "
                f"({len(report.items):,} items){root_tag}"
            )
        else:
            click.echo(f"  {click.style('·', fg='bright_black')} {report.source_name:35s} — empty")

    measured = {r.source_id for r in reports}
    for source in engine.registry:
        if source.id not in measured and not source.is_available():
            click.echo(
                f"  {click.style('✗', fg='bright_black')} {source.name:35s} — "
                f"{click.style('not present on this system', fg='bright_black')}"
            )

    total = sum(r.total_bytes for r in reports)
    click.echo(f"\nTotal: {click.style(bytes_to_human(total), fg='green', bold=True)}\n")


# ── scan ─────────────────────────────────────────────────────────────────

@main.command()
@click.argument("path", required=False, type=click.Path(file_okay=False, path_type=Path))
@click.option("--expand", "-e", "expand_names", multiple=True,
              help="Descend into this child after scanning (repeat to go deeper)")
@click.option("--cross-fs", is_flag=True, help="Cross filesystem boundaries")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def scan(path: Path | None, expand_names: tuple[str, ...], cross_fs: bool, as_json: bool) -> None:
    """Measure a folder tree and list its largest entries."""
    engine = _build_engine()
    settings = Settings.instance()
    options = ScanOptions.from_settings(settings)
    if cross_fs:
        options.cross_filesystem_boundaries = True
    target = path or settings.scan_root()

    if not as_json:
        click.echo(f"\n{click.style('🔍', bold=True)} Scanning {target}...\n")

    try:
        session = engine.scanner.scan(target, scope="cli", options=options, background=False, publish=False)
    except InvalidRootError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(2)

    node = session.root
    for name in expand_names:
        try:
            children = session.expand(node.id)
        except NodeBusyError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(2)
        match = next((c for c in children if c.name == name), None)
        if match is None:
            click.echo(f"Error: '{name}' not found in {node.path}", err=True)
            sys.exit(2)
        node = match

    children = session.expand(node.id) if node.is_dir else []
    node = session.node(node.id)

    if as_json:
        data = {
            "session": session.id,
            "node": node.as_dict(),
            "children": [c.as_dict() for c in children],
            "errors": [e.as_dict() for e in session.errors],
        }
        click.echo(json.dumps(data, indent=2))
        return

    _print_node_listing(node, children)
    _print_scan_errors(session)


def _print_node_listing(node: TreeNode, children: list[TreeNode]) -> None:
    click.echo(f"  {click.style(str(node.path), bold=True)} — {click.style(bytes_to_human(node.size), fg='green', bold=True)}\n")
    if not children:
        click.echo("  (empty)")
    for child in children:
        share = 100.0 * child.size / node.size if node.size else 0.0
        name = child.name + ("/" if child.is_dir else "")
        if child.state is ScanState.FAILED:
            status = click.style(f" [{child.reason}]", fg="red")
        elif child.state is not ScanState.SCANNED:
            status = click.style(f" [{child.state.value}]", fg="yellow")
        else:
            status = ""
        click.echo(f"  {bytes_to_human(child.size):>10s}  {share:5.1f}%  {name}{status}")
    click.echo()


def _print_scan_errors(session: ScanSession) -> None:
    errors = session.errors
    if not errors:
        return
    click.echo(f"  {click.style('!', fg='yellow')} {len(errors)} path(s) could not be read:")
    for error in errors[:10]:
        click.echo(f"    {error.path}: {error.reason}")
    if len(errors) > 10:
        click.echo(f"    ... and {len(errors) - 10} more (use -vv to see all)")
    click.echo()


# ── remove ───────────────────────────────────────────────────────────────

@main.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path(path_type=Path))
@click.option("--yes", "-y", is_flag=True, help="Skip both confirmations")
@click.option("--dry-run", is_flag=True, help="Show how each path would be removed without doing it")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def remove(paths: tuple[Path, ...], yes: bool, dry_run: bool, as_json: bool) -> None:
    """Move home files to the trash, or permanently delete system files.

    Files you own inside your home directory go to the trash and can be
    restored.  Anything else needs administrator rights and is deleted
    permanently, after a separate confirmation.  With --json nothing is
    deleted permanently unless --yes is given as well.
    """
    engine = _build_engine()
    plan = engine.safety.plan(paths)

    if dry_run:
        if as_json:
            data = {
                "status": "dry_run",
                "trash": [str(p) for p in plan.home_owned],
                "delete_permanently": [str(p) for p in plan.protected],
                "refused": [str(p) for p in plan.refused],
            }
            click.echo(json.dumps(data, indent=2))
        else:
            _print_plan(plan.home_owned, plan.protected, plan.refused)
            click.echo("(dry run — nothing was removed)")
        return

    selected: list[Path] = []
    if plan.home_owned:
        if as_json or yes or _confirm(Verdict.HOME_OWNED, plan.home_owned):
            selected.extend(plan.home_owned)
        elif not as_json:
            click.echo("Skipped moving files to the trash.")

    confirm_permanent = yes
    if plan.protected:
        if not (yes or as_json):
            confirm_permanent = _confirm(Verdict.PROTECTED, plan.protected)
        if confirm_permanent or as_json:
            selected.extend(plan.protected)
        else:
            click.echo("Skipped permanent deletion.")

    selected.extend(plan.refused)
    report = engine.remove(selected, confirm_permanent=confirm_permanent)

    if as_json:
        click.echo(json.dumps(report.as_dict(), indent=2))
        return

    freed = 0
    for outcome in report.trashed:
        if outcome.ok:
            freed += outcome.entry.size_bytes
            click.echo(f"  {click.style('✓', fg='green')} trashed  {outcome.path}")
    if report.elevated is not None:
        freed += report.elevated.freed_bytes
        for deleted in report.elevated.deleted:
            click.echo(f"  {click.style('✓', fg='green')} deleted  {deleted.path}")
    for error in report.errors:
        click.echo(f"  {click.style('!', fg='yellow')} {error}")
    click.echo(f"\nTotal reclaimed: {click.style(bytes_to_human(freed), fg='green', bold=True)}\n")


def _print_plan(home_owned: list[Path], protected: list[Path], refused: list[Path]) -> None:
    for path in home_owned:
        click.echo(f"  {click.style('trash', fg='green'):20s} {path}")
    for path in protected:
        click.echo(f"  {click.style('delete', fg='red'):20s} {path}")
    for path in refused:
        click.echo(f"  {click.style('refuse', fg='bright_black'):20s} {path}")


def _confirm(verdict: Verdict, paths: list[Path]) -> bool:
    total = 0
    for path in paths:
        try:
            total += path_size(path)
        except OSError:
            continue
    prompt = confirmation_for(verdict, paths, total)
    color = "red" if prompt.irreversible else "green"
    click.echo(f"\n{click.style(prompt.title, fg=color, bold=True)}")
    for path in paths:
        click.echo(f"  {path}")
    click.echo(f"\n{prompt.message}")
    return click.confirm("Continue?", default=False)


# ── clean ────────────────────────────────────────────────────────────────

@main.command()
@click.argument("source_ids", nargs=-1, required=True)
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def clean(source_ids: tuple[str, ...], yes: bool, as_json: bool) -> None:
    """Reclaim sources managed by their own tool, permanently.

    Removes orphaned packages, prunes Docker or empties the trash.  Other
    sources are cleaned by passing their paths to 'remove'.  With --json
    nothing runs unless --yes is given as well.
    """
    engine = _build_engine()
    reports = engine.measure(source_ids=list(source_ids))

    confirmed = yes
    if not (yes or as_json):
        actionable = [
            r for r in reports if r.items and isinstance(engine.registry.get(r.source_id), ActionSource)
        ]
        if not actionable:
            click.echo("Nothing to clean.")
            return
        click.echo(f"\n{click.style('Clean permanently?', fg='red', bold=True)}")
        for report in actionable:
            click.echo(
                f"  {report.source_name:35s} {bytes_to_human(report.total_bytes):>10s}  ({len(report.items):,} items)"
            )
        click.echo("\nThis cannot be undone.")
        confirmed = click.confirm("Continue?", default=False)
        if not confirmed:
            click.echo("Skipped cleaning.")
            return

    outcomes = engine.clean(list(source_ids), confirmed=confirmed)

    if as_json:
        click.echo(json.dumps([o.as_dict() for o in outcomes], indent=2))
        return

    for outcome in outcomes:
        if outcome.ok:
            click.echo(
                f"  {click.style('✓', fg='green')} {outcome.source_id:35s} "
                f"{bytes_to_human(outcome.freed_bytes)} ({outcome.items_removed:,} items)"
            )
        else:
            click.echo(f"  {click.style('!', fg='yellow')} {outcome.source_id:35s} {outcome.error}")
    freed = sum(o.freed_bytes for o in outcomes)
    click.echo(f"\nTotal reclaimed: {click.style(bytes_to_human(freed), fg='green', bold=True)}\n")


# ── disks ────────────────────────────────────────────────────────────────

@main.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def disks(as_json: bool) -> None:
    """Show usage of the root and home filesystems."""
    usage = get_disks()
    if as_json:
        click.echo(json.dumps([d.as_dict() for d in usage], indent=2))
        return

    click.echo()
    for disk in usage:
        color = "red" if disk.percent_used >= 90 else "yellow" if disk.percent_used >= 75 else "green"
        click.echo(
            f"  {click.style(disk.mount_point, bold=True):20s} "
            f"{bytes_to_human(disk.used_bytes):>10s} of {bytes_to_human(disk.total_bytes):>10s} used "
            f"({click.style(f'{disk.percent_used:.0f}%', fg=color)}), "
            f"{bytes_to_human(disk.free_bytes)} free"
        )
    click.echo()


# ── delete-as-root (internal, hidden) ────────────────────────────────────

@main.command("delete-as-root", hidden=True)
def delete_as_root() -> None:
    """Internal command invoked via pkexec to delete protected paths.

    Reads a JSON payload from stdin with the shape::

        {"paths": ["/absolute/path", ...]}

    Writes a JSON list of per-path results to stdout.
    """
    try:
        payload = json.loads(sys.stdin.read())
        paths = payload["paths"]
        if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
            raise TypeError("'paths' must be a list of strings")
    except (json.JSONDecodeError, KeyError, TypeError) as exc:
        click.echo(json.dumps([{"path": "", "deleted": False, "freed_bytes": 0, "error": f"Bad input: {exc}"}]))
        sys.exit(1)

    click.echo(json.dumps(remove_paths(paths)))


# ── service ──────────────────────────────────────────────────────────────

@main.group()
def service() -> None:
    """D-Bus service management."""


@service.command("start")
def service_start() -> None:
    """Start the D-Bus service in foreground."""
    from reclaim.dbus_service import start_service

    click.echo("Starting Reclaim D-Bus service...")
    start_service()
