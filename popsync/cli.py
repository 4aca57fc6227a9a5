#!/usr/bin/env python3
"""
Command line interface for the Jira ↔ planning mirror.

Commands:
    popsync fetch-issues [--component C | --issue KEY]
    popsync process-issues [--component C] [--epic KEY] [--dry-run]
    popsync validate-issue [KEY | --file PATH | --component C | --epic KEY | --all]
    popsync update-issue KEY [--recurse] [--dry-run]
    popsync refine-issue KEY [--dry-run]
    popsync promote-issue KEY --target LABEL [--dry-run]
    popsync config validate

Exit status is 1 when a command fails outright; warnings never change it.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from popsync import __version__
from popsync.config_loader import MirrorSettings, load_config
from popsync.errors import ConfigError, PopsyncError, TrackerError
from popsync.jira_client import JiraClient
from popsync.logger import get_logger
from popsync.reconciler import DirectoryReconciler, ReconciliationReport, find_issue_file, scan_issue_files
from popsync.snapshot_cache import SnapshotCache
from popsync.templates import TemplateStore
from popsync.tracker import OfflineTracker, TrackerClient
from popsync.updater import IssueUpdater
from popsync.validator import IssueValidator, ValidationResult
from popsync.workspace import WorkspaceManager


def build_tracker(settings: MirrorSettings, required: bool = True) -> TrackerClient:
    """Jira client for the configured instance; an offline stand-in when optional and unconfigured."""
    try:
        return JiraClient(settings.base_url, settings.project_key)
    except TrackerError as e:
        if required:
            raise
        get_logger().debug(f"Running without Jira access: {e}")
        return OfflineTracker(str(e))


def format_report(report: ReconciliationReport, detailed: bool = False) -> str:
    """Human-readable reconciliation summary."""
    title = "PROCESS ISSUES (DRY RUN)" if report.dry_run else "PROCESS ISSUES"
    lines = [
        "=" * 60,
        title,
        "=" * 60,
        f"Entities processed: {report.entities_processed}",
        f"Files: {len(report.files_generated)} generated, {report.files_unchanged} unchanged, "
        f"{len(report.files_relocated)} relocated, {len(report.files_deleted)} deleted",
        f"Directories deleted: {len(report.directories_deleted)}",
        f"Warnings: {len(report.warnings)}",
        f"Errors: {len(report.errors)}",
    ]

    if detailed:
        for label, paths in (
            ('Generated', report.files_generated),
            ('Relocated', report.files_relocated),
            ('Deleted', report.files_deleted),
            ('Removed directory', report.directories_deleted),
        ):
            lines.extend(f"  {label}: {path}" for path in paths)
        lines.extend(f"  ⚠ {warning}" for warning in report.warnings)

    lines.extend(f"  ✗ {error}" for error in report.errors)
    lines.append("=" * 60)
    return "\n".join(lines)


def format_validation(results: List[ValidationResult]) -> str:
    """Human-readable validation summary."""
    invalid = [r for r in results if not r.valid]
    lines = [
        "=" * 60,
        "VALIDATION SUMMARY",
        "=" * 60,
        f"Issues: {len(results) - len(invalid)}/{len(results)} valid",
        f"Errors: {sum(len(r.errors) for r in results)}",
        f"Warnings: {sum(len(r.warnings) for r in results)}",
    ]

    for result in results:
        status = "✓" if result.valid else "✗"
        lines.append(f"\n{status} {result.key or 'unknown'} ({result.issue_type or 'unknown'})")
        lines.append(f"  {result.path}")
        lines.extend(f"  ✗ {finding.message}" for finding in result.errors)
        lines.extend(f"  ⚠ {finding.message}" for finding in result.warnings)

    lines.append("=" * 60)
    return "\n".join(lines)


# ---------- commands ----------

def cmd_fetch_issues(args: argparse.Namespace, settings: MirrorSettings) -> int:
    tracker = build_tracker(settings)
    cache = SnapshotCache(settings)

    if args.issue:
        path = asyncio.run(cache.fetch_issue(tracker, args.issue))
        print(f"✓ Issue {args.issue} saved to {path}")
        return 0

    components = [args.component] if args.component else list(settings.scope_components)
    if not components:
        print("✗ No components to fetch: pass --component or set scope.components", file=sys.stderr)
        return 1

    failed = False
    for component in components:
        result = asyncio.run(cache.fetch_component(tracker, component))
        status = "✓" if result.success else "✗"
        print(f"{status} {component}: {result.epics_fetched} epics, {result.issues_saved} issues")
        for error in result.errors:
            print(f"  ✗ {error}")
        failed = failed or not result.success

    return 1 if failed else 0


def cmd_process_issues(args: argparse.Namespace, settings: MirrorSettings) -> int:
    reconciler = DirectoryReconciler(
        settings,
        build_tracker(settings, required=False),
        SnapshotCache(settings),
        TemplateStore(settings.templates_dir),
        dry_run=args.dry_run,
    )
    report = asyncio.run(reconciler.reconcile(component=args.component, epic_key=args.epic))
    print(format_report(report, detailed=args.detailed))
    return 1 if report.failed else 0


def _files_to_validate(args: argparse.Namespace, settings: MirrorSettings) -> List[Path]:
    if args.file:
        return [Path(args.file)]

    if args.issue_key:
        path = find_issue_file(settings.mirror_root, args.issue_key)
        if path is None:
            raise PopsyncError(
                f"Issue {args.issue_key} not found in {settings.mirror_root}; "
                "run fetch-issues and process-issues first"
            )
        return [path]

    if args.epic:
        epic_path = find_issue_file(settings.mirror_root, args.epic)
        if epic_path is None:
            raise PopsyncError(f"Epic {args.epic} not found in {settings.mirror_root}")
        return [path for path, _ in scan_issue_files(epic_path.parent) if path.parent == epic_path.parent]

    files = [path for path, _ in scan_issue_files(settings.mirror_root)]
    if args.component:
        files = [
            path for path in files
            if path.relative_to(settings.mirror_root).parts[0] == args.component
        ]
    return files


def cmd_validate_issue(args: argparse.Namespace, settings: MirrorSettings) -> int:
    if not (args.issue_key or args.file or args.component or args.epic or args.all):
        print("✗ Specify an issue key, --file, --component, --epic or --all", file=sys.stderr)
        return 1

    files = _files_to_validate(args, settings)
    if not files:
        print("No issue files found to validate")
        return 0

    validator = IssueValidator(settings)
    results = [validator.validate_file(path) for path in files]

    if args.json:
        print(json.dumps([r.to_dict() for r in results], indent=2))
    else:
        print(format_validation(results))
    return 0 if all(r.valid for r in results) else 1


def cmd_update_issue(args: argparse.Namespace, settings: MirrorSettings) -> int:
    updater = IssueUpdater(settings, build_tracker(settings, required=not args.dry_run), dry_run=args.dry_run)

    if not args.recurse:
        wire_fields = asyncio.run(updater.update_issue(args.issue_key))
        if args.dry_run:
            print(json.dumps(wire_fields, indent=2, ensure_ascii=False))
        else:
            print(f"✓ Updated {args.issue_key} ({len(wire_fields)} fields)")
        return 0

    summary = asyncio.run(updater.update_with_children(args.issue_key))
    print(f"✓ Updated {len(summary.updated)} issue(s): {', '.join(summary.updated)}")
    for key, error in summary.failures.items():
        print(f"  ✗ {key}: {error}")
    return 1 if summary.failed else 0


def _workspace(args: argparse.Namespace, settings: MirrorSettings, tracker: TrackerClient) -> WorkspaceManager:
    return WorkspaceManager(
        settings,
        tracker,
        SnapshotCache(settings),
        TemplateStore(settings.templates_dir),
        dry_run=args.dry_run,
    )


def cmd_refine_issue(args: argparse.Namespace, settings: MirrorSettings) -> int:
    manager = _workspace(args, settings, build_tracker(settings))
    result = asyncio.run(manager.refine(args.issue_key))

    if not result.created:
        print(f"✓ {args.issue_key} is already in the workspace: {result.path}")
    else:
        prefix = "Would write" if args.dry_run else "Wrote"
        print(f"✓ {prefix} {result.path}")
        if result.label_added:
            print(f"  Added label: {settings.rework_label}")

    print("\nNext steps:")
    print(f"  1. Edit {result.path}")
    print(f"  2. popsync update-issue {args.issue_key}")
    print(f"  3. popsync promote-issue {args.issue_key} --target <label>")
    return 0


def cmd_promote_issue(args: argparse.Namespace, settings: MirrorSettings) -> int:
    manager = _workspace(args, settings, build_tracker(settings, required=not args.dry_run))
    result = asyncio.run(manager.promote(args.issue_key, args.target))

    if args.dry_run:
        print(json.dumps(result.wire_fields, indent=2, ensure_ascii=False))
        return 0

    print(f"✓ Promoted {args.issue_key}: {settings.workspace_label} → {result.label}")
    if result.target_path is not None:
        print(f"  Now at {result.target_path}")
    else:
        print(f"  ⚠ Not materialized in {settings.mirror_root}; the workspace copy was kept")
    if result.report is not None:
        print(format_report(result.report))
    return 1 if result.report is not None and result.report.failed else 0


def cmd_config_validate(args: argparse.Namespace) -> int:
    """Validate popsync.yaml and the directories it names."""
    print("=" * 60)
    print("CONFIGURATION VALIDATION")
    print("=" * 60)

    try:
        config = load_config(args.config)
        errors, warnings = config.check_paths()
    except ConfigError as e:
        print(f"✗ {e}")
        print("=" * 60)
        return 1

    settings = config.settings()
    print(f"Config: {config.config_path}")
    print(f"Project: {settings.project_key}")
    print(f"Mirror: {settings.mirror_root}")
    print(f"Templates: {settings.templates_dir}")
    print(f"Workspace: {settings.workspace_dir}")

    for error in errors:
        print(f"  ✗ {error}")
    for warning in warnings:
        print(f"  ⚠ {warning}")

    print("=" * 60)
    if errors:
        print(f"✗ Configuration validation FAILED ({len(errors)} errors)")
        return 1
    print("✓ Configuration validation PASSED")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='popsync',
        description='Mirror Jira epics and their issues as markdown documents',
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--config', type=Path, help='Path to popsync.yaml')
    parser.add_argument('--debug', action='store_true', help='Verbose logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    fetch = subparsers.add_parser('fetch-issues', help='Fetch epics and children into the snapshot cache')
    fetch_target = fetch.add_mutually_exclusive_group()
    fetch_target.add_argument('--component', '-c', help='Component to fetch (default: scope.components)')
    fetch_target.add_argument('--issue', '-i', help='Single issue key to fetch')
    fetch.set_defaults(handler=cmd_fetch_issues)

    process = subparsers.add_parser('process-issues', help='Reconcile the mirror with the snapshot cache')
    process.add_argument('--component', '-c', help='Only process epics cached under this component')
    process.add_argument('--epic', '-e', help='Only process this epic')
    process.add_argument('--dry-run', action='store_true', help='Report without changing anything')
    process.add_argument('--detailed', action='store_true', help='List every file change')
    process.set_defaults(handler=cmd_process_issues)

    validate = subparsers.add_parser('validate-issue', help='Validate documents against their section schema')
    validate.add_argument('issue_key', nargs='?', help='Issue key to validate')
    validate_target = validate.add_mutually_exclusive_group()
    validate_target.add_argument('--file', '-f', help='Document path to validate')
    validate_target.add_argument('--component', '-c', help='Validate every document of a component')
    validate_target.add_argument('--epic', '-e', help='Validate an epic and its children')
    validate_target.add_argument('--all', '-a', action='store_true', help='Validate every document')
    validate.add_argument('--json', action='store_true', help='Output as JSON')
    validate.set_defaults(handler=cmd_validate_issue)

    update = subparsers.add_parser('update-issue', help='Push a local document to Jira')
    update.add_argument('issue_key', help='Issue key to update')
    update.add_argument('--recurse', '-r', action='store_true', help='Also update the epic\'s children')
    update.add_argument('--dry-run', action='store_true', help='Print the payload instead of sending it')
    update.set_defaults(handler=cmd_update_issue)

    refine = subparsers.add_parser('refine-issue', help='Bring an issue into the workspace for rework')
    refine.add_argument('issue_key', help='Issue key to refine')
    refine.add_argument('--dry-run', action='store_true', help='Report without writing to Jira or disk')
    refine.set_defaults(handler=cmd_refine_issue)

    promote = subparsers.add_parser('promote-issue', help='Promote a workspace issue to the target increment')
    promote.add_argument('issue_key', help='Issue key to promote')
    promote.add_argument('--target', '-t', required=True, help='Promotion label (e.g. FY26Q1)')
    promote.add_argument('--dry-run', action='store_true', help='Print the payload instead of sending it')
    promote.set_defaults(handler=cmd_promote_issue)

    config = subparsers.add_parser('config', help='Configuration commands')
    config_commands = config.add_subparsers(dest='config_command', required=True)
    config_validate = config_commands.add_parser('validate', help='Validate popsync.yaml and its paths')
    config_validate.set_defaults(handler=cmd_config_validate)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = get_logger(debug=args.debug)

    if args.command == 'config':
        return args.handler(args)

    try:
        settings = load_config(args.config).settings()
        return args.handler(args, settings)
    except (PopsyncError, OSError) as e:
        logger.error(f"{args.command} failed", e)
        print(f"✗ {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
