from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table

from .config import RunnerConfig, resolve_runner_config
from .constants import FEATURES_FILE, FEATURES_LOCK_FILE, STATE_DIR_NAME
from .domain.models import Feature, FeatureStatus, PlanningMode
from .errors import FeatureRunnerError
from .logging_utils import configure_logging
from .scheduling.resolver import blocking_dependencies, compute_order
from .storage.file_store import YamlFeatureStore

STATUS_STYLES = {
    FeatureStatus.VERIFIED: "green",
    FeatureStatus.FAILED: "red",
    FeatureStatus.STOPPED: "yellow",
    FeatureStatus.RUNNING: "cyan",
    FeatureStatus.PLANNING: "cyan",
    FeatureStatus.PLAN_AWAITING_APPROVAL: "magenta",
    FeatureStatus.AWAITING_VERIFICATION: "magenta",
}


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _ctx(args: argparse.Namespace) -> tuple[Path, RunnerConfig, YamlFeatureStore, str]:
    project_dir = _resolve_project_dir(args.project_dir)
    config = resolve_runner_config(project_dir)
    configure_logging(args.log_level or config.log_level)
    state_dir = project_dir / STATE_DIR_NAME
    store = YamlFeatureStore(state_dir / FEATURES_FILE, lock_path=state_dir / FEATURES_LOCK_FILE)
    return project_dir, config, store, config.project_id or project_dir.name


def _order(args: argparse.Namespace, console: Console) -> int:
    _, _, store, project_id = _ctx(args)
    features = store.load(project_id)
    by_id = {f.id: f for f in features}
    table = Table(title=f"Execution order ({project_id})")
    table.add_column("#", justify="right")
    table.add_column("Feature")
    table.add_column("Depends on")
    for idx, feature_id in enumerate(compute_order(features), start=1):
        feature = by_id[feature_id]
        table.add_row(str(idx), feature.title or feature.id, ", ".join(feature.dependencies) or "-")
    console.print(table)
    return 0


def _status(args: argparse.Namespace, console: Console) -> int:
    _, _, store, project_id = _ctx(args)
    features = store.load(project_id)
    states = {f.id: f.status for f in features}
    table = Table(title=f"Features ({project_id})")
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Branch")
    table.add_column("Notes")
    for feature in features:
        style = STATUS_STYLES.get(feature.status, "white")
        notes = feature.error or ""
        blockers = blocking_dependencies(feature, states) if feature.status == FeatureStatus.PENDING else []
        if blockers:
            notes = f"blocked by {', '.join(blockers)}"
        table.add_row(
            feature.id,
            feature.title,
            f"[{style}]{feature.status.value}[/{style}]",
            feature.branch_name or "-",
            notes.splitlines()[0] if notes else "",
        )
    console.print(table)
    return 0


def _add(args: argparse.Namespace, console: Console) -> int:
    _, _, store, project_id = _ctx(args)
    features = store.load(project_id)
    data = {
        "title": args.title,
        "description": args.description or "",
        "dependencies": list(args.depends_on or []),
        "planning_mode": args.planning_mode,
        "require_plan_approval": args.require_approval,
        "verify_command": args.verify_command,
        "project_id": project_id,
    }
    if args.id:
        data["id"] = args.id
    feature = Feature.from_dict(data)
    if any(existing.id == feature.id for existing in features):
        console.print(f"[red]Feature id already exists: {feature.id}[/red]")
        return 1
    compute_order([*features, feature])
    store.save(feature)
    console.print(f"Added [bold]{feature.id}[/bold] ({feature.title})")
    return 0


def _serve(args: argparse.Namespace, console: Console) -> int:
    import uvicorn

    from .agent.http_provider import HttpAgentProvider
    from .agent.provider import ScriptedProvider
    from .api import create_app
    from .orchestrator.service import build_orchestrator

    project_dir, config, _, _ = _ctx(args)
    if args.dry_run:
        provider_factory = ScriptedProvider.for_feature
    elif args.agent_url:
        endpoint = args.agent_url

        def provider_factory(feature: Feature) -> HttpAgentProvider:
            return HttpAgentProvider(endpoint, timeout=config.request_timeout_seconds)

    else:
        console.print("[red]Pass --agent-url or --dry-run[/red]")
        return 1
    orchestrator = build_orchestrator(project_dir, config, provider_factory=provider_factory)
    app = create_app(orchestrator)
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a backlog of dependent features through a coding agent")
    parser.add_argument("--project-dir", default=None, help="Target project directory (default: current working directory)")
    parser.add_argument("--log-level", default=None, help="Log level (default: config log_level or INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    order = subparsers.add_parser("order", help="Show the dependency order")
    order.set_defaults(func=_order)

    status = subparsers.add_parser("status", help="Show feature states")
    status.set_defaults(func=_status)

    add = subparsers.add_parser("add", help="Add a feature to the backlog")
    add.add_argument("title")
    add.add_argument("--id", default=None)
    add.add_argument("--description", default="")
    add.add_argument("--depends-on", action="append", default=[], help="Dependency feature id (repeatable)")
    add.add_argument("--planning-mode", default=PlanningMode.SKIP.value, choices=[m.value for m in PlanningMode])
    add.add_argument("--require-approval", action="store_true")
    add.add_argument("--verify-command", default=None)
    add.set_defaults(func=_add)

    serve = subparsers.add_parser("serve", help="Start the orchestrator with its HTTP/WebSocket surface")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", default=8000, type=int)
    serve.add_argument("--agent-url", default=None, help="HTTP agent provider endpoint")
    serve.add_argument("--dry-run", action="store_true", help="Use the scripted provider instead of a real agent")
    serve.set_defaults(func=_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    console = Console()
    try:
        return int(args.func(args, console) or 0)
    except FeatureRunnerError as exc:
        console.print(f"[red]{exc.describe()}[/red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
