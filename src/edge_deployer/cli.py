"""Command-line interface for Edge Deployer."""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import AppConfig, load_config
from .errors import DeploymentError
from .executor.classifier import classify_error, recovery_suggestions
from .interaction import create_handler
from .orchestrator import DomainStatus, PortfolioSummary
from .workflow import DeploymentRequest, DeploymentWorkflow

console = Console()

_STATUS_EMOJI = {
    DomainStatus.COMPLETED.value: "✅",
    DomainStatus.FAILED.value: "❌",
    DomainStatus.ROLLED_BACK.value: "🔄",
    DomainStatus.IN_PROGRESS.value: "⏳",
    DomainStatus.PENDING.value: "•",
}


@dataclass
class CLIContext:
    """Context captured from CLI arguments."""

    config: AppConfig
    state_dir: str


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="edge-deployer",
        description="Deploy a service to multiple domains on an edge platform.",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a JSON config file overriding defaults.",
    )
    parser.add_argument(
        "--state-dir",
        type=str,
        default=None,
        help="Directory for persisted run state and audit logs.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    deploy_parser = subparsers.add_parser(
        "deploy", help="Deploy one or more domains"
    )
    deploy_parser.add_argument("domains", nargs="+", help="Domains to deploy (e.g. example.com)")
    deploy_parser.add_argument(
        "--env", "-e", dest="environment", default=None,
        help="Target environment (development, staging, production)"
    )
    deploy_parser.add_argument(
        "--concurrency", "-c", type=int, default=None,
        help="Maximum number of domains deployed at the same time"
    )
    deploy_parser.add_argument(
        "--dry-run", action="store_true",
        help="Simulate the deployment without making any changes"
    )
    # 依赖关系: --depends app.example.com:api.example.com 表示 app 在 api 之后部署
    deploy_parser.add_argument(
        "--depends", action="append", default=[], metavar="DOMAIN:DEPENDENCY",
        help="Deploy DOMAIN only after DEPENDENCY completed (repeatable)"
    )
    deploy_parser.add_argument(
        "--rotate-all", action="store_true",
        help="Regenerate every secret instead of reusing existing values"
    )
    deploy_parser.add_argument(
        "--no-reuse", action="store_true",
        help="Do not reuse existing secret bundles"
    )
    deploy_parser.add_argument(
        "--skip-health-check", action="store_true",
        help="Skip the post-deployment health check"
    )
    deploy_parser.add_argument(
        "--interactive", "-i", action="store_true",
        help="Ask before adopting resources that already exist"
    )
    deploy_parser.add_argument(
        "--json", action="store_true", dest="as_json",
        help="Print the portfolio summary as JSON"
    )

    # audit 子命令 - 导出审计日志
    audit_parser = subparsers.add_parser(
        "audit", help="Export the audit log of a run"
    )
    audit_parser.add_argument("orchestration_id", help="Orchestration ID of the run")
    audit_parser.add_argument(
        "--domain", "-d", default=None,
        help="Only show events for this domain"
    )
    audit_parser.add_argument(
        "--json", action="store_true", dest="as_json",
        help="Print raw JSON events"
    )

    # logs 子命令 - 查看历史运行
    logs_parser = subparsers.add_parser(
        "logs", help="List persisted deployment runs"
    )
    logs_parser.add_argument(
        "--limit", "-n", type=int, default=20,
        help="Number of runs to list (newest first)"
    )

    return parser


def _build_context(args: argparse.Namespace) -> CLIContext:
    config = load_config(args.config)
    if args.state_dir:
        config.state.state_dir = args.state_dir
    return CLIContext(config=config, state_dir=config.state.state_dir)


def parse_dependency(value: str) -> Tuple[str, str]:
    """Parse ``DOMAIN:DEPENDENCY`` into a ``(dependent, dependency)`` edge."""
    dependent, sep, dependency = value.partition(":")
    if not sep or not dependent.strip() or not dependency.strip():
        raise argparse.ArgumentTypeError(
            f"Invalid dependency '{value}', expected DOMAIN:DEPENDENCY"
        )
    return dependent.strip(), dependency.strip()


def print_summary(summary: PortfolioSummary) -> None:
    """Render the portfolio summary as a table."""
    title = f"Deployment {summary.orchestration_id} ({summary.environment})"
    if summary.dry_run:
        title += " [DRY RUN]"
    table = Table(title=title)
    table.add_column("Domain")
    table.add_column("Status", no_wrap=True)
    table.add_column("Phase")
    table.add_column("URL / Error")

    for item in summary.per_domain:
        status = f"{_STATUS_EMOJI.get(item.status.value, '❓')} {item.status.value}"
        if item.error:
            detail = f"{item.error.kind}: {item.error.message}"
        else:
            detail = item.deployment_url or ""
        table.add_row(item.domain, status, item.phase.value, escape(detail))
    console.print(table)

    for item in summary.per_domain:
        for warning in item.warnings:
            console.print(escape(f"⚠️  [{item.domain}] {warning}"))
        if item.error and item.error.kind in ("FatalExecutorError", "RetryExhaustedError"):
            for suggestion in recovery_suggestions(classify_error(item.error.message)):
                console.print(escape(f"💡 [{item.domain}] {suggestion}"))
        for action in item.unresolved_rollback_actions:
            console.print(escape(
                f"🔧 [{item.domain}] manual cleanup needed: {action.get('kind')} "
                f"{action.get('payload')} ({action.get('error')})"
            ))

    duration = summary.duration_seconds
    console.print(
        f"📊 Completed {summary.completed_domains}/{summary.total_domains}, "
        f"failed {summary.failed_domains}, rolled back {summary.rolled_back_domains}"
        + (f" in {duration:.1f}s" if duration is not None else "")
    )


def handle_deploy_command(args: argparse.Namespace, context: CLIContext) -> int:
    """Handle the deploy subcommand."""
    try:
        edges: List[Tuple[str, str]] = [parse_dependency(v) for v in args.depends]
    except argparse.ArgumentTypeError as exc:
        console.print(f"❌ {escape(str(exc))}")
        return 2

    if args.interactive:
        context.config.interaction.mode = "cli"
    workflow = DeploymentWorkflow(
        context.config,
        interaction_handler=create_handler(context.config.interaction.mode),
    )
    request = DeploymentRequest(
        domains=list(args.domains),
        environment=args.environment,
        concurrency_limit=args.concurrency,
        dry_run=args.dry_run,
        dependency_edges=edges,
        reuse_existing=not args.no_reuse,
        rotate_all=args.rotate_all,
        skip_health_check=args.skip_health_check,
    )

    try:
        summary = workflow.run(request)
    except DeploymentError as exc:
        # 校验失败：没有任何流水线启动
        console.print(f"❌ {escape(exc.message)}")
        return 2

    if args.as_json:
        console.print_json(json.dumps(summary.to_dict(), ensure_ascii=False))
    else:
        print_summary(summary)
    return 0 if summary.success else 1


def handle_audit_command(args: argparse.Namespace, context: CLIContext) -> int:
    """Handle the audit subcommand."""
    workflow = DeploymentWorkflow(context.config)
    try:
        events = workflow.export_audit_log(args.orchestration_id)
    except FileNotFoundError as exc:
        console.print(f"❌ {escape(str(exc))}")
        return 1

    if args.domain:
        events = [e for e in events if e.domain == args.domain]

    if args.as_json:
        console.print_json(json.dumps([e.to_dict() for e in events], ensure_ascii=False))
        return 0

    table = Table(title=f"Audit log {args.orchestration_id}")
    table.add_column("#", justify="right")
    table.add_column("Time", no_wrap=True)
    table.add_column("Event", no_wrap=True)
    table.add_column("Domain")
    table.add_column("Details")
    for event in events:
        table.add_row(
            str(event.sequence),
            event.timestamp.isoformat()[:19].replace("T", " "),
            event.event_type.value,
            event.domain or "-",
            escape(json.dumps(event.details, ensure_ascii=False)[:120]),
        )
    console.print(table)
    return 0


def _run_status(document: dict) -> str:
    states = document.get("domain_states", {}).values()
    statuses = {s.get("status") for s in states}
    if not statuses:
        return "unknown"
    if statuses == {DomainStatus.COMPLETED.value}:
        return "success"
    if statuses & {DomainStatus.PENDING.value, DomainStatus.IN_PROGRESS.value}:
        return "running"
    return "failed"


def handle_logs_command(args: argparse.Namespace, context: CLIContext) -> int:
    """Handle the logs subcommand."""
    state_dir = Path(context.state_dir)

    if not state_dir.exists():
        console.print("📁 No deployment runs found. Run a deployment first.")
        return 0

    run_files = sorted(
        state_dir.glob("orchestration-*.json"), key=lambda p: p.stat().st_mtime, reverse=True
    )
    if not run_files:
        console.print("📁 No deployment runs found.")
        return 0

    table = Table(title=f"Deployment runs in {state_dir}")
    table.add_column("#", justify="right")
    table.add_column("Status", no_wrap=True)
    table.add_column("Environment")
    table.add_column("Domains", justify="right")
    table.add_column("Started")
    table.add_column("Orchestration ID")
    for i, run_file in enumerate(run_files[: args.limit], 1):
        try:
            with open(run_file, "r", encoding="utf-8") as f:
                document = json.load(f)
        except (OSError, json.JSONDecodeError):
            table.add_row(str(i), "❓ error", "?", "?", "?", run_file.stem)
            continue
        status = _run_status(document)
        emoji = {"success": "✅", "failed": "❌", "running": "🔄"}.get(status, "❓")
        table.add_row(
            str(i),
            f"{emoji} {status}",
            document.get("environment", "?"),
            str(len(document.get("domains", []))),
            (document.get("started_at") or "")[:19].replace("T", " "),
            document.get("orchestration_id", run_file.stem),
        )
    console.print(table)
    return 0


def dispatch_command(args: argparse.Namespace, context: CLIContext) -> int:
    if args.command == "deploy":
        return handle_deploy_command(args, context)
    if args.command == "audit":
        return handle_audit_command(args, context)
    if args.command == "logs":
        return handle_logs_command(args, context)
    raise ValueError(f"Unsupported command: {args.command}")


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    context = _build_context(args)
    return dispatch_command(args, context)
