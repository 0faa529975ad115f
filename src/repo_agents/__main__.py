"""repo-agents CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger("repo_agents")

RUN_STAGES = ["preflight", "route", "validate", "gate", "execute", "outputs", "audit"]


# ── compile / validate ───────────────────────────────────────────────────────


def _compile(args) -> int:
    from repo_agents.config import load_settings
    from repo_agents.errors import CompileError
    from repo_agents.pipeline import PipelineCompiler, dump, write_workflow

    try:
        settings = load_settings(args.repo_root)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    agents_dir = settings.agents_path(args.repo_root)
    try:
        graph = PipelineCompiler(settings).compile_directory(agents_dir)
    except CompileError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        for line in exc.format_problems():
            print(f"  {line}", file=sys.stderr)
        return 1

    if args.dry_run:
        print(dump(graph, runner=settings.runner), end="")
        return 0

    output = args.output or args.repo_root / settings.workflow_path
    write_workflow(graph, output, runner=settings.runner)
    print(f"Compiled {len(graph.entries)} agent(s) into {output}")
    return 0


def _validate(args) -> int:
    from repo_agents.config import load_settings
    from repo_agents.discovery import discover_agents

    try:
        settings = load_settings(args.repo_root)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    result = discover_agents(settings.agents_path(args.repo_root))
    if result.error is not None:
        print(f"Warning: {result.error}", file=sys.stderr)
        return 0
    if not result.results:
        print("No agent definitions found")
        return 0

    errors = 0
    for parsed in result.results:
        if not parsed.diagnostics:
            print(f"ok    {parsed.path}")
            continue
        for diag in parsed.diagnostics:
            errors += diag.is_error
            print(f"{diag.severity.value:<5} {parsed.path}: {diag}")

    print(f"\n{len(result.results)} file(s), {errors} error(s)")
    return 1 if errors else 0


# ── run <stage> ──────────────────────────────────────────────────────────────


def _event(args):
    """The triggering event, from the runner's environment."""
    from repo_agents.models import RepositoryEvent

    event_name = os.environ.get("GITHUB_EVENT_NAME", "")
    event_path = os.environ.get("GITHUB_EVENT_PATH")
    actor = os.environ.get("GITHUB_ACTOR") or None
    dispatch_agent = os.environ.get("REPO_AGENTS_DISPATCH_AGENT") or None
    if event_path and Path(event_path).exists():
        return RepositoryEvent.from_file(
            event_name, event_path, actor=actor, dispatch_agent=dispatch_agent
        )
    logger.warning("No event payload found; routing %s with an empty payload", event_name or "event")
    return RepositoryEvent.from_payload(event_name, {}, actor=actor, dispatch_agent=dispatch_agent)


def _client(settings):
    """A GitHub client for the current repository, or None when unconfigured."""
    from repo_agents.github_client import client_from_settings

    creds = settings.credentials
    if not settings.repository or not (creds.token or creds.use_app):
        logger.warning("No repository or GitHub credentials; platform queries are disabled")
        return None
    return client_from_settings(settings)


def _load(args):
    from repo_agents.parser import load_agent

    result = load_agent(args.repo_root / args.agent)
    if not result.ok:
        for diag in result.errors:
            logger.error("%s: %s", args.agent, diag)
        return None
    return result.definition


async def _run_stage(args, settings) -> int:
    from repo_agents.actions import set_outputs
    from repo_agents.artifacts import EXECUTION_FILE, VERDICT_FILE, ArtifactStore
    from repo_agents.errors import PreflightError
    from repo_agents.models import ValidationVerdict
    from repo_agents.platform import GitHubPlatform
    from repo_agents.stages import (
        ClaudeCodeExecutor,
        ExecutionResult,
        ExecutionStatus,
        GitHubContextCollector,
        MutationHandlerRegistry,
        OutputStatus,
        ProgressReporter,
        read_gate,
        run_audit,
        run_execute,
        run_outputs,
        run_preflight,
        run_route,
        run_validate,
    )

    store = ArtifactStore(settings.artifacts_dir)

    if args.stage == "preflight":
        try:
            result = await run_preflight(settings)
        except PreflightError as exc:
            logger.error("%s", exc)
            return 1
        set_outputs(result.outputs())
        return 0

    if args.stage == "gate":
        ok, reason = read_gate(store, args.agent_slug, args.require)
        if not ok:
            logger.info("Nothing to do for %s: %s", args.agent_slug, reason)
        set_outputs({"should-run": "true" if ok else "false", "reason": reason})
        return 0

    client = _client(settings)
    if client is not None:
        await client.start()
    try:
        owner, repo = settings.owner_repo if client is not None else ("", "")
        platform = (
            GitHubPlatform(client, owner, repo, run_id=settings.run_id) if client is not None else None
        )
        progress = (
            ProgressReporter(client, owner, repo, run_id=settings.run_id, run_url=settings.run_url)
            if client is not None
            else None
        )

        if args.stage == "route":
            route = await run_route(settings.agents_path(args.repo_root), _event(args), platform)
            set_outputs(route.outputs())
            return 0

        if args.stage == "validate":
            verdict = await run_validate(
                settings,
                args.repo_root / args.agent,
                _event(args),
                store,
                platform=platform,
                automation_identity=args.automation_identity or None,
                progress=progress,
            )
            if not verdict.should_run:
                logger.info("Skipping %s: %s", verdict.agent, verdict.skip_reason)
            set_outputs(
                {
                    "should-run": "true" if verdict.should_run else "false",
                    "skip-reason": verdict.skip_reason or "",
                }
            )
            return 0

        agent = _load(args)
        if agent is None:
            return 0 if args.stage == "audit" else 1

        if args.stage == "execute":
            executor = ClaudeCodeExecutor(
                timeout_minutes=agent.timeout.execution, cwd=args.repo_root
            )
            collector = GitHubContextCollector(client, owner, repo) if client is not None else None
            result = await run_execute(
                agent,
                store.read(agent.slug, VERDICT_FILE, ValidationVerdict),
                store,
                executor,
                collector=collector,
                progress=progress,
            )
            set_outputs({"status": result.status.value})
            return 1 if result.status == ExecutionStatus.FAILURE else 0

        if args.stage == "outputs":
            registry = MutationHandlerRegistry(client, owner, repo)
            result = await run_outputs(
                agent,
                args.kind,
                store.read(agent.slug, EXECUTION_FILE, ExecutionResult),
                store,
                registry,
            )
            return 1 if result.status == OutputStatus.FAILURE else 0

        if args.stage == "audit":
            await run_audit(agent, store, settings, github=client, progress=progress)
            return 0
    finally:
        if client is not None:
            await client.close()

    raise ValueError(f"Unknown stage: {args.stage}")


def _run(args) -> int:
    from repo_agents.config import load_settings

    try:
        settings = load_settings(args.repo_root)
    except ValueError as exc:
        logger.error("%s", exc)
        return 1
    if args.artifacts_dir:
        settings.artifacts_dir = str(args.artifacts_dir)
    return asyncio.run(_run_stage(args, settings))


# ── Argument parsing ─────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="repo-agents",
        description="Compile repository agent definitions into a GitHub Actions pipeline",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    repo_root = argparse.ArgumentParser(add_help=False)
    repo_root.add_argument(
        "--repo-root",
        type=Path,
        default=Path("."),
        help="Path to the repository root (default: current directory)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # repo-agents compile
    compile_parser = subparsers.add_parser(
        "compile", parents=[repo_root], help="Compile agent definitions into a workflow file"
    )
    compile_parser.add_argument(
        "--output",
        type=Path,
        help="Workflow file to write (default: .github/workflows/ai-agents.yml)",
    )
    compile_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the workflow instead of writing it",
    )

    # repo-agents validate
    subparsers.add_parser(
        "validate", parents=[repo_root], help="Check every agent definition and report problems"
    )

    # repo-agents run <stage>
    run_parser = subparsers.add_parser(
        "run", parents=[repo_root], help="Run one pipeline stage (used by the generated workflow)"
    )
    run_parser.add_argument("stage", choices=RUN_STAGES)
    run_parser.add_argument("--agent", type=Path, help="Path to the agent definition")
    run_parser.add_argument("--agent-slug", help="Agent slug (gate)")
    run_parser.add_argument(
        "--require", choices=["admitted", "executed"], default="admitted", help="Gate condition"
    )
    run_parser.add_argument("--kind", help="Output kind (outputs)")
    run_parser.add_argument("--automation-identity", help="Bot login resolved by preflight")
    run_parser.add_argument("--artifacts-dir", type=Path, help="Override the artifacts directory")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    load_dotenv(args.repo_root / ".env")

    if args.command == "compile":
        return _compile(args)
    if args.command == "validate":
        return _validate(args)

    needs_agent = {"validate", "execute", "outputs", "audit"}
    if args.stage in needs_agent and args.agent is None:
        parser.error(f"run {args.stage} requires --agent")
    if args.stage == "gate" and not args.agent_slug:
        parser.error("run gate requires --agent-slug")
    if args.stage == "outputs" and not args.kind:
        parser.error("run outputs requires --kind")
    return _run(args)


if __name__ == "__main__":
    sys.exit(main())
