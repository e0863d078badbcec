"""CLI handlers for engine verbs.

Usage:
    iac-orchestrator validate -e <env> [-t <module>]... [--json-output] [--verbose]
    iac-orchestrator plan -e <env> [-t <module>]... [--proposal <id>] [--run-id <id>]
    iac-orchestrator apply -e <env> [-t <module>]... [--proposal <id>] [--auto-approve]
    iac-orchestrator destroy -e <env> [-t <module>]... [--proposal <id>] [--yes]
    iac-orchestrator graph -e <env> [-t <module>]... [--destroy]
    iac-orchestrator locks [-e <env>]
    iac-orchestrator unlock -e <env> -m <module> --operator <name> [--force]
    iac-orchestrator proposal {show,sync,event} --id <id> ...
    iac-orchestrator runs -e <env> [--run-id <id>]
"""

import argparse
import getpass
import json
import logging
import sys
import threading
import time
from pathlib import Path
from typing import Optional

from config import ConfigError, list_environments
from orchestrator.coordinator import RunCoordinator
from orchestrator.errors import CycleDetected, InvalidTransition, LockBusy, UnknownDependency
from orchestrator.gate import EVENT_KINDS, ReviewEvent
from orchestrator.graph import ModuleGraph
from orchestrator.planner import ChangePlanner
from orchestrator.state import APPLY, DESTROY, FAILED, PLAN, RunRequest, RunResult

logger = logging.getLogger(__name__)


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'iac-orchestrator {verb}',
        description=description,
    )
    parser.add_argument(
        '--config-dir', '-C',
        type=Path,
        help='Configuration directory (default: auto-discovered)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    return parser


def _add_env_args(parser: argparse.ArgumentParser) -> None:
    available = list_environments()
    parser.add_argument(
        '--env', '-e',
        required=True,
        help=f'Target environment. Available: {", ".join(available) if available else "none configured"}',
    )
    parser.add_argument(
        '--target', '-t',
        action='append',
        default=[],
        help='Module id to target, with its dependencies; destroy also takes its dependents (can be repeated; default: all)',
    )


def _add_run_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--proposal', '-p',
        help='Originating change proposal (e.g. pull request number)',
    )
    parser.add_argument(
        '--run-id',
        help='Stable run id; resubmitting an id retries that run',
    )
    parser.add_argument(
        '--requester',
        default=getpass.getuser(),
        help='Identity triggering the run (default: current user)',
    )


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _coordinator(args) -> Optional[RunCoordinator]:
    try:
        return RunCoordinator.from_config(args.config_dir)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return None


def _submit(coordinator: RunCoordinator, request: RunRequest) -> RunResult:
    """Run a request in a worker thread so Ctrl-C can cancel between modules."""
    cancel = threading.Event()
    outcome: dict = {}

    def target() -> None:
        try:
            outcome['result'] = coordinator.submit(request, cancel_event=cancel)
        except BaseException as e:  # re-raised in the calling thread
            outcome['error'] = e

    worker = threading.Thread(target=target, name=f'run-{request.run_id}', daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.5)
    except KeyboardInterrupt:
        logger.warning("Interrupted: letting in-flight modules finish, starting no new ones")
        cancel.set()
        worker.join()

    if 'error' in outcome:
        raise outcome['error']
    return outcome['result']


def _print_result(result: RunResult) -> None:
    """Human-readable per-module summary."""
    print()
    print(f"Run {result.run_id} (attempt {result.attempt}): {result.state}")
    if result.error:
        print(f"  Error: {result.error}")
    for module_id, module in sorted(result.modules.items()):
        detail = module.reason or module.error or ''
        diff = f" [{module.diff}]" if module.diff else ''
        print(f"  {module.status:<10} {module_id}{diff}{'  ' + detail if detail else ''}")
    counts = result.summary()
    print(f"  {counts['succeeded']} succeeded, {counts['failed']} failed, {counts['skipped']} skipped")


def _emit_json(verb: str, result: RunResult, duration: float) -> None:
    """Emit structured JSON output."""
    output = {
        'verb': verb,
        'success': result.success,
        'duration_seconds': round(duration, 2),
        **result.to_dict(),
    }
    print(json.dumps(output, indent=2))


def _run_verb(verb: str, args) -> int:
    coordinator = _coordinator(args)
    if coordinator is None:
        return 1

    try:
        request = RunRequest(
            environment=args.env,
            operation=verb,
            targets=args.target,
            auto_approve=getattr(args, 'auto_approve', False),
            proposal_id=args.proposal,
            requester=args.requester,
            run_id=args.run_id or '',
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    start = time.time()
    result = _submit(coordinator, request)
    duration = time.time() - start

    if args.json_output:
        _emit_json(verb, result, duration)
    else:
        _print_result(result)
    return 0 if result.success else 1


def plan_main(argv: list) -> int:
    """Handle 'plan' verb."""
    parser = _common_parser(PLAN, 'Validate and plan modules without mutating anything')
    _add_env_args(parser)
    _add_run_args(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _run_verb(PLAN, args)


def apply_main(argv: list) -> int:
    """Handle 'apply' verb."""
    parser = _common_parser(APPLY, 'Plan and apply modules in dependency order')
    _add_env_args(parser)
    _add_run_args(parser)
    parser.add_argument(
        '--auto-approve',
        action='store_true',
        help='Operator override of the promotion gate (where the environment allows it)',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _run_verb(APPLY, args)


def destroy_main(argv: list) -> int:
    """Handle 'destroy' verb."""
    parser = _common_parser(DESTROY, 'Plan and destroy modules in reverse dependency order')
    _add_env_args(parser)
    _add_run_args(parser)
    parser.add_argument(
        '--auto-approve',
        action='store_true',
        help='Operator override of the promotion gate (where the environment allows it)',
    )
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    # Confirmation for destructive operation
    if not args.yes:
        scope = ', '.join(args.target) if args.target else 'all modules'
        print(f"\nWARNING: This will destroy {scope} in environment '{args.env}'.")
        print("This action cannot be undone.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return 1

    return _run_verb(DESTROY, args)


def validate_main(argv: list) -> int:
    """Handle 'validate' verb.

    Validates every selected module without planning. Structural errors
    (cycles, unknown dependencies) are reported as well.
    """
    parser = _common_parser('validate', 'Validate module declarations and sources')
    _add_env_args(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    coordinator = _coordinator(args)
    if coordinator is None:
        return 1

    try:
        env = coordinator.env_loader(args.env)
        graph = ModuleGraph(coordinator.loader.discover(env.name)).select(args.target)
    except (ConfigError, CycleDetected, UnknownDependency) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    result = RunResult(RunRequest(environment=env.name, operation=PLAN, targets=args.target))
    for module_id in graph.ids:
        result.add_module(module_id)
    planner = ChangePlanner(coordinator.validator, coordinator.runner,
                            max_workers=coordinator.settings.max_workers)
    planner.validate(graph, env, result)
    for module_id, module in result.modules.items():
        if not module.is_terminal:
            result.update(module_id, 'succeed')
    failed = result.with_status(FAILED)

    if args.json_output:
        print(json.dumps({
            'verb': 'validate',
            'success': not failed,
            'environment': env.name,
            'modules': {m: r.to_dict() for m, r in sorted(result.modules.items())},
        }, indent=2))
        return 0 if not failed else 1

    if failed:
        print(f"{len(failed)} module(s) failed validation in '{env.name}':", file=sys.stderr)
        for module_id in failed:
            print(f"  ✗ {result.get_module(module_id).error}", file=sys.stderr)
        return 1

    print(f"Environment '{env.name}' is valid ({len(graph)} module{'s' if len(graph) != 1 else ''})")
    return 0


def graph_main(argv: list) -> int:
    """Handle 'graph' verb: print dependencies and execution order."""
    parser = _common_parser('graph', 'Show the module dependency graph')
    _add_env_args(parser)
    parser.add_argument(
        '--destroy',
        action='store_true',
        help='Show destroy order instead of apply order',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    coordinator = _coordinator(args)
    if coordinator is None:
        return 1

    try:
        graph = ModuleGraph(coordinator.loader.discover(args.env)).select(
            args.target, include_dependents=args.destroy)
    except (ConfigError, CycleDetected, UnknownDependency) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    order = graph.destroy_order() if args.destroy else graph.apply_order()
    if args.json_output:
        print(json.dumps({
            'environment': args.env,
            'order': [n.id for n in order],
            'dependencies': {m: sorted(graph.dependencies(m)) for m in graph.ids},
            'prerequisites': graph.prerequisites,
        }, indent=2))
        return 0

    print(f"{'Destroy' if args.destroy else 'Apply'} order for '{args.env}':")
    for i, node in enumerate(order, 1):
        deps = sorted(graph.dependencies(node.id))
        marker = ' (read-only)' if node.read_only else ''
        print(f"  {i:>3}. {node.id}{marker}{'  <- ' + ', '.join(deps) if deps else ''}")
    return 0


def locks_main(argv: list) -> int:
    """Handle 'locks' verb: list the lock table."""
    parser = _common_parser('locks', 'List module locks')
    parser.add_argument('--env', '-e', help='Only this environment')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    coordinator = _coordinator(args)
    if coordinator is None:
        return 1

    manager = coordinator.locks
    locks = manager.list_locks(args.env)
    if args.json_output:
        print(json.dumps([
            {**lock.to_dict(), 'age': round(lock.age(), 1), 'stale': lock.age() > manager.timeout}
            for lock in locks
        ], indent=2))
        return 0

    if not locks:
        print("No locks held")
        return 0
    for lock in locks:
        age = lock.age()
        state = 'STALE' if age > manager.timeout else 'held'
        print(f"  {state:<6} {lock.environment}/{lock.module_id}  holder={lock.holder}  "
              f"heartbeat={int(age)}s ago")
    return 0


def unlock_main(argv: list) -> int:
    """Handle 'unlock' verb: reclaim a stale lock."""
    parser = _common_parser('unlock', 'Reclaim a stale module lock (logged as an incident)')
    parser.add_argument('--env', '-e', required=True, help='Environment')
    parser.add_argument('--module', '-m', required=True, help='Locked module id')
    parser.add_argument(
        '--operator',
        default=getpass.getuser(),
        help='Operator reclaiming the lock (default: current user)',
    )
    parser.add_argument(
        '--force',
        action='store_true',
        help='Also reclaim a lock that is not stale yet',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    coordinator = _coordinator(args)
    if coordinator is None:
        return 1

    try:
        lock = coordinator.locks.reclaim(args.env, args.module, args.operator, force=args.force)
    except LockBusy as e:
        print(f"Error: {e} and is not stale; use --force to reclaim anyway", file=sys.stderr)
        return 1

    if lock is None:
        print(f"No lock on {args.env}/{args.module}")
        return 0
    print(f"Reclaimed {args.env}/{args.module} from {lock.holder}")
    return 0


def proposal_main(argv: list) -> int:
    """Handle 'proposal' verb: inspect or feed the review state machine."""
    parser = _common_parser('proposal', 'Inspect and update change proposals')
    parser.add_argument('action', choices=['show', 'sync', 'event'], help='show, sync (from GitHub) or event')
    parser.add_argument('--id', required=True, dest='proposal_id', help='Proposal id')
    parser.add_argument('--kind', choices=EVENT_KINDS, help='Event kind (event action)')
    parser.add_argument('--actor', default=getpass.getuser(), help='Event actor (event action)')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    coordinator = _coordinator(args)
    if coordinator is None:
        return 1
    registry = coordinator.proposals

    if args.action == 'sync':
        from actions.review import GitHubReviewSource, ReviewSourceError
        if not coordinator.settings.review_repo:
            print("Error: review_repo is not set in orchestrator.yaml", file=sys.stderr)
            return 1
        try:
            GitHubReviewSource.from_settings(coordinator.settings).sync(registry, args.proposal_id)
        except ReviewSourceError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
    elif args.action == 'event':
        if not args.kind:
            print("Error: --kind is required for 'event'", file=sys.stderr)
            return 1
        try:
            registry.handle(ReviewEvent(args.proposal_id, args.kind, args.actor))
        except InvalidTransition as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    proposal = registry.get(args.proposal_id)
    if proposal is None:
        print(f"Error: Unknown proposal '{args.proposal_id}'", file=sys.stderr)
        return 1

    if args.json_output:
        print(json.dumps(proposal.to_dict(), indent=2))
        return 0
    print(f"Proposal {proposal.id}: {proposal.state.value}")
    if proposal.approvers:
        print(f"  Approved by: {', '.join(sorted(proposal.approvers))}")
    for env_name, state in sorted(proposal.deployments.items()):
        print(f"  {env_name}: {state.value}")
    return 0


def runs_main(argv: list) -> int:
    """Handle 'runs' verb: list or show recorded runs."""
    parser = _common_parser('runs', 'List or show recorded runs')
    parser.add_argument('--env', '-e', required=True, help='Environment')
    parser.add_argument('--run-id', help='Show one run')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    coordinator = _coordinator(args)
    if coordinator is None:
        return 1

    if not args.run_id:
        runs = coordinator.run_log.list_runs(args.env)
        if args.json_output:
            print(json.dumps(runs, indent=2))
        else:
            for run_id in runs:
                print(f"  {run_id}")
        return 0

    result = coordinator.run_log.load(args.env, args.run_id)
    if result is None:
        print(f"Error: No run '{args.run_id}' in '{args.env}'", file=sys.stderr)
        return 1
    if args.json_output:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        _print_result(result)
    return 0
