"""CLI handlers for engine verb commands (plan, apply, destroy, validate, output).

Usage:
    provision plan -f <declarations> [--json-output] [--verbose]
    provision apply -f <declarations> [--dry-run] [--yes] [--json-output]
    provision destroy -f <declarations> [--yes]
    provision validate -f <declarations>
    provision output -f <declarations> [--show-sensitive]
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from config import ConfigError, EngineConfig, load_engine_config
from declaration import DeclarationSet, load_declarations
from engine.errors import EngineError
from engine.executor import ApplyEngine, evaluate_outputs
from engine.graph import DependencyGraph
from engine.plan import CREATE, DESTROY, NO_OP, UPDATE, Plan, Planner, describe_summary, render_value
from engine.resolver import resolve
from engine.state import FileStateStore
from providers import build_provider
from reporting.report import ApplyReport

logger = logging.getLogger(__name__)

_SYMBOLS = {CREATE: '+', UPDATE: '~', DESTROY: '-', NO_OP: ' '}


def _common_parser(verb: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'provision {verb}',
        description=f'{verb.capitalize()} infrastructure from declarations',
    )
    parser.add_argument(
        '--file', '-f',
        help='Path to declarations file (YAML or JSON)',
    )
    parser.add_argument(
        '--declarations-json',
        help='Inline declarations JSON',
    )
    parser.add_argument(
        '--config', '-c',
        help='Engine config file (default: $PROVISION_CONFIG or ./engine.yaml)',
    )
    parser.add_argument(
        '--state-dir',
        help='Directory holding state records (overrides config)',
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


def _add_apply_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    parser.add_argument(
        '--concurrency',
        type=int,
        help='Maximum provider operations in flight (overrides config)',
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


def _load_declarations_and_config(args) -> tuple[DeclarationSet, EngineConfig]:
    """Load declarations and engine config from parsed args.

    Raises:
        SystemExit: On load errors
    """
    if not args.file and not args.declarations_json:
        print("Error: specify declarations with -f or --declarations-json", file=sys.stderr)
        sys.exit(1)

    try:
        declarations = load_declarations(file_path=args.file, json_str=args.declarations_json)
    except ConfigError as e:
        print(f"Error loading declarations: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        config = load_engine_config(args.config)
        if args.state_dir:
            config.state_dir = Path(args.state_dir)
        if getattr(args, 'concurrency', None) is not None:
            if args.concurrency < 1:
                raise ConfigError(f"--concurrency must be >= 1, got {args.concurrency}")
            config.concurrency = args.concurrency
    except ConfigError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    return declarations, config


def _plan(args, destroy: bool = False) -> tuple[Plan, EngineConfig, FileStateStore, Planner]:
    """Compute a plan, exiting with a message on configuration errors."""
    declarations, config = _load_declarations_and_config(args)
    store = FileStateStore(config.state_dir)
    planner = Planner(build_provider(config.provider), store)
    try:
        plan = planner.plan(declarations, destroy=destroy)
    except EngineError as e:
        print(f"Error planning '{declarations.name}': {e}", file=sys.stderr)
        sys.exit(1)
    return plan, config, store, planner


def _print_plan(plan: Plan, verbose: bool = False) -> None:
    """Print a human-readable plan."""
    verb = 'Destroy' if plan.destroy else 'Plan'
    print(f"\n{verb}: {plan.declarations.name}")
    for change in plan.changes:
        if change.kind == NO_OP and not verbose:
            continue
        symbol = _SYMBOLS[change.kind]
        note = change.kind
        if change.replace:
            order = 'create before destroy' if change.replace_before_destroy else 'destroy before create'
            note = f"replace: {change.kind} ({order})"
        elif change.deposed:
            note = f"destroy deposed object {change.provider_id}"
        print(f"  {symbol} {change.instance_key} [{change.resource_type}] {note}")
        if change.kind in (CREATE, UPDATE) and change.changed_attributes:
            for name in change.changed_attributes:
                if name in change.desired_attributes:
                    value = json.dumps(render_value(change.desired_attributes[name]), default=str)
                    print(f"      {name} = {value}")
    print(f"\n{describe_summary(plan.summary())}")


def _confirm(message: str) -> bool:
    print(f"\n{message}")
    response = input("Continue? [y/N] ").strip().lower()
    return response == 'y'


def _finish(report: ApplyReport, config: EngineConfig, json_output: bool) -> int:
    """Write report files, print results, return the exit code."""
    if config.report_dir:
        for path in report.write(config.report_dir):
            logger.info(f"Report written to {path}")

    if json_output:
        print(json.dumps(report.to_dict(), indent=2, default=str))
    else:
        failed = [e for e in report.entries if e.outcome == 'failed']
        for entry in failed:
            print(f"  ✗ {entry.instance_key} ({entry.kind}): {entry.error}", file=sys.stderr)
        if report.fatal_error:
            print(f"Fatal: {report.fatal_error}; resolve manually before re-running", file=sys.stderr)
        if report.outputs:
            print("\nOutputs:")
            for name, value in report.display_outputs().items():
                print(f"  {name} = {json.dumps(value, default=str)}")
    return 0 if report.success else 1


def plan_main(argv: list) -> int:
    """Handle 'plan' verb."""
    parser = _common_parser('plan')
    parser.add_argument(
        '--destroy',
        action='store_true',
        help='Plan destruction of everything in state',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    plan, _, _, _ = _plan(args, destroy=args.destroy)
    if args.json_output:
        print(json.dumps(plan.to_dict(), indent=2, default=str))
    else:
        _print_plan(plan, verbose=args.verbose)
    return 0


def apply_main(argv: list) -> int:
    """Handle 'apply' verb."""
    parser = _common_parser('apply')
    _add_apply_options(parser)
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Show the plan without applying it',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    plan, config, store, planner = _plan(args)
    if args.dry_run:
        if args.json_output:
            print(json.dumps(plan.to_dict(), indent=2, default=str))
        else:
            _print_plan(plan, verbose=args.verbose)
        return 0

    if not args.json_output:
        _print_plan(plan)
    if plan.has_changes and not args.yes:
        if not _confirm(f"This will apply {describe_summary(plan.summary())}."):
            print("Aborted.")
            return 1

    engine = ApplyEngine(planner.provider, store, config)
    report = engine.apply(plan)
    return _finish(report, config, args.json_output)


def destroy_main(argv: list) -> int:
    """Handle 'destroy' verb."""
    parser = _common_parser('destroy')
    _add_apply_options(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    plan, config, store, planner = _plan(args, destroy=True)
    if not plan.has_changes:
        print("Nothing to destroy.")
        return 0

    if not args.json_output:
        _print_plan(plan)
    # Confirmation for destructive operation
    if not args.yes:
        count = plan.summary()[DESTROY]
        if not _confirm(f"WARNING: This will destroy {count} instance(s) of "
                        f"'{plan.declarations.name}'. This action cannot be undone."):
            print("Aborted.")
            return 1

    logger.info(f"Destroying infrastructure of '{plan.declarations.name}'")
    engine = ApplyEngine(planner.provider, store, config)
    report = engine.apply(plan)
    return _finish(report, config, args.json_output)


def validate_main(argv: list) -> int:
    """Handle 'validate' verb.

    Checks declaration structure, references, counts and cycles without
    contacting a provider.
    """
    parser = argparse.ArgumentParser(
        prog='provision validate',
        description='Validate declarations, references and dependency cycles',
    )
    parser.add_argument(
        '--file', '-f',
        help='Path to declarations file (YAML or JSON)',
    )
    parser.add_argument(
        '--declarations-json',
        help='Inline declarations JSON',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Show the resolved create and destroy order',
    )
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if not args.file and not args.declarations_json:
        print("Error: specify declarations with -f or --declarations-json", file=sys.stderr)
        return 1

    try:
        declarations = load_declarations(file_path=args.file, json_str=args.declarations_json)
        graph = DependencyGraph(resolve(declarations).instances)
    except (ConfigError, EngineError) as e:
        print(f"Declarations are invalid: {e}", file=sys.stderr)
        return 1

    if args.verbose:
        print("Create order:")
        for node in graph.create_order():
            print(f"  {node.depth}  {node.key}")
        print("Destroy order:")
        for node in graph.destroy_order():
            print(f"  {node.key}")
    count = len(graph)
    print(f"Declarations '{declarations.name}' are valid "
          f"({count} instance{'s' if count != 1 else ''})")
    return 0


def output_main(argv: list) -> int:
    """Handle 'output' verb: evaluate outputs against current state."""
    parser = _common_parser('output')
    parser.add_argument(
        '--show-sensitive',
        action='store_true',
        help='Print values of outputs marked sensitive',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    plan, _, store, _ = _plan(args)
    try:
        outputs = evaluate_outputs(plan, store)
    except EngineError as e:
        print(f"Error evaluating outputs: {e}", file=sys.stderr)
        return 1

    sensitive = {o.name for o in plan.declarations.outputs if o.sensitive}
    rendered = {
        name: '(sensitive)' if name in sensitive and not args.show_sensitive else render_value(value)
        for name, value in outputs.items()
    }
    if args.json_output:
        print(json.dumps(rendered, indent=2, default=str))
    else:
        for name, value in rendered.items():
            print(f"{name} = {json.dumps(value, default=str)}")
    return 0
