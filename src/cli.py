#!/usr/bin/env python3
"""CLI entry point for the provisioning engine.

Verbs:
- plan: Show the changes needed to converge state to declarations
- apply: Plan and apply changes
- destroy: Destroy everything recorded in state
- validate: Check declarations without contacting a provider
- output: Evaluate declared outputs against current state
"""

import logging
import sys
from importlib.metadata import PackageNotFoundError, version

VERB_COMMANDS = {
    "plan": "Show planned changes",
    "apply": "Plan and apply changes",
    "destroy": "Destroy all managed instances",
    "validate": "Validate declarations, references and cycles",
    "output": "Show output values from state",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version() -> str:
    """Get the installed package version."""
    try:
        return version('provision-engine')
    except PackageNotFoundError:
        return 'dev'


def print_usage():
    """Print top-level usage showing verb commands."""
    print(f"provision {get_version()}")
    print()
    print("Usage: provision <verb> [options]")
    print()
    print("Commands:")
    for verb, desc in VERB_COMMANDS.items():
        print(f"  {verb:<12} {desc}")
    print()
    print("Run 'provision <verb> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  provision validate -f web.yaml")
    print("  provision plan -f web.yaml")
    print("  provision apply -f web.yaml --yes")
    print("  provision output -f web.yaml --json-output")
    print("  provision destroy -f web.yaml")


def dispatch_verb(verb: str, argv: list) -> int:
    """Dispatch to verb-specific CLI handler.

    Args:
        verb: The verb command (e.g., "plan", "apply")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    from engine import cli as engine_cli

    handlers = {
        "plan": engine_cli.plan_main,
        "apply": engine_cli.apply_main,
        "destroy": engine_cli.destroy_main,
        "validate": engine_cli.validate_main,
        "output": engine_cli.output_main,
    }
    handler = handlers.get(verb)
    if handler is None:
        print(f"Error: Unknown command '{verb}'")
        print(f"Available commands: {', '.join(VERB_COMMANDS)}")
        return 1
    rc: int = handler(argv)
    return rc


def main(argv: list = None) -> int:
    """Main entry point."""
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0 if argv else 1

    if argv[0] == '--version':
        print(f"provision {get_version()}")
        return 0

    return dispatch_verb(argv[0], argv[1:])


if __name__ == '__main__':
    sys.exit(main())
