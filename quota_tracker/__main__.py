import argparse
import asyncio
import logging
import sys

from .config import load_config, load_learning_state, save_learning_state
from .formatter import format_usage_simple
from .models import QuotaAggregate
from .orchestrator import UsageOrchestrator


async def main() -> None:
    parser = argparse.ArgumentParser(
        description="Fetch quota usage for every configured API account."
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to configuration file (default: ~/.quota_tracker_config.json)",
    )
    parser.add_argument(
        "--state",
        default=None,
        help="Path to learned reset state (default: ~/.quota_tracker_state.json)",
    )
    parser.add_argument(
        "--account",
        default=None,
        help="Refresh a single account by id",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log provider requests to stderr",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("\nPlease create a config file with the following structure:", file=sys.stderr)
        print('''
{
  "accounts": [
    {
      "id": "work-kimi",
      "name": "Work",
      "provider": "kimi",
      "api_key": "your-api-key"
    }
  ]
}
''', file=sys.stderr)
        sys.exit(1)

    orchestrator = UsageOrchestrator(
        accounts=config.accounts,
        learning_state=load_learning_state(args.state),
        timeout=config.timeout,
    )

    usages: list[QuotaAggregate] = []
    if args.account:
        print(f"Fetching usage for {args.account}...", file=sys.stderr)
        usage = await orchestrator.fetch_one(args.account)
        if usage is None:
            print(f"Unknown or disabled account: {args.account}", file=sys.stderr)
        else:
            usages.append(usage)
    else:
        print(f"Fetching usage for {len(config.accounts)} accounts...", file=sys.stderr)
        results = await orchestrator.fetch_all()
        usages = [usage for usage in results or [] if usage is not None]

    save_learning_state(orchestrator.learning_state, args.state)

    if usages:
        print(format_usage_simple(usages))
    if not any(not usage.has_error for usage in usages):
        print("No usage data retrieved.", file=sys.stderr)
        sys.exit(1)


def cli() -> None:
    """Synchronous entry point for CLI."""
    asyncio.run(main())


if __name__ == "__main__":
    asyncio.run(main())
