"""
Connectivity check command line entry point.

Connects with the configured retry policy, prints the health report as JSON and,
optionally, counts the documents of one collection through the operation executor.
Exits 0 when the database is healthy and 1 otherwise.
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Optional

from campus_db.config.settings import DatabaseSettings, RetryPolicy
from campus_db.data import DatabaseServices
from campus_db.data.exceptions import DatabaseException
from campus_db.monitoring.logging import get_logger, mask_uri, setup_structured_logging

logger = get_logger('campus_db.cli')


async def run_check(services: DatabaseServices,
                    collection: Optional[str] = None) -> Dict[str, Any]:
    """
    Connect, collect the health report and optionally count a collection.

    Connection failures are reported in the result rather than raised.
    """
    report: Dict[str, Any] = {'uri': mask_uri(services.settings.uri)}
    try:
        try:
            await services.start(install_signal_handlers=False)
        except Exception as error:
            report.update(await services.health())
            report['healthy'] = False
            report['error'] = mask_uri(str(error)) if str(error) else type(error).__name__
            return report

        report.update(await services.health())
        if collection and report['healthy']:
            handle = services.get_collection(collection)
            report['collection'] = collection
            try:
                report['count'] = await services.executor.count_documents(handle, {})
            except Exception as error:
                report['healthy'] = False
                report['error'] = mask_uri(str(error)) if str(error) else type(error).__name__
    finally:
        await services.stop()
    return report


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='campus-db-check',
        description="Check MongoDB connectivity with the configured retry policy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  campus-db-check                         # Connect and print health
  campus-db-check --collection courses    # Also count documents in 'courses'
  campus-db-check --json --max-retries 0  # One attempt, compact JSON output
        """
    )
    parser.add_argument(
        "--collection",
        metavar="NAME",
        help="Count documents in this collection through the operation executor"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print compact single-line JSON"
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=None,
        help="Override the connection retry budget"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging"
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for ``campus-db-check``."""
    args = build_parser().parse_args(argv)

    try:
        settings = DatabaseSettings.from_env()
    except DatabaseException as error:
        print(json.dumps({'healthy': False, 'error': error.message}))
        return 1

    setup_structured_logging(settings.environment, debug=args.verbose or settings.debug)

    if args.max_retries is not None:
        policy = settings.connect_policy
        settings.connect_policy = RetryPolicy(
            max_retries=args.max_retries,
            base_delay=policy.base_delay,
            max_delay=policy.max_delay,
            operation_timeout=policy.operation_timeout,
        )

    services = DatabaseServices(settings)
    try:
        report = asyncio.run(run_check(services, args.collection))
    except KeyboardInterrupt:
        logger.info("Connectivity check interrupted by user")
        return 130

    if args.json:
        print(json.dumps(report, default=str))
    else:
        print(json.dumps(report, indent=2, default=str))
    return 0 if report.get('healthy') else 1


if __name__ == "__main__":
    sys.exit(main())
