"""Command-line entry point."""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from lambda_e2e.aws import AwsClients
from lambda_e2e.config import HarnessSettings
from lambda_e2e.errors import HarnessError
from lambda_e2e.resources import sweep_orphans
from lambda_e2e.runner import HarnessRunner

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_TEST_FAILURE = 1
EXIT_FATAL = 2


def configure_logging(results_dir: Path, verbose: bool = False) -> None:
    results_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(results_dir / 'harness.log'),
        ],
        force=True,
    )
    # botocore is chatty at DEBUG
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='lambda-e2e',
        description='Run end-to-end tests against a deployed Lambda function',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Unit scenarios against an explicit function
  lambda-e2e run unit --function my-service-dev

  # Everything, discovering the function by name pattern
  FUNCTION_PATTERN=my-service lambda-e2e run all

  # Remove resources a failed teardown left behind
  lambda-e2e sweep 42-1a2b3c4
        """
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--verbose', action='store_true', help='Enable verbose logging')
    common.add_argument('--region', help='AWS region (default: AWS_REGION or us-east-1)')
    subparsers = parser.add_subparsers(dest='command', required=True)

    run = subparsers.add_parser('run', parents=[common], help='Run a test phase')
    run.add_argument('phase', choices=['unit', 'integration', 'all'], help='Test phase to run')
    run.add_argument('--function', dest='target_function', help='Function name or ARN (overrides --pattern)')
    run.add_argument('--pattern', dest='function_pattern', help='Substring or glob used to discover the function')
    run.add_argument('--url', dest='function_url', help='Invoke through this HTTP endpoint instead of the Lambda API')
    run.add_argument('--results-dir', help='Directory for reports (default: RESULTS_DIR or test-results)')
    run.add_argument('--scenarios', dest='scenarios_file', help='Unit scenario definitions (JSON)')
    run.add_argument('--workflows', dest='workflows_file', help='Integration workflow definitions (JSON)')
    run.add_argument('--skip-logs', action='store_true', help='Do not query CloudWatch Logs')

    sweep = subparsers.add_parser('sweep', parents=[common], help='Delete ephemeral resources left behind by a session')
    sweep.add_argument('session_id', help='Run id of the session to sweep')

    return parser


def _run(args) -> int:
    settings = HarnessSettings.from_env(
        region=args.region,
        target_function=args.target_function,
        function_pattern=args.function_pattern,
        function_url=args.function_url,
        results_dir=args.results_dir,
        scenarios_file=args.scenarios_file,
        workflows_file=args.workflows_file,
    )
    configure_logging(settings.results_dir, args.verbose)

    runner = HarnessRunner(settings, collect_logs=not args.skip_logs)
    phase_results = runner.run(args.phase)

    failed = [result for phase in phase_results for result in phase.failures]
    if failed:
        logger.error(f"Run {runner.session.run_id} completed with {len(failed)} failed tests:")
        for result in failed:
            logger.error(f"  ✗ {result.name}: {result.reason}")
        return EXIT_TEST_FAILURE

    logger.info(f"Run {runner.session.run_id} completed successfully!")
    return EXIT_OK


def _sweep(args) -> int:
    settings = HarnessSettings.from_env(region=args.region)
    configure_logging(settings.results_dir, args.verbose)

    clients = AwsClients(settings.region)
    report = sweep_orphans(args.session_id, clients.s3, clients.dynamodb)
    logger.info(f"Deleted {len(report['deleted'])} resources, {len(report['failed'])} failed, "
                f"{len(report['skipped'])} skipped (other session)")
    return EXIT_TEST_FAILURE if report['failed'] else EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        if args.command == 'sweep':
            return _sweep(args)
        return _run(args)
    except HarnessError as e:
        logger.error(f"Fatal error ({type(e).__name__}): {e}")
        return EXIT_FATAL


if __name__ == '__main__':
    sys.exit(main())
