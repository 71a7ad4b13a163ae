"""
Main orchestrator for Extension Attribute Sync.

This module drives the update executor for a single user or for every row of a
bulk CSV file, owns the Graph and Exchange sessions, and turns the results into
log output and a process exit code.
"""

import os
import sys
import json
import logging
from datetime import datetime
from typing import Dict, Any, List, Optional

from extattr_sync.attributes import filter_attributes, describe_attributes, CLEAR
from extattr_sync.config import load_config, ConfigurationError
from extattr_sync.directory.graph import GraphDirectoryAPI
from extattr_sync.directory.exchange import ExchangeRecipientAPI
from extattr_sync.directory.session import TokenSession, SessionError
from extattr_sync.executor import UpdateExecutor, UpdateOutcome
from extattr_sync.logging_setup import setup_logging, audit_logger
from extattr_sync.notifications import send_bulk_failure_summary, send_failure_notification
from extattr_sync.row_loader import RowLoader, InputError

logger = logging.getLogger(__name__)

# Exit codes
EXIT_SUCCESS = 0
EXIT_UPDATE_FAILED = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_CONNECTION_ERROR = 3
EXIT_INPUT_ERROR = 4
EXIT_UNEXPECTED_ERROR = 5

# Pre-acquired tokens for skip-connect runs
GRAPH_TOKEN_ENV = 'GRAPH_ACCESS_TOKEN'
EXCHANGE_TOKEN_ENV = 'EXCHANGE_ACCESS_TOKEN'


class BulkResult:
    """Aggregate outcome of a bulk run."""

    def __init__(self):
        self.succeeded = 0
        self.failed = 0
        self.outcomes: List[UpdateOutcome] = []

    @property
    def total(self) -> int:
        return self.succeeded + self.failed

    def record(self, outcome: UpdateOutcome):
        self.outcomes.append(outcome)
        if outcome:
            self.succeeded += 1
        else:
            self.failed += 1

    def failures(self) -> List[UpdateOutcome]:
        return [outcome for outcome in self.outcomes if not outcome]


class UpdateOrchestrator:
    """
    Runs single-user and bulk attribute updates.

    Sessions are created here and handed to the API clients; the orchestrator
    decides when each one is established and guarantees the Exchange session is
    attempted at most once per run.
    """

    def __init__(self, config_path: Optional[str] = None, skip_connect: bool = False,
                 connect_mode: Optional[str] = None):
        """
        Initialize orchestrator.

        Args:
            config_path: Path to configuration file
            skip_connect: Do not establish sessions; use tokens supplied in the environment
            connect_mode: Override exchange.connect_mode ('lazy' or 'eager')
        """
        self.config_path = config_path
        self.skip_connect = skip_connect
        self.connect_mode_override = connect_mode

        self.config = None
        self.graph_session = None
        self.exchange_session = None
        self.graph_api = None
        self.exchange_api = None

        self.result = BulkResult()
        self.start_time = None

    @property
    def connect_mode(self) -> str:
        return self.connect_mode_override or self.config['exchange'].get('connect_mode', 'lazy')

    def run_single(self, identifier: str, attributes: Dict[str, Any]) -> int:
        """
        Update one user.

        Args:
            identifier: UPN or object id
            attributes: Attribute name -> value; None clears the attribute

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self._prepare()

            identifier = (identifier or '').strip()
            if not identifier:
                raise InputError("A user identifier is required")

            attribute_map = filter_attributes(attributes or {})
            if not attribute_map:
                raise InputError("No recognized attributes to update")

            logger.info(f"Updating {identifier}: {describe_attributes(attribute_map)}")

            self._create_clients()
            self._connect_primary()

            executor = self._create_executor(connect_secondary_on_demand=not self.skip_connect)
            outcome = executor.execute(identifier, attribute_map)
            self.result.record(outcome)
            self._log_outcome(outcome)

            if outcome:
                return EXIT_SUCCESS
            if outcome.session_failure:
                return EXIT_CONNECTION_ERROR
            return EXIT_UPDATE_FAILED

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        except InputError as e:
            logger.error(f"Input error: {e}")
            return EXIT_INPUT_ERROR
        except SessionError as e:
            logger.error(f"Connection error: {e}")
            return EXIT_CONNECTION_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Update Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def run_bulk(self, csv_path: str) -> int:
        """
        Update every user listed in a CSV file.

        Args:
            csv_path: Path to CSV input

        Returns:
            Exit code (0 if all users succeeded, 1 if any failed, other codes for fatal errors)
        """
        try:
            self._prepare()

            records = RowLoader(self.config.get('input')).load(csv_path)

            self._create_clients()
            self._connect_primary()

            if self.connect_mode == 'eager':
                self._connect_secondary()

            executor = self._create_executor(connect_secondary_on_demand=False)
            total = len(records)

            logger.info(f"Processing {total} users from {csv_path} "
                        f"(Exchange connect mode: {self.connect_mode})")

            for position, record in enumerate(records, start=1):
                outcome = executor.execute(record.identifier, record.attributes)
                self.result.record(outcome)
                self._log_outcome(outcome, position, total)

                if not outcome and not self.exchange_session.establish_attempted:
                    # The first failure triggers the Exchange connection for later users
                    self._connect_secondary()

            self._log_summary()

            if self.result.failed:
                logger.warning(f"Bulk update completed with {self.result.failed} failed users")
                self._send_bulk_summary(csv_path)
                return EXIT_UPDATE_FAILED

            logger.info("Bulk update completed successfully")
            return EXIT_SUCCESS

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        except InputError as e:
            logger.error(f"Input error: {e}")
            return EXIT_INPUT_ERROR
        except SessionError as e:
            logger.error(f"Connection error: {e}")
            self._send_failure_notification("Graph Connection Failed", str(e))
            return EXIT_CONNECTION_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Bulk Update Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _prepare(self):
        """Load configuration and configure logging."""
        self.start_time = datetime.now()
        self._load_configuration()
        setup_logging(self.config.get('logging', {}))

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path, skip_connect=self.skip_connect)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

        if self.connect_mode_override:
            self.config['exchange']['connect_mode'] = self.connect_mode_override

    def _create_clients(self):
        """Create sessions and API clients; nothing is connected yet."""
        tenant = self.config['tenant']
        graph_config = self.config['graph']
        exchange_config = self.config['exchange']

        graph_token = os.getenv(GRAPH_TOKEN_ENV) if self.skip_connect else None
        exchange_token = os.getenv(EXCHANGE_TOKEN_ENV) if self.skip_connect else None

        self.graph_session = TokenSession('graph', tenant, graph_config['scope'], graph_token)
        self.exchange_session = TokenSession('exchange', tenant, exchange_config['scope'], exchange_token)

        self.graph_api = GraphDirectoryAPI(graph_config, self.graph_session)

        if exchange_config.get('enabled', True):
            self.exchange_api = ExchangeRecipientAPI(exchange_config, self.exchange_session,
                                                     tenant.get('tenant_id'))
        else:
            logger.info("Exchange fallback disabled by configuration")
            self.exchange_api = None

    def _create_executor(self, connect_secondary_on_demand: bool) -> UpdateExecutor:
        return UpdateExecutor(
            self.graph_api,
            self.exchange_api,
            error_config=self.config.get('error_handling', {}),
            connect_secondary_on_demand=connect_secondary_on_demand
        )

    def _connect_primary(self):
        """
        Establish the Graph session.

        Raises:
            SessionError: If no Graph session can be obtained
        """
        if self.skip_connect:
            if not self.graph_session.is_active():
                raise SessionError(f"--skip-connect requires a Graph token in {GRAPH_TOKEN_ENV}")
            logger.info("Using pre-authenticated Graph session")
            return

        try:
            self.graph_session.establish()
        except SessionError:
            audit_logger.log_session_event('graph', 'connect', False)
            raise
        audit_logger.log_session_event('graph', 'connect', True)

    def _connect_secondary(self) -> bool:
        """
        Establish the Exchange session once per run.

        Failure is logged, not raised; later fallbacks in the run stay unavailable.

        Returns:
            True if an Exchange session is active
        """
        if self.exchange_api is None:
            return False

        session = self.exchange_session
        if session.is_active():
            return True

        if session.establish_attempted:
            return False

        if self.skip_connect:
            session.establish_attempted = True
            session.last_error = f"no token in {EXCHANGE_TOKEN_ENV}"
            logger.warning(f"Exchange fallback unavailable: --skip-connect set and no {EXCHANGE_TOKEN_ENV}")
            return False

        logger.info("Connecting Exchange session for fallback updates")
        try:
            session.establish()
        except SessionError as e:
            audit_logger.log_session_event('exchange', 'connect', False)
            logger.error(f"Could not connect Exchange, fallback unavailable for this run: {e}")
            return False

        audit_logger.log_session_event('exchange', 'connect', True)
        return True

    def _log_outcome(self, outcome: UpdateOutcome, position: Optional[int] = None,
                     total: Optional[int] = None):
        prefix = f"[{position}/{total}] " if position is not None else ''
        if outcome:
            logger.info(f"{prefix}Updated {outcome.identifier} via {outcome.backend}")
        else:
            logger.error(f"{prefix}Failed to update {outcome.identifier}: {outcome.error}")

        if position is not None:
            logger.info(f"Progress: {position}/{total} processed, "
                        f"{self.result.succeeded} succeeded, {self.result.failed} failed")

    def _log_summary(self):
        """Log final bulk statistics."""
        runtime = (datetime.now() - self.start_time).total_seconds() if self.start_time else 0

        backends = {}
        for outcome in self.result.outcomes:
            if outcome:
                backends[outcome.backend] = backends.get(outcome.backend, 0) + 1

        logger.info("=== Update Summary ===")
        logger.info(f"Total runtime: {runtime:.2f} seconds")
        logger.info(f"Succeeded: {self.result.succeeded}")
        logger.info(f"Failed: {self.result.failed}")
        logger.info(f"Total: {self.result.total}")
        for backend, count in sorted(backends.items()):
            logger.info(f"  via {backend}: {count}")

    def _send_bulk_summary(self, source: str):
        try:
            send_bulk_failure_summary(self.result, self.config.get('notifications', {}), source)
        except Exception as e:
            logger.error(f"Failed to send bulk summary notification: {e}")

    def _send_failure_notification(self, title: str, error_message: str):
        if not self.config:
            return
        try:
            send_failure_notification(title, error_message, self.config.get('notifications', {}))
        except Exception as e:
            logger.error(f"Failed to send failure notification: {e}")

    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration and whether each session can be established.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        self._create_clients()
        sessions = [self.graph_session]
        if self.exchange_api is not None:
            sessions.append(self.exchange_session)

        for session in sessions:
            try:
                if self.skip_connect:
                    if not session.is_active():
                        raise SessionError("no pre-acquired token")
                else:
                    session.establish()
                health_status['checks'][session.name] = {
                    'status': 'pass',
                    'message': f'{session.name} session available'
                }
            except SessionError as e:
                health_status['checks'][session.name] = {
                    'status': 'fail',
                    'message': f'{session.name} session failed: {e}'
                }
                health_status['status'] = 'unhealthy'

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        for api in (self.graph_api, self.exchange_api):
            if api:
                api.close_connection()


def parse_attribute_arguments(set_values: Optional[List[str]], clear_names: Optional[List[str]],
                              attributes_json: Optional[str]) -> Dict[str, Any]:
    """
    Build the single-mode attribute map from command line arguments.

    Args:
        set_values: 'name=value' strings; a bare 'name' clears the attribute
        clear_names: Attribute names to clear
        attributes_json: JSON object of name -> value (null clears)

    Returns:
        Attribute name -> value mapping (unfiltered)

    Raises:
        InputError: If the JSON is malformed or a value is not a string or null
    """
    attributes = {}

    if attributes_json:
        try:
            parsed = json.loads(attributes_json)
        except json.JSONDecodeError as e:
            raise InputError(f"Invalid --attributes JSON: {e}")
        if not isinstance(parsed, dict):
            raise InputError("--attributes must be a JSON object")
        for name, value in parsed.items():
            if value is not None and not isinstance(value, str):
                raise InputError(f"--attributes value for '{name}' must be a string or null, "
                                 f"got {json.dumps(value)}")
        attributes.update(parsed)

    for item in set_values or []:
        name, sep, value = item.partition('=')
        attributes[name.strip()] = value if sep else CLEAR

    for name in clear_names or []:
        attributes[name.strip()] = CLEAR

    return attributes


def main():
    """Main entry point for the application."""
    import argparse

    parser = argparse.ArgumentParser(description='Update Entra ID extension attributes')
    parser.add_argument('--config', '-c', help='Path to configuration file')

    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument('--user', '-u', help='UPN or object id of a single user to update')
    mode.add_argument('--csv', help='CSV file with one row per user (bulk mode)')
    mode.add_argument('--health-check', action='store_true',
                      help='Check configuration and session availability')

    parser.add_argument('--set', dest='set_values', action='append', metavar='NAME=VALUE',
                        help='Set an extension attribute (single mode, repeatable)')
    parser.add_argument('--clear', dest='clear_names', action='append', metavar='NAME',
                        help='Clear an extension attribute (single mode, repeatable)')
    parser.add_argument('--attributes', help='JSON object of attributes (single mode)')
    parser.add_argument('--skip-connect', action='store_true',
                        help=f'Do not sign in; use tokens from {GRAPH_TOKEN_ENV} and {EXCHANGE_TOKEN_ENV}')
    parser.add_argument('--eager-fallback', action='store_true',
                        help='Connect Exchange at start of a bulk run instead of after the first failure')

    args = parser.parse_args()

    orchestrator = UpdateOrchestrator(
        config_path=args.config,
        skip_connect=args.skip_connect,
        connect_mode='eager' if args.eager_fallback else None
    )

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.csv:
        sys.exit(orchestrator.run_bulk(args.csv))

    else:
        try:
            attributes = parse_attribute_arguments(args.set_values, args.clear_names, args.attributes)
        except InputError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(EXIT_INPUT_ERROR)
        sys.exit(orchestrator.run_single(args.user, attributes))


if __name__ == "__main__":
    main()
