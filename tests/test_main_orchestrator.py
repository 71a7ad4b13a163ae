#!/usr/bin/env python3
"""
Unit tests for the update orchestrator.

Tests single-user and bulk runs end to end with mock directory clients and
fake sessions, including lazy and eager Exchange connection.
"""

import os
import sys
import shutil
import tempfile
import unittest
from unittest.mock import Mock, patch

# Add parent directory to path to import extattr_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from extattr_sync.attributes import CLEAR
from extattr_sync.config import ConfigurationError
from extattr_sync.directory.base import DirectoryAPIError
from extattr_sync.directory.graph import AuthorityConflictError
from extattr_sync.directory.session import SessionError
from extattr_sync.main import (
    UpdateOrchestrator, BulkResult, parse_attribute_arguments,
    EXIT_SUCCESS, EXIT_UPDATE_FAILED, EXIT_CONFIGURATION_ERROR,
    EXIT_CONNECTION_ERROR, EXIT_INPUT_ERROR
)
from extattr_sync.executor import UpdateOutcome
from extattr_sync.row_loader import InputError

CONFLICT_MESSAGE = ("Unable to update the specified properties for objects that have "
                    "originated within an external service.")


class FakeSession:
    """Stand-in for TokenSession that records establish calls."""

    def __init__(self, name, fail=False, token=None):
        self.name = name
        self.fail = fail
        self.active = bool(token)
        self.establish_calls = 0
        self.establish_attempted = False
        self.last_error = None

    def is_active(self):
        return self.active

    def establish(self):
        self.establish_calls += 1
        self.establish_attempted = True
        if self.fail:
            self.last_error = 'AADSTS700016: Application not found'
            raise SessionError(self.last_error)
        self.active = True
        return True

    def get_token(self):
        return 'token'


class OrchestratorTestCase(unittest.TestCase):
    """Shared fixtures for orchestrator tests."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp(prefix='orchestrator_test_')
        self.test_config = {
            'tenant': {
                'tenant_id': 'tenant-guid',
                'client_id': 'client-guid',
                'client_secret': 'secret',
            },
            'graph': {
                'base_url': 'https://graph.microsoft.com/v1.0',
                'scope': 'https://graph.microsoft.com/.default',
                'authority_conflict_message': 'originated within an external service',
                'authority_conflict_codes': [],
            },
            'exchange': {
                'enabled': True,
                'base_url': 'https://outlook.office365.com/adminapi/beta',
                'scope': 'https://outlook.office365.com/.default',
                'recipient_cmdlet': 'Set-Recipient',
                'mailbox_cmdlet': 'Set-Mailbox',
                'connect_mode': 'lazy',
            },
            'input': {'identifier_column': 'UserPrincipalName', 'delimiter': ',', 'empty_means_clear': False},
            'logging': {'level': 'INFO', 'log_dir': os.path.join(self.temp_dir, 'logs')},
            'error_handling': {'max_retries': 0, 'retry_wait_seconds': 0},
            'notifications': {'enable_email': False},
        }

        self.sessions = {
            'graph': FakeSession('graph'),
            'exchange': FakeSession('exchange'),
        }

        self.graph_api = Mock()
        self.graph_api.update_user_attributes.return_value = True

        self.exchange_api = Mock()
        self.exchange_api.recipient_cmdlet = 'Set-Recipient'
        self.exchange_api.mailbox_cmdlet = 'Set-Mailbox'
        self.exchange_api.update_recipient.return_value = True
        self.exchange_api.update_mailbox.return_value = True

        patchers = [
            patch('extattr_sync.main.load_config', side_effect=lambda *a, **kw: self.test_config),
            patch('extattr_sync.main.setup_logging'),
            patch('extattr_sync.main.TokenSession', side_effect=self._make_session),
            patch('extattr_sync.main.GraphDirectoryAPI', side_effect=self._make_graph),
            patch('extattr_sync.main.ExchangeRecipientAPI', side_effect=self._make_exchange),
            patch('extattr_sync.main.send_bulk_failure_summary'),
            patch('extattr_sync.main.send_failure_notification'),
        ]
        self.mocks = {}
        for patcher in patchers:
            self.mocks[patcher.attribute] = patcher.start()
            self.addCleanup(patcher.stop)

    def tearDown(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _make_session(self, name, tenant, scope, token=None):
        session = self.sessions[name]
        if token:
            session.active = True
        return session

    def _make_graph(self, config, session):
        self.graph_api.session = session
        return self.graph_api

    def _make_exchange(self, config, session, tenant_id):
        self.exchange_api.session = session
        return self.exchange_api

    def _write_csv(self, content):
        path = os.path.join(self.temp_dir, 'users.csv')
        with open(path, 'w', encoding='utf-8', newline='') as f:
            f.write(content)
        return path

    def _conflict(self):
        self.graph_api.update_user_attributes.side_effect = AuthorityConflictError(CONFLICT_MESSAGE, 400)


class TestSingleMode(OrchestratorTestCase):
    """Single-user runs."""

    def test_primary_success(self):
        """Scenario: Graph succeeds, no fallback, exit success."""
        exit_code = UpdateOrchestrator().run_single('alice@contoso.com', {'extensionAttribute1': 'Sales'})

        self.assertEqual(exit_code, EXIT_SUCCESS)
        self.graph_api.update_user_attributes.assert_called_once_with(
            'alice@contoso.com', {'extensionAttribute1': 'Sales'})
        self.exchange_api.update_recipient.assert_not_called()
        self.exchange_api.update_mailbox.assert_not_called()
        self.assertEqual(self.sessions['exchange'].establish_calls, 0)

    def test_fallback_method_a_succeeds(self):
        """Scenario: conflict on Graph, Set-Recipient succeeds, Set-Mailbox unused."""
        self._conflict()

        orchestrator = UpdateOrchestrator()
        exit_code = orchestrator.run_single('alice@contoso.com', {'extensionAttribute1': 'Sales'})

        self.assertEqual(exit_code, EXIT_SUCCESS)
        self.exchange_api.update_recipient.assert_called_once_with(
            'alice@contoso.com', {'CustomAttribute1': 'Sales'})
        self.exchange_api.update_mailbox.assert_not_called()
        self.assertEqual(self.sessions['exchange'].establish_calls, 1)
        self.assertEqual(orchestrator.result.outcomes[0].backend, 'exchange:Set-Recipient')

    def test_both_fallbacks_fail(self):
        """Scenario: conflict on Graph, both Exchange methods fail, fatal exit."""
        self._conflict()
        self.exchange_api.update_recipient.side_effect = DirectoryAPIError("recipient not found", 404)
        self.exchange_api.update_mailbox.side_effect = DirectoryAPIError("mailbox not found", 404)

        exit_code = UpdateOrchestrator().run_single('alice@contoso.com', {'extensionAttribute1': 'Sales'})

        self.assertEqual(exit_code, EXIT_UPDATE_FAILED)
        self.exchange_api.update_recipient.assert_called_once()
        self.exchange_api.update_mailbox.assert_called_once()

    def test_exchange_connection_failure_is_fatal(self):
        self._conflict()
        self.sessions['exchange'].fail = True

        exit_code = UpdateOrchestrator().run_single('alice@contoso.com', {'extensionAttribute1': 'Sales'})

        self.assertEqual(exit_code, EXIT_CONNECTION_ERROR)
        self.exchange_api.update_recipient.assert_not_called()

    def test_graph_connection_failure(self):
        self.sessions['graph'].fail = True

        exit_code = UpdateOrchestrator().run_single('alice@contoso.com', {'extensionAttribute1': 'Sales'})

        self.assertEqual(exit_code, EXIT_CONNECTION_ERROR)
        self.graph_api.update_user_attributes.assert_not_called()

    def test_unrecognized_attributes_only(self):
        exit_code = UpdateOrchestrator().run_single('alice@contoso.com', {'department': 'IT'})

        self.assertEqual(exit_code, EXIT_INPUT_ERROR)
        self.graph_api.update_user_attributes.assert_not_called()

    def test_clear_marker_forwarded(self):
        exit_code = UpdateOrchestrator().run_single('alice@contoso.com', {'extensionAttribute9': None})

        self.assertEqual(exit_code, EXIT_SUCCESS)
        self.graph_api.update_user_attributes.assert_called_once_with(
            'alice@contoso.com', {'extensionAttribute9': CLEAR})

    def test_missing_identifier(self):
        exit_code = UpdateOrchestrator().run_single('  ', {'extensionAttribute1': 'x'})

        self.assertEqual(exit_code, EXIT_INPUT_ERROR)

    def test_configuration_error(self):
        self.mocks['load_config'].side_effect = ConfigurationError("Missing required tenant field: tenant_id")

        exit_code = UpdateOrchestrator().run_single('alice@contoso.com', {'extensionAttribute1': 'x'})

        self.assertEqual(exit_code, EXIT_CONFIGURATION_ERROR)

    @patch.dict(os.environ, {'GRAPH_ACCESS_TOKEN': 'pre-acquired'}, clear=False)
    def test_skip_connect_uses_supplied_token(self):
        exit_code = UpdateOrchestrator(skip_connect=True).run_single(
            'alice@contoso.com', {'extensionAttribute1': 'x'})

        self.assertEqual(exit_code, EXIT_SUCCESS)
        self.assertEqual(self.sessions['graph'].establish_calls, 0)

    def test_skip_connect_without_token(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop('GRAPH_ACCESS_TOKEN', None)
            exit_code = UpdateOrchestrator(skip_connect=True).run_single(
                'alice@contoso.com', {'extensionAttribute1': 'x'})

        self.assertEqual(exit_code, EXIT_CONNECTION_ERROR)
        self.assertEqual(self.sessions['graph'].establish_calls, 0)


class TestBulkMode(OrchestratorTestCase):
    """Bulk runs from CSV."""

    def test_mixed_rows_scenario(self):
        """Scenario: three rows, only the valid one with a clear reaches the executor."""
        path = self._write_csv(
            "UserPrincipalName,extensionAttribute1,extensionAttribute2\n"
            ",Sales,HR\n"
            "b@contoso.com,,\n"
            "c@contoso.com,null,\n"
        )

        orchestrator = UpdateOrchestrator()
        exit_code = orchestrator.run_bulk(path)

        self.assertEqual(exit_code, EXIT_SUCCESS)
        self.graph_api.update_user_attributes.assert_called_once_with(
            'c@contoso.com', {'extensionAttribute1': CLEAR})
        self.assertEqual(orchestrator.result.total, 1)

    def test_lazy_connect_after_first_failure(self):
        """Test the first conflicted user fails and later users get the fallback."""
        self._conflict()
        path = self._write_csv(
            "UserPrincipalName,extensionAttribute1\n"
            "a@contoso.com,1\n"
            "b@contoso.com,2\n"
            "c@contoso.com,3\n"
        )

        orchestrator = UpdateOrchestrator()
        exit_code = orchestrator.run_bulk(path)

        self.assertEqual(exit_code, EXIT_UPDATE_FAILED)
        self.assertEqual(self.sessions['exchange'].establish_calls, 1)
        self.assertEqual(orchestrator.result.failed, 1)
        self.assertEqual(orchestrator.result.succeeded, 2)
        self.assertEqual(orchestrator.result.failures()[0].identifier, 'a@contoso.com')
        self.assertEqual(self.exchange_api.update_recipient.call_count, 2)
        self.mocks['send_bulk_failure_summary'].assert_called_once()

    def test_eager_connect(self):
        """Test eager mode connects Exchange once at start so every user can fall back."""
        self._conflict()
        path = self._write_csv(
            "UserPrincipalName,extensionAttribute1\n"
            "a@contoso.com,1\n"
            "b@contoso.com,2\n"
        )

        orchestrator = UpdateOrchestrator(connect_mode='eager')
        exit_code = orchestrator.run_bulk(path)

        self.assertEqual(exit_code, EXIT_SUCCESS)
        self.assertEqual(self.sessions['exchange'].establish_calls, 1)
        self.assertEqual(orchestrator.result.succeeded, 2)

    def test_eager_from_config(self):
        self.test_config['exchange']['connect_mode'] = 'eager'
        path = self._write_csv("UserPrincipalName,extensionAttribute1\na@contoso.com,1\n")

        UpdateOrchestrator().run_bulk(path)

        self.assertEqual(self.sessions['exchange'].establish_calls, 1)

    def test_exchange_connect_failure_attempted_once(self):
        """Test a failed Exchange connection is not retried for each failing user."""
        self._conflict()
        self.sessions['exchange'].fail = True
        path = self._write_csv(
            "UserPrincipalName,extensionAttribute1\n"
            "a@contoso.com,1\n"
            "b@contoso.com,2\n"
            "c@contoso.com,3\n"
        )

        orchestrator = UpdateOrchestrator()
        exit_code = orchestrator.run_bulk(path)

        self.assertEqual(exit_code, EXIT_UPDATE_FAILED)
        self.assertEqual(self.sessions['exchange'].establish_calls, 1)
        self.assertEqual(orchestrator.result.failed, 3)
        self.exchange_api.update_recipient.assert_not_called()

    def test_failures_do_not_stop_run(self):
        self.graph_api.update_user_attributes.side_effect = [
            DirectoryAPIError("Resource does not exist.", 404),
            True,
        ]
        path = self._write_csv(
            "UserPrincipalName,extensionAttribute1\n"
            "ghost@contoso.com,1\n"
            "b@contoso.com,2\n"
        )

        orchestrator = UpdateOrchestrator()
        exit_code = orchestrator.run_bulk(path)

        self.assertEqual(exit_code, EXIT_UPDATE_FAILED)
        self.assertEqual(self.graph_api.update_user_attributes.call_count, 2)
        self.assertEqual(orchestrator.result.succeeded, 1)
        self.assertEqual(orchestrator.result.failed, 1)

    def test_missing_file_is_fatal_before_connecting(self):
        exit_code = UpdateOrchestrator().run_bulk(os.path.join(self.temp_dir, 'missing.csv'))

        self.assertEqual(exit_code, EXIT_INPUT_ERROR)
        self.assertEqual(self.sessions['graph'].establish_calls, 0)
        self.graph_api.update_user_attributes.assert_not_called()

    def test_empty_file_is_fatal(self):
        path = self._write_csv("UserPrincipalName,extensionAttribute1\n")

        exit_code = UpdateOrchestrator().run_bulk(path)

        self.assertEqual(exit_code, EXIT_INPUT_ERROR)

    def test_graph_connection_failure(self):
        self.sessions['graph'].fail = True
        path = self._write_csv("UserPrincipalName,extensionAttribute1\na@contoso.com,1\n")

        exit_code = UpdateOrchestrator().run_bulk(path)

        self.assertEqual(exit_code, EXIT_CONNECTION_ERROR)
        self.mocks['send_failure_notification'].assert_called_once()


class TestBulkResult(unittest.TestCase):
    """Test cases for BulkResult."""

    def test_counts(self):
        result = BulkResult()
        result.record(UpdateOutcome('a', True, 'graph'))
        result.record(UpdateOutcome('b', False, error='x'))
        result.record(UpdateOutcome('c', True, 'exchange:Set-Mailbox'))

        self.assertEqual(result.succeeded, 2)
        self.assertEqual(result.failed, 1)
        self.assertEqual(result.total, 3)
        self.assertEqual([o.identifier for o in result.failures()], ['b'])


class TestAttributeArguments(unittest.TestCase):
    """Test cases for command line attribute parsing."""

    def test_set_and_clear(self):
        attributes = parse_attribute_arguments(
            ['extensionAttribute1=Sales', 'extensionAttribute2=a=b', 'extensionAttribute3'],
            ['extensionAttribute4'],
            None
        )

        self.assertEqual(attributes, {
            'extensionAttribute1': 'Sales',
            'extensionAttribute2': 'a=b',
            'extensionAttribute3': None,
            'extensionAttribute4': None,
        })

    def test_json_attributes(self):
        attributes = parse_attribute_arguments(None, None, '{"extensionAttribute5": null, "extensionAttribute6": "x"}')

        self.assertEqual(attributes, {'extensionAttribute5': None, 'extensionAttribute6': 'x'})

    def test_invalid_json(self):
        with self.assertRaises(InputError):
            parse_attribute_arguments(None, None, '{not json')

        with self.assertRaises(InputError):
            parse_attribute_arguments(None, None, '["extensionAttribute1"]')

    def test_attribute_json_rejects_non_string_values(self):
        for raw in ('{"extensionAttribute1": true}', '{"extensionAttribute1": 1}',
                    '{"extensionAttribute1": ["a"]}'):
            with self.assertRaises(InputError) as ctx:
                parse_attribute_arguments(None, None, raw)
            self.assertIn('extensionAttribute1', str(ctx.exception))


class TestHealthCheck(OrchestratorTestCase):
    """Health check reporting."""

    def test_healthy(self):
        status = UpdateOrchestrator().health_check()

        self.assertEqual(status['status'], 'healthy')
        self.assertEqual(status['checks']['graph']['status'], 'pass')
        self.assertEqual(status['checks']['exchange']['status'], 'pass')

    def test_exchange_unavailable(self):
        self.sessions['exchange'].fail = True

        status = UpdateOrchestrator().health_check()

        self.assertEqual(status['status'], 'unhealthy')
        self.assertEqual(status['checks']['exchange']['status'], 'fail')

    def test_configuration_failure(self):
        self.mocks['load_config'].side_effect = ConfigurationError("bad")

        status = UpdateOrchestrator().health_check()

        self.assertEqual(status['status'], 'unhealthy')
        self.assertEqual(status['checks']['configuration']['status'], 'fail')


if __name__ == '__main__':
    unittest.main()
