"""
Per-user update execution.

The executor writes one user's attributes through Graph and, when Graph refuses
because the object is mastered elsewhere, through the Exchange recipient cmdlet and
then the mailbox cmdlet. A user either succeeds on exactly one backend or fails.
"""

import logging
from typing import Dict, Any, Optional

from extattr_sync.attributes import map_to_custom_attributes, describe_attributes
from extattr_sync.directory.base import DirectoryAPIError
from extattr_sync.directory.graph import AuthorityConflictError
from extattr_sync.directory.session import SessionError
from extattr_sync.logging_setup import audit_logger
from extattr_sync.retry import retry_call, retry_options, create_retry_callback, MaxRetriesExceeded

logger = logging.getLogger(__name__)

BACKEND_GRAPH = 'graph'


class UpdateOutcome:
    """Result of one user update; truthy when the write succeeded."""

    def __init__(self, identifier: str, success: bool, backend: Optional[str] = None,
                 error: Optional[str] = None, session_failure: bool = False):
        self.identifier = identifier
        self.success = success
        self.backend = backend
        self.error = error
        # Set when the failure came from a missing or unobtainable session
        self.session_failure = session_failure

    def __bool__(self):
        return self.success

    def __repr__(self):
        return (f"UpdateOutcome(identifier={self.identifier!r}, success={self.success}, "
                f"backend={self.backend!r}, error={self.error!r})")


class UpdateExecutor:
    """
    Runs the primary-then-fallback write sequence for a single user.

    Session handles are owned by the caller. When connect_secondary_on_demand is
    False, fallback only runs if the secondary session is already active.
    """

    def __init__(self, primary, secondary, error_config: Optional[Dict[str, Any]] = None,
                 connect_secondary_on_demand: bool = False):
        """
        Initialize executor.

        Args:
            primary: GraphDirectoryAPI instance
            secondary: ExchangeRecipientAPI instance (may be None to disable fallback)
            error_config: error_handling configuration for transient retries
            connect_secondary_on_demand: Establish the secondary session when first needed
        """
        self.primary = primary
        self.secondary = secondary
        self.retry_kwargs = retry_options(error_config)
        self.connect_secondary_on_demand = connect_secondary_on_demand

    def execute(self, identifier: str, attributes: Dict[str, Optional[str]]) -> UpdateOutcome:
        """
        Update one user.

        Args:
            identifier: UPN or object id
            attributes: AttributeMap to write

        Returns:
            UpdateOutcome describing which backend satisfied the write, if any
        """
        logger.debug(f"Updating '{identifier}': {describe_attributes(attributes)}")

        try:
            self._call(f"Graph update for '{identifier}'",
                       self.primary.update_user_attributes, identifier, attributes)
            audit_logger.log_user_operation('graph-update', identifier, BACKEND_GRAPH, True)
            return UpdateOutcome(identifier, True, BACKEND_GRAPH)

        except AuthorityConflictError as e:
            audit_logger.log_user_operation('graph-update', identifier, BACKEND_GRAPH, False)
            logger.info(f"'{identifier}' is synced from an external authority, "
                        f"falling back to Exchange: {e.message}")

        except (DirectoryAPIError, SessionError) as e:
            audit_logger.log_user_operation('graph-update', identifier, BACKEND_GRAPH, False)
            logger.error(f"Graph update failed for '{identifier}': {e}")
            return UpdateOutcome(identifier, False, error=str(e),
                                 session_failure=isinstance(e, SessionError))

        return self._fallback(identifier, attributes)

    def _fallback(self, identifier: str, attributes: Dict[str, Optional[str]]) -> UpdateOutcome:
        """Try the Exchange recipient cmdlet, then the mailbox cmdlet."""
        parameters = map_to_custom_attributes(attributes)
        if not parameters:
            message = "no attributes to forward to Exchange"
            logger.error(f"Fallback failed for '{identifier}': {message}")
            return UpdateOutcome(identifier, False, error=message)

        if self.secondary is None:
            message = "Exchange fallback is not configured"
            logger.error(f"Fallback failed for '{identifier}': {message}")
            return UpdateOutcome(identifier, False, error=message)

        try:
            self._ensure_secondary_session()
        except SessionError as e:
            logger.error(f"Fallback unavailable for '{identifier}': {e}")
            return UpdateOutcome(identifier, False, error=str(e), session_failure=True)

        last_error = None
        methods = (
            (self.secondary.recipient_cmdlet, self.secondary.update_recipient),
            (self.secondary.mailbox_cmdlet, self.secondary.update_mailbox),
        )
        for cmdlet, method in methods:
            backend = f"exchange:{cmdlet}"
            try:
                self._call(f"{cmdlet} for '{identifier}'", method, identifier, parameters)
                audit_logger.log_user_operation(cmdlet, identifier, backend, True)
                return UpdateOutcome(identifier, True, backend)
            except (DirectoryAPIError, SessionError) as e:
                audit_logger.log_user_operation(cmdlet, identifier, backend, False)
                logger.warning(f"{cmdlet} failed for '{identifier}': {e}")
                last_error = str(e)

        logger.error(f"All Exchange fallback methods failed for '{identifier}'")
        return UpdateOutcome(identifier, False, error=last_error)

    def _ensure_secondary_session(self):
        session = self.secondary.session
        if session.is_active():
            return

        if not self.connect_secondary_on_demand:
            raise SessionError("Exchange session is not connected")

        if session.establish_attempted:
            raise SessionError(f"Exchange session unavailable: {session.last_error}")

        logger.info("Connecting Exchange session for fallback")
        try:
            session.establish()
        except SessionError:
            audit_logger.log_session_event(session.name, 'on-demand connect', False)
            raise
        audit_logger.log_session_event(session.name, 'on-demand connect', True)

    def _call(self, operation_name: str, func, *args):
        """Run one backend call, retrying transient failures only."""
        try:
            return retry_call(
                func, args,
                on_retry=create_retry_callback(operation_name),
                **self.retry_kwargs
            )
        except MaxRetriesExceeded as e:
            if isinstance(e.last_exception, (DirectoryAPIError, SessionError)):
                raise e.last_exception
            raise DirectoryAPIError(f"{operation_name} failed: {e.last_exception}")
