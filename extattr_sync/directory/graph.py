"""
Microsoft Graph integration module.

Writes extension attributes with PATCH /users/{id} and recognizes the refusal Graph
returns for objects whose attributes are mastered by an external service.
"""

import logging
from typing import Dict, Any, Optional
from urllib.parse import quote

from extattr_sync.attributes import build_primary_payload
from .base import DirectoryAPIBase, DirectoryAPIError

logger = logging.getLogger(__name__)

DEFAULT_AUTHORITY_CONFLICT_MESSAGE = 'originated within an external service'


class AuthorityConflictError(DirectoryAPIError):
    """Graph refused the write because the object is synced from another authority."""

    @classmethod
    def from_error(cls, error: DirectoryAPIError) -> 'AuthorityConflictError':
        return cls(error.message, error.status_code, error.code)


class GraphDirectoryAPI(DirectoryAPIBase):
    """
    Primary directory API client.

    Detection of the authority conflict prefers structured error codes from
    configuration; matching the English message text is kept for compatibility
    because Graph reports this condition with a generic 'Request_BadRequest' code.
    """

    service_name = 'graph'

    def __init__(self, config: Dict[str, Any], session):
        super().__init__(config, session)

        self.conflict_codes = set(config.get('authority_conflict_codes') or [])
        self.conflict_message = config.get('authority_conflict_message',
                                           DEFAULT_AUTHORITY_CONFLICT_MESSAGE)

        logger.debug(f"Initialized Graph client for {self.base_url}")

    def update_user_attributes(self, identifier: str, attributes: Dict[str, Optional[str]]) -> bool:
        """
        Write extension attributes on a user.

        Args:
            identifier: UPN or object id
            attributes: AttributeMap; None values clear the slot

        Returns:
            True if the write was accepted

        Raises:
            AuthorityConflictError: If the object's attributes are externally mastered
            DirectoryAPIError: For any other failure
        """
        payload = build_primary_payload(attributes)
        path = f"/users/{quote(identifier, safe='@')}"

        try:
            self.request('PATCH', path, payload)
        except DirectoryAPIError as e:
            if self.is_authority_conflict(e):
                raise AuthorityConflictError.from_error(e)
            raise

        logger.debug(f"Graph accepted attribute update for '{identifier}'")
        return True

    def is_authority_conflict(self, error: Exception) -> bool:
        """
        Decide whether an error means 'blocked by external authority'.

        Args:
            error: Exception raised by a Graph call

        Returns:
            True if fallback to Exchange is appropriate
        """
        if isinstance(error, AuthorityConflictError):
            return True

        code = getattr(error, 'code', None)
        if code and code in self.conflict_codes:
            return True

        if not self.conflict_message:
            return False

        message = getattr(error, 'message', None) or str(error)
        return self.conflict_message.lower() in message.lower()
