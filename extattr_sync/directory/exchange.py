"""
Exchange Online admin API integration module.

Runs recipient cmdlets through the InvokeCommand endpoint used by the Exchange
Online management module. Two update paths exist: the general recipient cmdlet and
the mailbox-specific cmdlet.
"""

import logging
from typing import Dict, Any, Optional

from .base import DirectoryAPIBase, DirectoryAPIError

logger = logging.getLogger(__name__)

DEFAULT_RECIPIENT_CMDLET = 'Set-Recipient'
DEFAULT_MAILBOX_CMDLET = 'Set-Mailbox'

# Well-known system mailbox used to route admin API calls for a tenant
ANCHOR_MAILBOX_TEMPLATE = 'UPN:SystemMailbox{{bb558c35-97f1-4cb9-8ff7-d53741dc928c}}@{organization}'


class ExchangeRecipientAPI(DirectoryAPIBase):
    """
    Secondary directory API client.

    Both update methods accept an identity plus CustomAttributeN parameters, where a
    None value clears the attribute.
    """

    service_name = 'exchange'

    def __init__(self, config: Dict[str, Any], session, tenant_id: str):
        """
        Initialize Exchange client.

        Args:
            config: Exchange configuration dictionary
            session: TokenSession for the Exchange scope
            tenant_id: Tenant id or verified domain used in the endpoint path
        """
        super().__init__(config, session)

        self.tenant_id = tenant_id
        self.organization = config.get('organization')
        self.recipient_cmdlet = config.get('recipient_cmdlet', DEFAULT_RECIPIENT_CMDLET)
        self.mailbox_cmdlet = config.get('mailbox_cmdlet', DEFAULT_MAILBOX_CMDLET)

        logger.debug(f"Initialized Exchange client for tenant {tenant_id}")

    def _default_headers(self) -> Dict[str, str]:
        headers = super()._default_headers()
        if self.organization:
            headers['X-AnchorMailbox'] = ANCHOR_MAILBOX_TEMPLATE.format(organization=self.organization)
        return headers

    def invoke_command(self, cmdlet: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run one cmdlet.

        Args:
            cmdlet: Cmdlet name, e.g. 'Set-Mailbox'
            parameters: Cmdlet parameters

        Returns:
            Parsed response body

        Raises:
            DirectoryAPIError: If the cmdlet fails
        """
        body = {
            'CmdletInput': {
                'CmdletName': cmdlet,
                'Parameters': parameters,
            }
        }
        logger.debug(f"Invoking {cmdlet} for '{parameters.get('Identity')}'")
        return self.request('POST', f"/{self.tenant_id}/InvokeCommand", body)

    def _update(self, cmdlet: str, identifier: str, parameters: Dict[str, Optional[str]]) -> bool:
        if not parameters:
            raise DirectoryAPIError(f"No attributes to send with {cmdlet}")

        cmdlet_parameters = {'Identity': identifier}
        cmdlet_parameters.update(parameters)
        self.invoke_command(cmdlet, cmdlet_parameters)
        return True

    def update_recipient(self, identifier: str, parameters: Dict[str, Optional[str]]) -> bool:
        """Method A: general recipient update."""
        return self._update(self.recipient_cmdlet, identifier, parameters)

    def update_mailbox(self, identifier: str, parameters: Dict[str, Optional[str]]) -> bool:
        """Method B: mailbox-specific update."""
        return self._update(self.mailbox_cmdlet, identifier, parameters)
