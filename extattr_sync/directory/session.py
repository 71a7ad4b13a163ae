"""
OAuth2 token sessions for Microsoft Graph and Exchange Online.

A TokenSession answers "is a session active" and "establish a session for this
scope". Tokens are acquired with MSAL using the client credentials flow, with either
a client secret or a certificate. Pre-acquired tokens can be supplied instead when
the caller has authenticated out-of-band.
"""

import time
import logging
from typing import Dict, Any, Optional

import msal
from cryptography import x509
from cryptography.hazmat.primitives import hashes

logger = logging.getLogger(__name__)

DEFAULT_AUTHORITY_HOST = 'https://login.microsoftonline.com'

# Refresh tokens slightly before they expire
EXPIRY_BUFFER_SECONDS = 60


class SessionError(Exception):
    """Raised when a session cannot be established or is not available."""
    pass


def load_certificate_credential(certificate_path: str, password: Optional[str] = None) -> Dict[str, Any]:
    """
    Build an MSAL certificate credential from a PEM file holding key and certificate.

    Args:
        certificate_path: Path to PEM file with private key and certificate
        password: Optional private key passphrase

    Returns:
        Credential dictionary accepted by msal.ConfidentialClientApplication

    Raises:
        SessionError: If the file cannot be read or holds no certificate
    """
    try:
        with open(certificate_path, 'rb') as f:
            pem_data = f.read()
        certificate = x509.load_pem_x509_certificate(pem_data)
    except (OSError, ValueError) as e:
        raise SessionError(f"Could not load certificate {certificate_path}: {e}")

    credential = {
        'private_key': pem_data.decode('utf-8'),
        'thumbprint': certificate.fingerprint(hashes.SHA1()).hex(),
    }
    if password:
        credential['passphrase'] = password
    return credential


class TokenSession:
    """
    Bearer token session for one service scope.

    A failed attempt is remembered so callers can avoid repeating expensive
    connection attempts. Once MSAL has issued a token, an expired or rejected token
    is re-acquired on the next request. Pre-acquired tokens cannot be renewed and
    are kept as supplied.
    """

    def __init__(self, name: str, tenant_config: Dict[str, Any], scope: str,
                 access_token: Optional[str] = None):
        """
        Initialize a token session.

        Args:
            name: Service name for log messages ('graph', 'exchange')
            tenant_config: Tenant configuration (tenant_id, client_id, credentials)
            scope: OAuth2 scope, e.g. 'https://graph.microsoft.com/.default'
            access_token: Pre-acquired bearer token (skip-connect mode)
        """
        self.name = name
        self.tenant_config = tenant_config or {}
        self.scope = scope

        self._access_token = access_token
        self._preacquired = access_token is not None
        self._expires_at = None
        self._app = None

        self.establish_attempted = False
        self.last_error = None

    def is_active(self) -> bool:
        """Check whether a usable token is held."""
        if not self._access_token:
            return False
        if self._expires_at is None:
            return True
        return time.time() < self._expires_at

    def establish(self) -> bool:
        """
        Acquire a token for the session scope if none is active.

        Returns:
            True once a token is held

        Raises:
            SessionError: If token acquisition fails
        """
        if self.is_active():
            logger.debug(f"{self.name} session already active")
            return True

        self.establish_attempted = True

        try:
            result = self._get_app().acquire_token_for_client(scopes=[self.scope])
        except SessionError as e:
            self.last_error = str(e)
            raise
        except Exception as e:
            self.last_error = str(e)
            raise SessionError(f"Failed to establish {self.name} session: {e}")

        access_token = result.get('access_token') if result else None
        if not access_token:
            description = (result or {}).get('error_description') or (result or {}).get('error') or 'no token returned'
            self.last_error = description
            raise SessionError(f"Failed to establish {self.name} session: {description}")

        self._access_token = access_token
        expires_in = result.get('expires_in')
        if expires_in:
            self._expires_at = time.time() + int(expires_in) - EXPIRY_BUFFER_SECONDS

        self.last_error = None
        logger.info(f"Established {self.name} session for scope {self.scope}")
        return True

    def _get_app(self):
        """Create the MSAL client application on first use."""
        if self._app:
            return self._app

        tenant_id = self.tenant_config.get('tenant_id')
        client_id = self.tenant_config.get('client_id')
        if not tenant_id or not client_id:
            raise SessionError(f"Tenant id and client id are required to connect {self.name}")

        certificate_path = self.tenant_config.get('certificate_path')
        if certificate_path:
            credential = load_certificate_credential(
                certificate_path, self.tenant_config.get('certificate_password'))
        else:
            credential = self.tenant_config.get('client_secret')
            if not credential:
                raise SessionError(f"No client secret or certificate configured for {self.name}")

        authority_host = self.tenant_config.get('authority_host', DEFAULT_AUTHORITY_HOST)
        self._app = msal.ConfidentialClientApplication(
            client_id=client_id,
            client_credential=credential,
            authority=f"{authority_host.rstrip('/')}/{tenant_id}",
        )
        return self._app

    def get_token(self) -> str:
        """
        Return the current bearer token, re-acquiring an expired or rejected MSAL token.

        Raises:
            SessionError: If no session is active or the token cannot be re-acquired
        """
        if self.is_active():
            return self._access_token

        if self._app:
            logger.info(f"{self.name} token expired or rejected, acquiring a new one")
            self._access_token = None
            self.establish()
            return self._access_token

        raise SessionError(f"No active {self.name} session")

    def invalidate(self):
        """
        Forget the current token after the service rejected it.

        MSAL tokens are dropped, along with MSAL's cached copy, so the next request
        acquires a fresh one. A pre-acquired token has no way to be renewed and is
        kept, so later requests are still sent.
        """
        if self._access_token:
            logger.warning(f"{self.name} rejected the access token")

        if self._preacquired:
            return

        self._access_token = None
        self._expires_at = None

        if self._app:
            cache = self._app.token_cache
            for item in cache.search(msal.TokenCache.CredentialType.ACCESS_TOKEN):
                cache.remove_at(item)
