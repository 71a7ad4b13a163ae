"""
Base directory API client and common functionality.

This module defines the shared HTTPS/JSON client used by the Graph and Exchange
integrations, along with SSL handling and decoding of service error responses.
"""

import json
import ssl
import socket
import logging
from typing import Dict, Any, Optional, Union
from urllib.parse import urlparse, urljoin
from http.client import HTTPSConnection, HTTPConnection, HTTPException

from extattr_sync.retry import RetryableError

logger = logging.getLogger(__name__)

# Statuses worth retrying within the same call
TRANSIENT_STATUSES = (429, 500, 502, 503, 504)


class DirectoryAPIError(Exception):
    """Base exception for directory API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 code: Optional[str] = None):
        self.message = message
        self.status_code = status_code
        self.code = code
        super().__init__(self._format())

    def _format(self) -> str:
        parts = []
        if self.status_code:
            parts.append(f"HTTP {self.status_code}")
        if self.code:
            parts.append(f"[{self.code}]")
        parts.append(self.message)
        return ' '.join(parts)


class RetryableAPIError(DirectoryAPIError, RetryableError):
    """Raised for throttling and transient server-side failures."""
    pass


class DirectoryAuthenticationError(DirectoryAPIError):
    """Raised when the service rejects the access token."""
    pass


class DirectoryAPIBase:
    """
    Shared HTTP client for directory services.

    Subclasses provide the service-specific operations. Authentication headers come
    from the session handle passed in, so the caller owns session lifecycle.
    """

    service_name = 'directory'

    def __init__(self, config: Dict[str, Any], session):
        """
        Initialize directory API client.

        Args:
            config: Service configuration dictionary
            session: TokenSession supplying bearer tokens
        """
        self.config = config
        self.session = session
        self.base_url = config['base_url']
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout_seconds', 30)

        # Parse base URL
        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        # HTTP connection
        self.connection = None
        self.ssl_context = None

        self._setup_ssl_context()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.service_name}")
            return

        self.ssl_context = ssl.create_default_context()

        ca_file = self.config.get('ca_file')
        if ca_file:
            try:
                self.ssl_context.load_verify_locations(cafile=ca_file)
                logger.info(f"Loaded CA bundle for {self.service_name}: {ca_file}")
            except (OSError, ssl.SSLError) as e:
                raise DirectoryAPIError(f"CA bundle loading failed: {e}")

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(
                self.host,
                context=self.ssl_context,
                timeout=self.timeout
            )
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def _default_headers(self) -> Dict[str, str]:
        """Headers sent with every request; subclasses may extend."""
        return {'Accept': 'application/json'}

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                headers: Optional[Dict] = None) -> Dict[str, Any]:
        """
        Make HTTP request to the directory service.

        Args:
            method: HTTP method (GET, POST, PATCH)
            path: API endpoint path (relative to base_url)
            body: Request body data
            headers: Additional headers

        Returns:
            Parsed response data

        Raises:
            DirectoryAPIError: If request fails
        """
        full_path = urljoin(self.base_path + '/', path.lstrip('/'))

        request_headers = self._default_headers()
        request_headers['Authorization'] = f"Bearer {self.session.get_token()}"
        if headers:
            request_headers.update(headers)

        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            request_headers['Content-Type'] = 'application/json'

        try:
            conn = self._get_connection()

            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, request_headers)

            response = conn.getresponse()
            response_data = response.read().decode('utf-8')

            logger.debug(f"Response status: {response.status} {response.reason}")

        except (socket.timeout, ConnectionError, HTTPException, OSError) as e:
            # Drop the connection so the next attempt reconnects
            self.close_connection()
            raise RetryableAPIError(f"Connection error to {self.service_name}: {e}")

        if response.status >= 400:
            raise self._error_from_response(response.status, response.reason, response_data)

        if not response_data:
            return {}

        try:
            return json.loads(response_data)
        except json.JSONDecodeError as e:
            raise DirectoryAPIError(f"Invalid JSON response from {self.service_name}: {e}")

    def _error_from_response(self, status: int, reason: str, response_data: str) -> DirectoryAPIError:
        """Build the exception for an error response, keeping the service's message."""
        code = None
        message = reason or 'Request failed'

        try:
            error = json.loads(response_data).get('error', {}) if response_data else {}
        except (json.JSONDecodeError, AttributeError):
            error = {}

        if isinstance(error, dict):
            code = error.get('code') or None
            message = error.get('message') or message
        elif isinstance(error, str):
            message = error

        if status == 401:
            self.session.invalidate()
            return DirectoryAuthenticationError(message, status, code)
        if status in TRANSIENT_STATUSES:
            return RetryableAPIError(message, status, code)
        return DirectoryAPIError(message, status, code)

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection for {self.service_name}: {e}")
            finally:
                self.connection = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close_connection()
