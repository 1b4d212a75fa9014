"""
Clients for the credential provisioning services.

The Heroku platform API issues a short-lived auth token for the operator,
and the Borealis PG add-on API exchanges that token for ephemeral SSH and
database users.
"""

import logging
import netrc
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional
from urllib.parse import urlparse

import httpx

from .config import Config
from .models import DbConnectionInfo, SshConnectionInfo

SERVICE_UNAVAILABLE_MESSAGE = "Add-on service is temporarily unavailable. Try again later."
NOT_LOGGED_IN_MESSAGE = "Log in to the Heroku CLI first!"
HEROKU_UNAVAILABLE_MESSAGE = "Heroku API is temporarily unavailable. Try again later."


class HerokuAuthError(Exception):
    """Raised when the operator has no usable Heroku credentials."""

    def __init__(self, message: str = NOT_LOGGED_IN_MESSAGE):
        super().__init__(message)


class ProvisioningError(Exception):
    """Credential provisioning failed with a known outcome."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AddonNotFoundError(ProvisioningError):
    """The add-on does not exist or is not a Borealis Isolated Postgres add-on."""


class AddonNotReadyError(ProvisioningError):
    """The add-on has not finished provisioning."""


class ServiceUnavailableError(ProvisioningError):
    """The add-on service could not satisfy the request."""


def _handle_http_error(e: httpx.HTTPStatusError, addon_name: str, logger: logging.Logger):
    """Translate an add-on API error response into a provisioning error."""
    status = e.response.status_code
    try:
        body = e.response.json()
        reason = body.get("reason", "") if isinstance(body, dict) else str(body)
    except ValueError:
        reason = e.response.text

    logger.error(f"HTTP {status} from add-on API for {addon_name}: {reason}")

    if status == 404:
        raise AddonNotFoundError(
            f"Add-on {addon_name} was not found or is not a Borealis Isolated Postgres add-on",
            status_code=status,
        ) from e
    if status == 422:
        raise AddonNotReadyError(
            f"Add-on {addon_name} is not finished provisioning", status_code=status
        ) from e

    raise ServiceUnavailableError(SERVICE_UNAVAILABLE_MESSAGE, status_code=status) from e


def read_heroku_api_key(netrc_file: Optional[str] = None) -> str:
    """
    Find the operator's Heroku API key.

    HEROKU_API_KEY takes precedence; otherwise the platform API entry of the
    netrc file written by the Heroku CLI is used.
    """
    if Config.HEROKU_API_KEY:
        return Config.HEROKU_API_KEY

    machine = urlparse(Config.HEROKU_API_URL).hostname or "api.heroku.com"
    try:
        entry = netrc.netrc(netrc_file).authenticators(machine)
    except (FileNotFoundError, netrc.NetrcParseError):
        return ""

    return entry[2] if entry and entry[2] else ""


class HerokuAuthClient:
    """Creates and revokes temporary Heroku auth tokens."""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 transport: Optional[httpx.BaseTransport] = None):
        """Initialize the Heroku platform API client."""
        self.api_key = api_key
        self.base_url = base_url or Config.HEROKU_API_URL
        self.transport = transport
        self.logger = logging.getLogger(__name__)

    def _client(self) -> httpx.Client:
        api_key = self.api_key if self.api_key is not None else read_heroku_api_key()
        if not api_key:
            raise HerokuAuthError()

        return httpx.Client(
            base_url=self.base_url,
            headers={
                "Accept": "application/vnd.heroku+json; version=3",
                "Authorization": f"Bearer {api_key}",
            },
            transport=self.transport,
        )

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            with self._client() as client:
                response = client.request(method, path, **kwargs)
                if response.status_code == 401:
                    raise HerokuAuthError()
                response.raise_for_status()
                return response
        except httpx.HTTPStatusError as e:
            self.logger.error(f"HTTP {e.response.status_code} from Heroku API {method} {path}")
            raise ServiceUnavailableError(
                HEROKU_UNAVAILABLE_MESSAGE, status_code=e.response.status_code
            ) from e
        except httpx.TransportError as e:
            self.logger.error(f"Heroku API {method} {path} failed: {e}")
            raise ServiceUnavailableError(HEROKU_UNAVAILABLE_MESSAGE) from e

    def create_authorization(self) -> Dict[str, Any]:
        """
        Create a short-lived auth token for the add-on API.

        Returns:
            The authorization resource, including its id and access token

        Raises:
            HerokuAuthError: If the API key is missing or rejected
            ServiceUnavailableError: If the Heroku API fails or answers nonsense
        """
        response = self._request(
            "POST",
            "/oauth/authorizations",
            json={
                "description": Config.TEMP_AUTH_DESCRIPTION,
                "expires_in": Config.TEMP_AUTH_EXPIRES_IN,
                "scope": Config.TEMP_AUTH_SCOPE,
            },
        )
        try:
            authorization = response.json()
        except ValueError as e:
            self.logger.error(f"Malformed authorization response: {e}")
            raise ServiceUnavailableError(HEROKU_UNAVAILABLE_MESSAGE) from e

        if not isinstance(authorization, dict) or not authorization.get("id"):
            self.logger.error("Authorization response carries no id")
            raise ServiceUnavailableError(HEROKU_UNAVAILABLE_MESSAGE)

        self.logger.debug(f"Created temporary authorization {authorization['id']}")
        return authorization

    def revoke_authorization(self, authorization_id: str):
        """Delete a temporary auth token."""
        self._request("DELETE", f"/oauth/authorizations/{authorization_id}")
        self.logger.debug(f"Revoked temporary authorization {authorization_id}")

    @contextmanager
    def temporary_token(self) -> Iterator[str]:
        """
        Provide a temporary access token, revoking it on exit.

        Revocation happens exactly once whether the body succeeds, raises,
        or is interrupted. When the body fails, a revocation failure is only
        logged so the original error reaches the caller.

        Raises:
            HerokuAuthError: If the authorization carries no access token
        """
        authorization = self.create_authorization()
        authorization_id = authorization["id"]
        try:
            token = (authorization.get("access_token") or {}).get("token")
            if not token:
                raise HerokuAuthError()
            yield token
        except BaseException:
            try:
                self.revoke_authorization(authorization_id)
            except (HerokuAuthError, ProvisioningError) as e:
                self.logger.error(
                    f"Failed to revoke temporary authorization {authorization_id}: {e}"
                )
            raise

        self.revoke_authorization(authorization_id)


class BorealisPgClient:
    """Requests ephemeral SSH and database users from the add-on API."""

    def __init__(self, base_url: Optional[str] = None,
                 transport: Optional[httpx.BaseTransport] = None):
        """Initialize the add-on API client."""
        self.base_url = base_url or Config.BOREALIS_PG_API_URL
        self.transport = transport
        self.logger = logging.getLogger(__name__)

    def _post(self, path: str, token: str, addon_name: str,
              body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            with httpx.Client(base_url=self.base_url, transport=self.transport) as client:
                response = client.post(
                    path,
                    headers={"Authorization": f"Bearer {token}"},
                    json=body,
                )
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            _handle_http_error(e, addon_name, self.logger)
        except (httpx.TransportError, ValueError) as e:
            self.logger.error(f"Add-on API request for {addon_name} failed: {e}")
            raise ServiceUnavailableError(SERVICE_UNAVAILABLE_MESSAGE) from e

    def create_ssh_user(self, addon_name: str, token: str) -> SshConnectionInfo:
        """Provision an ephemeral SSH user on the add-on's bastion."""
        payload = self._post(
            f"/heroku/resources/{addon_name}/adhoc-ssh-users", token, addon_name
        )
        try:
            info = SshConnectionInfo.from_api(payload)
        except (AttributeError, TypeError, ValueError) as e:
            self.logger.error(f"Malformed SSH user response for {addon_name}: {e}")
            raise ServiceUnavailableError(SERVICE_UNAVAILABLE_MESSAGE) from e

        self.logger.info(f"Provisioned SSH user {info.username} for {addon_name}")
        return info

    def create_db_user(self, addon_name: str, token: str,
                       write_access: bool = False) -> DbConnectionInfo:
        """Provision an ephemeral database user, read-only unless requested."""
        payload = self._post(
            f"/heroku/resources/{addon_name}/adhoc-db-users",
            token,
            addon_name,
            body={"enableWriteAccess": write_access},
        )
        try:
            info = DbConnectionInfo.from_api(payload, write_access)
        except (AttributeError, TypeError, ValueError) as e:
            self.logger.error(f"Malformed DB user response for {addon_name}: {e}")
            raise ServiceUnavailableError(SERVICE_UNAVAILABLE_MESSAGE) from e

        self.logger.info(
            f"Provisioned {'read/write' if write_access else 'read-only'} "
            f"DB user {info.username} for {addon_name}"
        )
        return info
