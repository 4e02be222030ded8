"""
Microsoft Graph session state and app-only token acquisition.

Supports three ways of connecting:
- Client credentials with a client secret
- Client credentials with a certificate (signed JWT client assertion)
- A pre-acquired bearer token

Scopes are read from the token's roles/scp claim; nothing is verified
locally, the token is only inspected.
"""

import asyncio
import base64
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional

import aiohttp
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from .._types import now_utc
from ..exceptions import AuthenticationError, ConfigurationError, NotConnectedError

logger = logging.getLogger(__name__)


GRAPH_SCOPE = "https://graph.microsoft.com/.default"
TOKEN_REFRESH_BUFFER_SECONDS = 300  # Refresh 5 minutes before expiry
ASSERTION_LIFETIME_SECONDS = 600
CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def decode_token_claims(token: str) -> Dict[str, Any]:
    """
    Read the claims of a JWT without verifying it.

    Returns:
        Claims dict, or {} when the token is opaque
    """
    parts = token.split(".")
    if len(parts) != 3:
        return {}
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        return json.loads(base64.urlsafe_b64decode(payload.encode("ascii")))
    except (ValueError, UnicodeDecodeError):
        return {}


def scopes_from_claims(claims: Dict[str, Any]) -> FrozenSet[str]:
    """Application roles (app-only) or delegated scp entries."""
    roles = claims.get("roles") or []
    scp = claims.get("scp") or ""
    scopes = set(roles if isinstance(roles, list) else [roles])
    scopes.update(s for s in str(scp).split() if s)
    return frozenset(scopes)


@dataclass
class CertificateCredential:
    """Private key + certificate used to sign client assertions."""
    private_key: Any
    thumbprint: bytes

    @classmethod
    def from_pem(cls, path: Path, password: Optional[bytes] = None) -> "CertificateCredential":
        """
        Load a PEM bundle holding both the private key and the certificate.

        Raises:
            ConfigurationError: If the file is missing or unreadable
        """
        try:
            data = Path(path).read_bytes()
            private_key = serialization.load_pem_private_key(data, password=password)
            certificate = x509.load_pem_x509_certificate(data)
        except (OSError, ValueError, TypeError) as e:
            raise ConfigurationError(f"Cannot load certificate {path}: {e}") from e
        return cls(private_key=private_key, thumbprint=certificate.fingerprint(hashes.SHA1()))

    def client_assertion(self, client_id: str, audience: str) -> str:
        """Build an RS256-signed client assertion for the token endpoint."""
        issued = int(time.time())
        header = {"alg": "RS256", "typ": "JWT", "x5t": _b64url(self.thumbprint)}
        claims = {
            "aud": audience,
            "iss": client_id,
            "sub": client_id,
            "jti": str(uuid.uuid4()),
            "nbf": issued,
            "exp": issued + ASSERTION_LIFETIME_SECONDS,
        }
        signing_input = (
            _b64url(json.dumps(header, separators=(",", ":")).encode())
            + "."
            + _b64url(json.dumps(claims, separators=(",", ":")).encode())
        )
        signature = self.private_key.sign(
            signing_input.encode("ascii"), padding.PKCS1v15(), hashes.SHA256()
        )
        return f"{signing_input}.{_b64url(signature)}"


class GraphSession:
    """
    Connection state for the management API.

    Every gateway call checks `connected` before touching the network.
    """

    def __init__(
        self,
        tenant_id: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        certificate_path: Optional[Path] = None,
        access_token: Optional[str] = None,
        authority_url: str = "https://login.microsoftonline.com",
        scope: str = GRAPH_SCOPE,
        timeout: int = 30,
    ):
        self.tenant_id = tenant_id or ""
        self.client_id = client_id
        self.client_secret = client_secret
        self.certificate_path = certificate_path
        self.authority_url = authority_url.rstrip("/")
        self.scope = scope
        self.timeout = aiohttp.ClientTimeout(total=timeout)

        self._supplied_token = access_token
        self._token: Optional[str] = None
        self._expires_at: Optional[datetime] = None
        self._scopes: FrozenSet[str] = frozenset()
        self._connected = False
        self._certificate: Optional[CertificateCredential] = None

    @classmethod
    def from_config(cls, config) -> "GraphSession":
        return cls(
            tenant_id=config.tenant_id,
            client_id=config.client_id,
            client_secret=config.client_secret,
            certificate_path=config.certificate_path,
            access_token=config.access_token,
            authority_url=config.authority_url,
            timeout=config.http_timeout,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def scopes(self) -> FrozenSet[str]:
        return self._scopes

    @property
    def expires_at(self) -> Optional[datetime]:
        return self._expires_at

    @property
    def token_url(self) -> str:
        return f"{self.authority_url}/{self.tenant_id}/oauth2/v2.0/token"

    def has_scope(self, scope: str) -> bool:
        return scope in self._scopes

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Establish the session.

        Raises:
            ConfigurationError: If no credential is configured
            AuthenticationError: If the token endpoint rejects the request
        """
        if self._supplied_token:
            self._set_token(self._supplied_token, expires_in=None)
            logger.info("Connected to Microsoft Graph with supplied access token")
        else:
            await self._acquire_token()
            logger.info(f"Connected to Microsoft Graph (tenant {self.tenant_id})")

        self._connected = True
        if self._scopes:
            logger.debug(f"Granted scopes: {', '.join(sorted(self._scopes))}")

    async def disconnect(self) -> None:
        self._connected = False
        self._token = None
        self._expires_at = None
        self._scopes = frozenset()
        logger.debug("Disconnected from Microsoft Graph")

    async def get_token(self) -> str:
        """
        Return a valid bearer token, refreshing it if it expires soon.

        Raises:
            NotConnectedError: If connect() has not succeeded
        """
        if not self._connected or not self._token:
            raise NotConnectedError()

        # A supplied token cannot be renewed; the API will reject it once stale.
        if self._expires_at is not None and not self._supplied_token:
            buffer = timedelta(seconds=TOKEN_REFRESH_BUFFER_SECONDS)
            if now_utc() + buffer >= self._expires_at:
                logger.debug("Access token expiring soon, refreshing")
                await self._acquire_token()

        return self._token

    # ------------------------------------------------------------------
    # Token acquisition
    # ------------------------------------------------------------------

    def _credential_form(self) -> Dict[str, str]:
        if not self.tenant_id or not self.client_id:
            raise ConfigurationError("tenant_id and client_id are required for app authentication")

        form = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "scope": self.scope,
        }
        if self.client_secret:
            form["client_secret"] = self.client_secret
        elif self.certificate_path:
            if self._certificate is None:
                self._certificate = CertificateCredential.from_pem(self.certificate_path)
            form["client_assertion_type"] = CLIENT_ASSERTION_TYPE
            form["client_assertion"] = self._certificate.client_assertion(
                self.client_id, self.token_url
            )
        else:
            raise ConfigurationError("No Graph credential configured (secret, certificate or token)")
        return form

    async def _acquire_token(self) -> None:
        form = self._credential_form()

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as http:
                async with http.post(self.token_url, data=form) as response:
                    try:
                        data = await response.json(content_type=None)
                    except (aiohttp.ContentTypeError, ValueError):
                        data = {"error": await response.text()}

                    if not isinstance(data, dict):
                        data = {"error": str(data)}

                    if response.status != 200:
                        description = data.get("error_description") or data.get("error") or response.status
                        raise AuthenticationError(f"Token request failed ({response.status}): {description}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise AuthenticationError(f"Token endpoint unreachable: {e!r}") from e

        token = data.get("access_token")
        if not token:
            raise AuthenticationError("Token response did not contain an access_token")

        self._set_token(token, expires_in=data.get("expires_in", 3600))

    def _set_token(self, token: str, expires_in: Optional[Any]) -> None:
        claims = decode_token_claims(token)
        self._token = token
        self._scopes = scopes_from_claims(claims)

        if expires_in is not None:
            self._expires_at = now_utc() + timedelta(seconds=int(expires_in))
        elif claims.get("exp"):
            self._expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
        else:
            self._expires_at = None

        if not self.tenant_id and claims.get("tid"):
            self.tenant_id = claims["tid"]
