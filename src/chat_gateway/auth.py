"""
Bearer-token authentication for the gateway.

Every inbound request is resolved to a single Principal carrying the user
id, role and entitlement claims; downstream components never look at
headers or tokens themselves.
"""

import hmac
import logging
from typing import Optional

import httpx
from opentelemetry import trace
from pydantic import BaseModel, Field

from .core.errors import AuthenticationError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ROLE_USER = "user"
ROLE_SERVICE = "service"


class Principal(BaseModel):
    """Authenticated caller."""
    user_id: str
    role: str = ROLE_USER
    is_subscriber: bool = False
    has_custom_key: bool = False
    token: str = Field(default="", repr=False)

    class Config:
        frozen = True

    @property
    def is_service(self) -> bool:
        return self.role == ROLE_SERVICE


class Authenticator:
    """
    Verifies bearer tokens against the identity provider.

    The service-role key is recognized locally; any other token is sent to
    the identity provider's user endpoint, whose user metadata supplies the
    subscription and custom-key claims.
    """

    def __init__(
        self,
        identity_url: str,
        api_key: str = "",
        service_role_key: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.identity_url = identity_url.rstrip("/")
        self._api_key = api_key
        self._service_role_key = service_role_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def authenticate(self, authorization: Optional[str]) -> Principal:
        """
        Resolve an Authorization header to a Principal.

        Raises:
            AuthenticationError: Missing, malformed or rejected credentials
        """
        if not authorization:
            raise AuthenticationError("Missing authorization header")

        if not authorization.startswith("Bearer "):
            raise AuthenticationError("Invalid authorization header format")

        token = authorization[7:].strip()
        if not token:
            raise AuthenticationError("Invalid authorization header format")

        if self._service_role_key and hmac.compare_digest(token, self._service_role_key):
            return Principal(user_id=ROLE_SERVICE, role=ROLE_SERVICE, token=token)

        with tracer.start_as_current_span("authenticate"):
            try:
                response = await self._client.get(
                    f"{self.identity_url}/auth/v1/user",
                    headers={
                        "Authorization": f"Bearer {token}",
                        "apikey": self._api_key,
                    },
                )
            except httpx.RequestError as e:
                logger.error(f"Identity provider unreachable: {e}")
                raise AuthenticationError("Unauthorized")

            if response.status_code != 200:
                raise AuthenticationError("Unauthorized")

            user = response.json()
            user_id = user.get("id")
            if not user_id:
                raise AuthenticationError("Unauthorized")

            metadata = user.get("user_metadata") or {}
            return Principal(
                user_id=user_id,
                is_subscriber=metadata.get("subscription_status") == "active",
                has_custom_key=bool(metadata.get("custom_api_key")),
                token=token,
            )
