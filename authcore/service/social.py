from __future__ import annotations

import base64
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol
from urllib.parse import urlencode

import httpx

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import SocialAuthError, ValidationError
from authcore.storage.models import Provider

logger = get_logger(__name__)

OAUTH_ENDPOINTS = {
    Provider.GOOGLE: {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://openidconnect.googleapis.com/v1/userinfo",
        "scope": "openid email profile",
    },
    Provider.APPLE: {
        "auth_url": "https://appleid.apple.com/auth/authorize",
        "token_url": "https://appleid.apple.com/auth/token",
        "userinfo_url": None,
        "scope": "name email",
    },
}


@dataclass(frozen=True)
class SocialProfile:
    """Identity asserted by a social provider after a code exchange."""

    external_id: str
    email: str
    email_verified: bool = True
    display_name: Optional[str] = None


class SocialProfileResolver(Protocol):
    provider: Provider

    def authorization_url(self, state: str) -> str: ...

    async def fetch_profile(self, code: str) -> SocialProfile: ...


def _truthy(value: Any) -> bool:
    # Apple sends email_verified as the string "true"
    if isinstance(value, str):
        return value.lower() == "true"
    return bool(value)


class OAuthProfileResolver(ABC):
    """Authorization-code exchange followed by a profile lookup.

    ``transport`` is handed to :class:`httpx.AsyncClient` so tests can plug in
    an ``httpx.MockTransport``.
    """

    provider: Provider

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: Optional[str],
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self.transport = transport
        endpoints = OAUTH_ENDPOINTS[self.provider]
        self.auth_url: str = endpoints["auth_url"]
        self.token_url: str = endpoints["token_url"]
        self.userinfo_url: Optional[str] = endpoints["userinfo_url"]
        self.scope: str = endpoints["scope"]

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def _fail(self, event: str, **fields: Any) -> None:
        logger.error(event, provider=self.provider.value, **fields)
        raise SocialAuthError()

    def _extra_auth_params(self) -> Dict[str, str]:
        return {}

    def authorization_url(self, state: str) -> str:
        """Provider consent URL carrying ``state`` back to the redirect URI."""
        if not state:
            raise ValidationError("oauth state is required")
        if not self.configured:
            self._fail("oauth_credentials_missing")
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "state": state,
        }
        params.update(self._extra_auth_params())
        return f"{self.auth_url}?{urlencode(params)}"

    async def fetch_profile(self, code: str) -> SocialProfile:
        if not code:
            raise ValidationError("authorization code is required")
        if not self.configured:
            self._fail("oauth_credentials_missing")

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self.transport
            ) as client:
                token_response = await client.post(
                    self.token_url,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                if not isinstance(token_result, dict):
                    self._fail("oauth_token_invalid_format")
                userinfo = await self._load_userinfo(client, token_result)
        except httpx.HTTPStatusError as exc:
            self._fail(
                "oauth_exchange_http_error",
                status_code=exc.response.status_code,
            )
        except (httpx.HTTPError, ValueError) as exc:
            self._fail("oauth_exchange_error", error=str(exc))

        profile = self._parse_profile(userinfo)
        if not profile.external_id:
            self._fail("oauth_identity_missing_uid")
        if not profile.email:
            self._fail("oauth_identity_missing_email")
        logger.info(
            "oauth_exchange_success",
            provider=self.provider.value,
            external_id=profile.external_id,
        )
        return profile

    @abstractmethod
    async def _load_userinfo(
        self, client: httpx.AsyncClient, token_result: Dict[str, Any]
    ) -> Dict[str, Any]: ...

    @abstractmethod
    def _parse_profile(self, userinfo: Dict[str, Any]) -> SocialProfile: ...


class GoogleProfileResolver(OAuthProfileResolver):
    provider = Provider.GOOGLE

    def _extra_auth_params(self) -> Dict[str, str]:
        return {"access_type": "offline", "prompt": "consent"}

    async def _load_userinfo(
        self, client: httpx.AsyncClient, token_result: Dict[str, Any]
    ) -> Dict[str, Any]:
        access_token = token_result.get("access_token")
        if not access_token:
            self._fail("oauth_no_access_token")
        response = await client.get(
            self.userinfo_url, headers={"Authorization": f"Bearer {access_token}"}
        )
        response.raise_for_status()
        userinfo = response.json()
        if not isinstance(userinfo, dict):
            self._fail("oauth_userinfo_invalid_format")
        return userinfo

    def _parse_profile(self, userinfo: Dict[str, Any]) -> SocialProfile:
        return SocialProfile(
            external_id=str(userinfo.get("sub") or userinfo.get("id") or ""),
            email=userinfo.get("email") or "",
            email_verified=_truthy(userinfo.get("email_verified", True)),
            display_name=userinfo.get("name"),
        )


class AppleProfileResolver(OAuthProfileResolver):
    """Apple returns identity claims only inside the ``id_token``.

    The token comes straight from Apple's token endpoint over TLS in exchange
    for our client secret, so its payload is read without a JWKS signature
    check.
    """

    provider = Provider.APPLE

    def _extra_auth_params(self) -> Dict[str, str]:
        # Apple only returns name/email scopes to a form_post callback
        return {"response_mode": "form_post"}

    async def _load_userinfo(
        self, client: httpx.AsyncClient, token_result: Dict[str, Any]
    ) -> Dict[str, Any]:
        id_token = token_result.get("id_token")
        if not isinstance(id_token, str) or id_token.count(".") != 2:
            self._fail("oauth_no_id_token")
        payload_b64 = id_token.split(".")[1]
        padding = "=" * ((4 - len(payload_b64) % 4) % 4)
        claims = json.loads(base64.urlsafe_b64decode(payload_b64 + padding))
        if not isinstance(claims, dict):
            self._fail("oauth_userinfo_invalid_format")
        if claims.get("aud") != self.client_id:
            self._fail("oauth_audience_mismatch")
        return claims

    def _parse_profile(self, userinfo: Dict[str, Any]) -> SocialProfile:
        return SocialProfile(
            external_id=str(userinfo.get("sub") or ""),
            email=userinfo.get("email") or "",
            email_verified=_truthy(userinfo.get("email_verified", True)),
        )


def build_resolvers(
    settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Dict[Provider, OAuthProfileResolver]:
    """Resolvers for every provider that has client credentials configured."""
    resolvers: Dict[Provider, OAuthProfileResolver] = {}
    google = GoogleProfileResolver(
        settings.oauth_google_client_id,
        settings.oauth_google_client_secret,
        settings.oauth_redirect_uri,
        transport=transport,
    )
    apple = AppleProfileResolver(
        settings.oauth_apple_client_id,
        settings.oauth_apple_client_secret,
        settings.oauth_redirect_uri,
        transport=transport,
    )
    for resolver in (google, apple):
        if resolver.configured:
            resolvers[resolver.provider] = resolver
    return resolvers
