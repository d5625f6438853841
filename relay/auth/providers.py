import logging
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from relay.auth.tokens import RefreshFn, credential_from_token_response
from relay.domain.errors import ConfigurationError, ExchangeFailure
from relay.domain.models import Credential
from relay.domain.states import Platform

logger = logging.getLogger(__name__)


def _token_fields(body: Any) -> dict[str, Any]:
    # TikTok wraps the token payload in {"data": {...}}
    if isinstance(body, dict) and isinstance(body.get("data"), dict):
        return body["data"]
    return body if isinstance(body, dict) else {}


@dataclass
class OAuthProvider:
    """
    Authorization-code flow settings for one platform.

    Subclasses override the token endpoint calls where the provider departs
    from the plain RFC 6749 form POST.
    """

    platform: Platform
    display_name: str
    authorize_endpoint: str
    token_endpoint: str
    scopes: list[str]
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_uri: Optional[str] = None
    scope_separator: str = " "
    client_id_param: str = "client_id"
    use_pkce: bool = False
    extra_authorize_params: dict[str, str] = field(default_factory=dict)

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def require_configured(self) -> None:
        if not self.configured:
            raise ConfigurationError(f"{self.display_name} OAuth credentials not configured")

    def authorization_url(self, state: str, code_challenge: Optional[str] = None) -> str:
        self.require_configured()
        params = {
            self.client_id_param: self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.scope_separator.join(self.scopes),
            "state": state,
        }
        params.update(self.extra_authorize_params)
        if self.use_pkce and code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        return f"{self.authorize_endpoint}?{urlencode(params)}"

    async def exchange_code(
        self,
        client: httpx.AsyncClient,
        code: str,
        code_verifier: Optional[str] = None,
    ) -> Credential:
        self.require_configured()
        data = {
            self.client_id_param: self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        }
        if code_verifier:
            data["code_verifier"] = code_verifier

        try:
            resp = await self._send_exchange(client, data)
        except httpx.HTTPError as e:
            raise ExchangeFailure(f"Token exchange failed: {e}") from e

        if resp.is_error:
            raise ExchangeFailure(f"Token exchange failed: {resp.text}")

        return self._credential_from_response(resp)

    async def _send_exchange(self, client: httpx.AsyncClient, data: dict[str, Any]) -> httpx.Response:
        return await client.post(self.token_endpoint, data=data)

    def _credential_from_response(self, resp: httpx.Response, previous: Optional[Credential] = None) -> Credential:
        try:
            body = _token_fields(resp.json())
        except ValueError:
            raise ExchangeFailure(f"Token endpoint returned invalid JSON: {resp.text}")

        access_token = body.get("access_token")
        if not access_token:
            raise ExchangeFailure("Token endpoint response did not include an access_token")

        refresh_token = body.get("refresh_token")
        if not refresh_token and previous:
            # Refresh responses usually omit the refresh token; keep the old one
            refresh_token = previous.refresh_token

        expires_in = body.get("expires_in")
        if expires_in is not None:
            try:
                expires_in = float(expires_in)
            except (TypeError, ValueError):
                raise ExchangeFailure(f"Token endpoint returned invalid expires_in: {expires_in!r}")

        return credential_from_token_response(
            self.platform.value,
            access_token,
            refresh_token,
            expires_in,
        )

    async def refresh(self, client: httpx.AsyncClient, cred: Credential) -> Optional[Credential]:
        """
        Trades the stored refresh token for a new access token.
        Network and HTTP errors propagate; the credential manager treats
        them as a failed refresh.
        """
        if not cred.refresh_token:
            return None
        self.require_configured()

        resp = await client.post(
            self.token_endpoint,
            data={
                self.client_id_param: self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
                "refresh_token": cred.refresh_token,
            },
        )
        resp.raise_for_status()
        return self._credential_from_response(resp, previous=cred)

    def refresher(self, client: httpx.AsyncClient) -> RefreshFn:
        async def refresh_fn(cred: Credential) -> Optional[Credential]:
            return await self.refresh(client, cred)
        return refresh_fn


@dataclass
class FacebookProvider(OAuthProvider):
    """Graph API: code exchange is a GET, and there are no refresh tokens."""

    async def _send_exchange(self, client: httpx.AsyncClient, data: dict[str, Any]) -> httpx.Response:
        params = {k: v for k, v in data.items() if k != "grant_type"}
        return await client.get(self.token_endpoint, params=params)

    async def refresh(self, client: httpx.AsyncClient, cred: Credential) -> Optional[Credential]:
        # Long-lived tokens are extended by exchanging the current access token
        self.require_configured()
        resp = await client.get(
            self.token_endpoint,
            params={
                "grant_type": "fb_exchange_token",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "fb_exchange_token": cred.access_token,
            },
        )
        resp.raise_for_status()
        return self._credential_from_response(resp)


def build_providers(settings) -> dict[Platform, OAuthProvider]:
    return {
        Platform.YOUTUBE: OAuthProvider(
            platform=Platform.YOUTUBE,
            display_name="YouTube",
            authorize_endpoint="https://accounts.google.com/o/oauth2/v2/auth",
            token_endpoint="https://oauth2.googleapis.com/token",
            scopes=[
                "https://www.googleapis.com/auth/youtube.upload",
                "https://www.googleapis.com/auth/youtube.readonly",
            ],
            client_id=settings.YOUTUBE_CLIENT_ID,
            client_secret=settings.YOUTUBE_CLIENT_SECRET,
            redirect_uri=settings.YOUTUBE_REDIRECT_URI,
            use_pkce=True,
            extra_authorize_params={"access_type": "offline", "prompt": "consent"},
        ),
        Platform.FACEBOOK: FacebookProvider(
            platform=Platform.FACEBOOK,
            display_name="Facebook",
            authorize_endpoint="https://www.facebook.com/v18.0/dialog/oauth",
            token_endpoint="https://graph.facebook.com/v18.0/oauth/access_token",
            scopes=[
                "pages_manage_posts",
                "pages_read_engagement",
                "instagram_basic",
                "instagram_content_publish",
            ],
            client_id=settings.FACEBOOK_APP_ID,
            client_secret=settings.FACEBOOK_APP_SECRET,
            redirect_uri=settings.FACEBOOK_REDIRECT_URI,
            scope_separator=",",
        ),
        Platform.TIKTOK: OAuthProvider(
            platform=Platform.TIKTOK,
            display_name="TikTok",
            authorize_endpoint="https://www.tiktok.com/v2/auth/authorize",
            token_endpoint="https://open.tiktokapis.com/v2/oauth/token/",
            scopes=["video.upload", "video.publish"],
            client_id=settings.TIKTOK_CLIENT_KEY,
            client_secret=settings.TIKTOK_CLIENT_SECRET,
            redirect_uri=settings.TIKTOK_REDIRECT_URI,
            scope_separator=",",
            client_id_param="client_key",
        ),
    }
