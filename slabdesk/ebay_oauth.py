"""
eBay OAuth 2.0 Token Management
Authorization-code flow for user tokens, refresh, and per-user token lookup
"""
import base64
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, TypedDict
from urllib.parse import urlencode
import requests

from slabdesk.errors import UpstreamError
from slabdesk.record_store import RecordStore, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

TOKEN_URLS = {
    "production": "https://api.ebay.com/identity/v1/oauth2/token",
    "sandbox": "https://api.sandbox.ebay.com/identity/v1/oauth2/token",
}
AUTH_URLS = {
    "production": "https://auth.ebay.com/oauth2/authorize",
    "sandbox": "https://auth.sandbox.ebay.com/oauth2/authorize",
}
# Bidding needs the auction scope on top of the base scope
USER_SCOPES = [
    "https://api.ebay.com/oauth/api_scope",
    "https://api.ebay.com/oauth/api_scope/buy.offer.auction",
]
REFRESH_BUFFER = timedelta(minutes=5)
PROVIDER = "ebay"


class TokenGrant(TypedDict):
    access_token: str
    refresh_token: Optional[str]
    expires_in: int


class EbayOAuthClient:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str = "http://localhost:5002/oauth/callback",
        environment: str = "production",
        session: Optional[requests.Session] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.environment = "sandbox" if environment.lower() == "sandbox" else "production"
        self.session = session if session is not None else requests.Session()

    @property
    def token_url(self) -> str:
        return TOKEN_URLS[self.environment]

    def _headers(self) -> dict[str, str]:
        if not self.client_id or not self.client_secret:
            raise UpstreamError("EBAY_CLIENT_ID and EBAY_CLIENT_SECRET are required")
        # Basic auth header (base64 encoded client_id:client_secret)
        credentials = f"{self.client_id}:{self.client_secret}"
        encoded_credentials = base64.b64encode(credentials.encode()).decode()
        return {
            "Content-Type": "application/x-www-form-urlencoded",
            "Authorization": f"Basic {encoded_credentials}",
        }

    def _post_token(self, data: dict[str, str], action: str) -> TokenGrant:
        headers = self._headers()
        try:
            response = self.session.post(self.token_url, headers=headers, data=data, timeout=30)
        except requests.exceptions.RequestException as e:
            logger.error("[eBay] Exception during %s: %s", action, e)
            raise UpstreamError(f"eBay OAuth {action} failed: {e}") from e

        if response.status_code != 200:
            logger.error("[eBay] Failed to %s: %s %s", action, response.status_code, response.text[:500])
            raise UpstreamError(
                f"eBay OAuth {action} failed: {response.status_code}",
                status_code=response.status_code,
            )

        token_data = response.json()
        return {
            "access_token": token_data.get("access_token"),
            "refresh_token": token_data.get("refresh_token"),
            "expires_in": int(token_data.get("expires_in", 7200)),
        }

    def get_authorization_url(self, state: Optional[str] = None) -> str:
        """URL the user visits to grant the app access (Authorization Code Grant Flow)."""
        if not self.client_id:
            raise ValueError("EBAY_CLIENT_ID is required")
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(USER_SCOPES),
        }
        if state:
            params["state"] = state
        return f"{AUTH_URLS[self.environment]}?{urlencode(params)}"

    def exchange_code_for_token(self, authorization_code: str) -> TokenGrant:
        return self._post_token(
            {
                "grant_type": "authorization_code",
                "code": authorization_code,
                "redirect_uri": self.redirect_uri,
            },
            "exchange code",
        )

    def refresh_oauth_token(self, refresh_token: str) -> TokenGrant:
        grant = self._post_token(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "scope": " ".join(USER_SCOPES),
            },
            "refresh token",
        )
        # eBay keeps the original refresh token valid; it is not re-issued
        grant["refresh_token"] = grant["refresh_token"] or refresh_token
        return grant


class EbayTokenProvider:
    """
    Per-user eBay access tokens backed by the user_tokens table.

    Tokens within REFRESH_BUFFER of expiry are refreshed before use.
    """

    def __init__(
        self,
        store: RecordStore,
        oauth_client: EbayOAuthClient,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.oauth_client = oauth_client
        self.clock = clock

    def _save(self, user_id: str, grant: TokenGrant) -> dict:
        now = self.clock()
        return self.store.upsert("user_tokens", {
            "user_id": user_id,
            "provider": PROVIDER,
            "access_token": grant["access_token"],
            "refresh_token": grant["refresh_token"],
            "expires_at": (now + timedelta(seconds=grant["expires_in"])).isoformat(),
            "updated_at": now.isoformat(),
        })

    def has_ebay_auth(self, user_id: str) -> bool:
        return self.store.get("user_tokens", (user_id, PROVIDER)) is not None

    def connect_user(self, user_id: str, authorization_code: str) -> dict:
        """Exchange the callback code and store the user's tokens."""
        grant = self.oauth_client.exchange_code_for_token(authorization_code)
        logger.info("[eBay] Connected account for user %s", user_id)
        return self._save(user_id, grant)

    def get_access_token(self, user_id: str) -> str:
        token = self.store.get("user_tokens", (user_id, PROVIDER))
        if not token:
            raise UpstreamError("No eBay token available")

        if parse_timestamp(token["expires_at"]) - self.clock() > REFRESH_BUFFER:
            return token["access_token"]

        if not token["refresh_token"]:
            raise UpstreamError("eBay token expired and no refresh token is stored")

        logger.info("[eBay] Refreshing access token for user %s", user_id)
        refreshed = self._save(user_id, self.oauth_client.refresh_oauth_token(token["refresh_token"]))
        return refreshed["access_token"]
