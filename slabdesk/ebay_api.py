"""
eBay Buy Offer API - proxy bids on auction listings
"""
import logging
from decimal import Decimal
from typing import Any, Optional
import requests

from slabdesk.ebay_oauth import EbayTokenProvider
from slabdesk.errors import UpstreamError

logger = logging.getLogger(__name__)

EBAY_API_URL = "https://api.ebay.com"


class EbayBidClient:
    """Long-lived HTTP client for the bidding endpoint."""

    def __init__(
        self,
        base_url: str = EBAY_API_URL,
        session: Optional[requests.Session] = None,
        marketplace_id: str = "EBAY_US",
        currency: str = "USD",
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session if session is not None else requests.Session()
        self.marketplace_id = marketplace_id
        self.currency = currency

    def place_proxy_bid(self, access_token: str, item_id: str, max_bid: Decimal) -> dict[str, Any]:
        """
        Place a proxy bid up to max_bid.

        Returns:
            eBay's JSON response (auction status, current bid, etc.)

        Raises:
            UpstreamError: transport failure or non-2xx response
        """
        url = f"{self.base_url}/buy/offer/v1_beta/bidding/{item_id}/place_proxy_bid"
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "X-EBAY-C-MARKETPLACE-ID": self.marketplace_id,
        }
        body = {"maxAmount": {"value": str(max_bid), "currency": self.currency}}

        try:
            response = self.session.post(url, headers=headers, json=body, timeout=30)
        except requests.exceptions.RequestException as e:
            logger.error("[eBay] Error placing bid on %s: %s", item_id, e)
            raise UpstreamError(f"eBay API error: {e}") from e

        if not response.ok:
            raise UpstreamError(
                f"eBay API error: {response.status_code} {response.text[:500]}",
                status_code=response.status_code,
            )

        return response.json() if response.content else {}


class UserBidder:
    """Places bids on behalf of a user, resolving their access token first."""

    def __init__(self, bid_client: EbayBidClient, token_provider: EbayTokenProvider):
        self.bid_client = bid_client
        self.token_provider = token_provider

    def place_bid(self, user_id: str, item_id: str, max_bid: Decimal) -> dict[str, Any]:
        access_token = self.token_provider.get_access_token(user_id)
        return self.bid_client.place_proxy_bid(access_token, item_id, max_bid)
