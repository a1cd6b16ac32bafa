"""
Long-lived clients shared by the web app and the CLI
"""
from dataclasses import dataclass, field

from slabdesk.certification_cache import CertificationCache, KeyedLocks
from slabdesk.config import Settings
from slabdesk.ebay_api import EbayBidClient, UserBidder
from slabdesk.ebay_oauth import EbayOAuthClient, EbayTokenProvider
from slabdesk.order_tracker import GradingOrderTracker
from slabdesk.psa_api import PsaClient
from slabdesk.record_store import RecordStore
from slabdesk.snipes import SnipeLifecycle


@dataclass
class Services:
    """
    Clients built once at startup.

    Components that need a store are assembled per request/session with the
    caller's store handle; the HTTP clients inside are reused.
    """
    settings: Settings
    psa_client: PsaClient
    oauth_client: EbayOAuthClient
    bid_client: EbayBidClient
    in_flight: KeyedLocks = field(default_factory=KeyedLocks)

    def certification_cache(self, store: RecordStore) -> CertificationCache:
        return CertificationCache(
            store,
            self.psa_client,
            ttl=self.settings.cert_ttl,
            strict=self.settings.strict_cache,
            in_flight=self.in_flight,
        )

    def order_tracker(self, store: RecordStore) -> GradingOrderTracker:
        return GradingOrderTracker(
            store,
            self.psa_client,
            ttl=self.settings.order_ttl,
            strict=self.settings.strict_cache,
            in_flight=self.in_flight,
        )

    def token_provider(self, store: RecordStore) -> EbayTokenProvider:
        return EbayTokenProvider(store, self.oauth_client)

    def snipe_lifecycle(self, store: RecordStore) -> SnipeLifecycle:
        return SnipeLifecycle(store, UserBidder(self.bid_client, self.token_provider(store)))


def build_services(settings: Settings) -> Services:
    return Services(
        settings=settings,
        psa_client=PsaClient(settings.psa_token, base_url=settings.psa_base_url),
        oauth_client=EbayOAuthClient(
            settings.ebay_client_id,
            settings.ebay_client_secret,
            redirect_uri=settings.ebay_redirect_uri,
            environment=settings.ebay_environment,
        ),
        bid_client=EbayBidClient(
            base_url="https://api.sandbox.ebay.com" if settings.ebay_environment == "sandbox" else "https://api.ebay.com"
        ),
    )
