"""
Configuration and environment variable loading
"""
import os
from dataclasses import dataclass
from datetime import timedelta
from dotenv import load_dotenv


def load_env() -> dict[str, str]:
    """Load environment variables from .env and .env.local"""
    load_dotenv(".env")
    load_dotenv(".env.local", override=True)

    return {
        "PSA_TOKEN": os.getenv("PSA_TOKEN", ""),
        "PSA_API_BASE_URL": os.getenv("PSA_API_BASE_URL", "https://api.psacard.com/publicapi"),
        "PSA_CACHE_TTL_HOURS": os.getenv("PSA_CACHE_TTL_HOURS", "24"),
        "PSA_ORDER_TTL_MINUTES": os.getenv("PSA_ORDER_TTL_MINUTES", "60"),
        "PSA_CACHE_STRICT": os.getenv("PSA_CACHE_STRICT", "false"),
        "EBAY_CLIENT_ID": os.getenv("EBAY_CLIENT_ID", ""),
        "EBAY_CLIENT_SECRET": os.getenv("EBAY_CLIENT_SECRET", ""),
        "EBAY_REDIRECT_URI": os.getenv("EBAY_REDIRECT_URI", "http://localhost:5002/oauth/callback"),
        "EBAY_ENVIRONMENT": os.getenv("EBAY_ENVIRONMENT", "production"),
        "SLABDESK_DB_PATH": os.getenv("SLABDESK_DB_PATH", "data/slabdesk.db"),
        "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO"),
    }


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    psa_token: str = ""
    psa_base_url: str = "https://api.psacard.com/publicapi"
    cert_ttl: timedelta = timedelta(hours=24)
    order_ttl: timedelta = timedelta(minutes=60)
    strict_cache: bool = False
    ebay_client_id: str = ""
    ebay_client_secret: str = ""
    ebay_redirect_uri: str = "http://localhost:5002/oauth/callback"
    ebay_environment: str = "production"
    db_path: str = "data/slabdesk.db"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: dict[str, str]) -> "Settings":
        """
        Build settings from a load_env() dict.

        Missing keys fall back to the dataclass defaults, so tests can pass
        a partial dict.
        """
        defaults = cls()
        return cls(
            psa_token=env.get("PSA_TOKEN", defaults.psa_token),
            psa_base_url=env.get("PSA_API_BASE_URL") or defaults.psa_base_url,
            cert_ttl=timedelta(hours=float(env.get("PSA_CACHE_TTL_HOURS") or 24)),
            order_ttl=timedelta(minutes=float(env.get("PSA_ORDER_TTL_MINUTES") or 60)),
            strict_cache=_as_bool(env.get("PSA_CACHE_STRICT", "false")),
            ebay_client_id=env.get("EBAY_CLIENT_ID", defaults.ebay_client_id),
            ebay_client_secret=env.get("EBAY_CLIENT_SECRET", defaults.ebay_client_secret),
            ebay_redirect_uri=env.get("EBAY_REDIRECT_URI") or defaults.ebay_redirect_uri,
            ebay_environment=env.get("EBAY_ENVIRONMENT") or defaults.ebay_environment,
            db_path=env.get("SLABDESK_DB_PATH") or defaults.db_path,
            log_level=env.get("LOG_LEVEL") or defaults.log_level,
        )
