# marketsync/core/config.py

import os
from functools import lru_cache
from typing import Optional
from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings.
    Loads values from environment variables (.env file)
    """
    # Marketplace API
    MARKETPLACE_API_URL: str = "http://localhost:3000"
    MARKETPLACE_AUTH_TOKEN: str = ""  # Sent as the `token` cookie
    PURCHASE_PATH: str = "/api/buyer/purchase"
    RESERVE_PATH: str = "/api/buyer/reserve"
    CART_ADD_PATH: str = "/api/buyer/cart/add"

    # Mutation request policy
    PURCHASE_TIMEOUT_SECONDS: Optional[float] = 30.0  # None or 0 = wait forever
    SEND_IDEMPOTENCY_KEY: bool = True

    # Shared store keys
    SYNC_MESSAGE_KEY: str = "cross-tab-message"
    LEADER_KEY: str = "cross-tab-leader"
    ACTIVE_TABS_KEY: str = "active-tabs"

    # Cross-tab timings
    ELECTION_INTERVAL_SECONDS: float = 10.0
    HEARTBEAT_INTERVAL_SECONDS: float = 5.0
    TAB_REFRESH_INTERVAL_SECONDS: float = 10.0
    LEADER_STALE_SECONDS: float = 30.0
    TAB_STALE_SECONDS: float = 60.0

    # Relay server (websocket shared store)
    RELAY_URL: str = "ws://localhost:8000/ws/shared-store"

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    model_config = ConfigDict(
        env_file=os.environ.get('ENV_FILE', '.env') if os.path.exists('.env') else None,
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache()
def get_settings():
    """Cached settings to avoid loading .env file for every request"""
    return Settings()

def get_settings_no_cache():
    """Get settings without caching - useful for testing different environments"""
    return Settings()

def clear_settings_cache():
    """Clear the settings cache - useful when switching between environments"""
    get_settings.cache_clear()
