"""
Configuration module for the StrandSign service.

Centralizes all configuration with environment variable support,
validation, and caching for the anchoring key file.
"""

import json
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("STRANDSIGN_ENV", "dev")  # dev|stage|prod

# Storage
DB_PATH = os.getenv("STRANDSIGN_DB_PATH", "data/strandsign.db")

# Ledger
LEDGER_API_URL = os.getenv("LEDGER_API_URL", "https://api.whatsonchain.com/v1/bsv/main")
LEDGER_EXPLORER_URL = os.getenv("LEDGER_EXPLORER_URL", "https://whatsonchain.com/tx/")
SECONDARY_BROADCAST_URL = os.getenv("SECONDARY_BROADCAST_URL", "")

# Anchoring key: env values override the key file
ANCHOR_KEY_PATH = os.getenv("ANCHOR_KEY_PATH", "secrets/anchor_key.json")
ANCHOR_PRIVATE_KEY_WIF = os.getenv("ANCHOR_PRIVATE_KEY_WIF", "")
ANCHOR_ADDRESS = os.getenv("ANCHOR_ADDRESS", "")

# Anchoring budget (seconds) and fee (satoshis)
ANCHOR_TIMEOUT_SECONDS = float(os.getenv("ANCHOR_TIMEOUT_SECONDS", "30"))
ANCHOR_REQUEST_TIMEOUT_SECONDS = float(os.getenv("ANCHOR_REQUEST_TIMEOUT_SECONDS", "10"))
ANCHOR_MINER_FEE_SATS = int(os.getenv("ANCHOR_MINER_FEE_SATS", "500"))

# Fee-gated signing payee
TREASURY_ADDRESS = os.getenv("TREASURY_ADDRESS", "")

# Public links
APP_URL = os.getenv("APP_URL", "https://localhost:8000").rstrip("/")

# Rate limits (requests per minute) for public endpoints
SIGN_RPM = int(os.getenv("SIGN_RPM", "60"))
CLAIM_RPM = int(os.getenv("CLAIM_RPM", "60"))
# Set when a reverse proxy in front of the service sets X-Forwarded-For
TRUST_FORWARDED_FOR = os.getenv("TRUST_FORWARDED_FOR", "0").lower() in ("1", "true", "yes")

# Admin key for recording external KYC outcomes
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "1").lower() in ("1", "true", "yes")

# Cache TTL (seconds)
CONFIG_CACHE_TTL = int(os.getenv("CONFIG_CACHE_TTL", "60"))


# ============================================================
# Cached Configuration Loaders
# ============================================================

class CachedConfig:
    """
    Thread-safe cached configuration loader.
    Reloads configuration files periodically based on TTL.
    """

    def __init__(self, ttl_seconds: int = 60):
        self._cache: Dict[str, Any] = {}
        self._timestamps: Dict[str, float] = {}
        self._lock = threading.RLock()
        self._ttl = ttl_seconds

    def _is_stale(self, key: str) -> bool:
        if key not in self._timestamps:
            return True
        return (time.time() - self._timestamps[key]) > self._ttl

    def get_json(self, path: str, force_reload: bool = False) -> Dict[str, Any]:
        """
        Load JSON file with caching.
        Returns cached version if within TTL, otherwise reloads.
        """
        with self._lock:
            if not force_reload and path in self._cache and not self._is_stale(path):
                return self._cache[path]

            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)

            self._cache[path] = data
            self._timestamps[path] = time.time()
            return data

    def invalidate(self, path: Optional[str] = None) -> None:
        """Invalidate cache for a specific path or all paths."""
        with self._lock:
            if path:
                self._cache.pop(path, None)
                self._timestamps.pop(path, None)
            else:
                self._cache.clear()
                self._timestamps.clear()


_config_cache = CachedConfig(ttl_seconds=CONFIG_CACHE_TTL)


def load_anchor_key_config() -> Optional[Dict[str, str]]:
    """
    Anchoring key material as {"wif": ..., "address": ...}.

    Environment variables win over the key file. Returns None when neither
    is present; anchoring then runs unconfigured and yields placeholders.
    """
    if ANCHOR_PRIVATE_KEY_WIF:
        return {"wif": ANCHOR_PRIVATE_KEY_WIF, "address": ANCHOR_ADDRESS}
    if not Path(ANCHOR_KEY_PATH).exists():
        return None
    data = _config_cache.get_json(ANCHOR_KEY_PATH)
    return {"wif": data.get("wif", ""), "address": data.get("address", "")}


def invalidate_config_cache() -> None:
    """Invalidate all cached configuration."""
    _config_cache.invalidate()


# ============================================================
# Validation
# ============================================================

def validate_config() -> Dict[str, bool]:
    """Report which optional pieces of configuration are present."""
    return {
        "anchor_key": bool(ANCHOR_PRIVATE_KEY_WIF) or Path(ANCHOR_KEY_PATH).exists(),
        "anchor_address": bool(ANCHOR_ADDRESS) or Path(ANCHOR_KEY_PATH).exists(),
        "treasury": bool(TREASURY_ADDRESS),
        "secondary_broadcast": bool(SECONDARY_BROADCAST_URL),
        "admin_api_key": bool(ADMIN_API_KEY),
    }
