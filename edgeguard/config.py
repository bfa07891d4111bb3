#  EdgeGuard - Configuration
#
#  Loads config.json and provides typed access to all settings.
#  Dot-notation path lookup: cfg("rate_limits.api.limit")
#  Secrets and deployment switches come from environment variables.
#
#  Depends on: config.json (optional)
#  Used by:    all edgeguard modules

import json
import os
from pathlib import Path
from urllib.parse import urlparse

# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent
CONFIG_PATH = Path(os.environ.get("EDGEGUARD_CONFIG", PROJECT_ROOT / "config.json"))

# ---------------------------------------------------------------------------
# Load config
# ---------------------------------------------------------------------------

_config: dict = {}


def _load_config(path: Path | None = None):
    """Load configuration from JSON file (internal, called once at import time).

    Module-level constants below are snapshots from _config.
    Do not call this function after import; constants won't update.
    """
    global _config
    config_path = path or CONFIG_PATH
    if not config_path.exists():
        raise FileNotFoundError(
            f"Config file not found: {config_path}. "
            "Copy config.example.json to config.json."
        )
    with open(config_path) as f:
        _config = json.load(f)


# Auto-load if config exists at import time; every setting has a default
if CONFIG_PATH.exists():
    _load_config()


def cfg(path: str, default=None):
    """Get a config value by dot-notation path.

    Example: cfg("rate_limits.api.window_sec") -> 60
    """
    keys = path.split(".")
    val = _config
    for key in keys:
        if isinstance(val, dict) and key in val:
            val = val[key]
        else:
            return default
    return val


# ---------------------------------------------------------------------------
# Convenience constants
# ---------------------------------------------------------------------------

HOST = cfg("server.host", "0.0.0.0")
PORT = cfg("server.port", 5300)
ENVIRONMENT = os.environ.get("EDGEGUARD_ENV", cfg("server.environment", "development"))
IS_PRODUCTION = ENVIRONMENT == "production"
# Peers allowed to set X-Forwarded-For / X-Forwarded-Proto for uvicorn
TRUSTED_PROXIES = cfg("server.trusted_proxies", ["127.0.0.1"])

# Store
REDIS_URL = os.environ.get("REDIS_URL", cfg("store.redis_url", "redis://localhost:6379/0"))
STORE_SOCKET_TIMEOUT = cfg("store.socket_timeout_sec", 2.0)

# Admin API
ADMIN_API_TOKEN = os.environ.get("EDGEGUARD_ADMIN_TOKEN", "")

# Edge pipeline
ENFORCE_BANS = cfg("security.enforce_bans", True)
ENFORCE_RATE_LIMITS = cfg("security.enforce_rate_limits", True)
SWEEP_TEMPORARY_BANS = cfg("security.sweep_temporary_bans", False)
TEMP_BAN_SWEEP_INTERVAL = cfg("security.temp_ban_sweep_interval_sec", 60)
CSRF_COOKIE_NAME = cfg("security.csrf_cookie_name", "csrfToken")
CSRF_COOKIE_MAX_AGE = cfg("security.csrf_cookie_max_age_sec", 60 * 60 * 24 * 30)

PUBLIC_ASSET_PATHS: list[str] = cfg("security.public_asset_paths", [
    "/assets/",
    "/pwa/",
    "/images/",
    "/favicon.ico",
    "/favicon-16x16.png",
    "/favicon-32x32.png",
    "/apple-touch-icon.png",
    "/android-chrome-192x192.png",
    "/android-chrome-512x512.png",
    "/robots.txt",
    "/sitemap.xml",
    "/manifest.webmanifest",
    "/sw.js",
])
EXEMPT_PATHS: list[str] = PUBLIC_ASSET_PATHS + cfg("security.exempt_paths", ["/_next", "/api/health"])

# Ordered path-prefix -> limiter kind rules; first match wins
RATE_LIMIT_PATH_RULES: list[list[str]] = cfg("security.rate_limit_path_rules", [
    ["/api/v1", "api_v1"],
    ["/api", "api"],
])

CSP_CONNECT_SOURCES: list[str] = cfg("security.csp.connect_sources", [
    "https://*.google-analytics.com",
    "https://*.googleapis.com",
    "https://*.gstatic.com",
    "data:",
    "https://*.sanity.io",
    "*.sentry.io",
    "https://cdn.discordapp.com",
])
CSP_FRAME_SOURCES: list[str] = cfg("security.csp.frame_sources", ["https://cdn.sanity.io/"])
CSP_FONT_SOURCES: list[str] = cfg("security.csp.font_sources", ["https://fonts.gstatic.com"])
CSP_STYLE_SOURCES: list[str] = cfg("security.csp.style_sources", ["https://fonts.googleapis.com"])
PERMISSIONS_POLICY = cfg("security.permissions_policy", "geolocation=(), microphone=(), camera=()")

# Named sliding-window limiters: kind -> (limit, window seconds)
_DEFAULT_RATE_LIMITS = {
    "default": {"limit": 20, "window_sec": 10},
    "forced_slow_mode": {"limit": 1, "window_sec": 30},
    "auth": {"limit": 5, "window_sec": 10},
    "api": {"limit": 30, "window_sec": 60},
    "api_v1": {"limit": 60, "window_sec": 60},
    "ai": {"limit": 20, "window_sec": 60 * 60 * 24},
}
RATE_LIMITS: dict[str, dict] = {
    kind: {**defaults, **(cfg(f"rate_limits.{kind}", {}) or {})}
    for kind, defaults in _DEFAULT_RATE_LIMITS.items()
}

# Outbound request governor
GOVERNOR_DEFAULT_POLICY = {
    "min_interval": cfg("governor.default_policy.min_interval_sec", 0.1),
    "max_requests": cfg("governor.default_policy.max_requests", 10),
    "window": cfg("governor.default_policy.window_sec", 60.0),
}
# Substring patterns; a pattern wrapped in slashes ("/.../") is a regex
GOVERNOR_ENDPOINT_POLICIES: dict[str, dict] = cfg("governor.endpoint_policies", {
    "/api/v1/sanity": {"min_interval_sec": 0.2, "max_requests": 5, "window_sec": 60.0},
    "/api/v1/github": {"min_interval_sec": 0.5, "max_requests": 3, "window_sec": 60.0},
    "/api/v1/spotify": {"min_interval_sec": 0.3, "max_requests": 5, "window_sec": 60.0},
    "/\\/api\\/v1\\/(now-playing|top-artists|top-tracks)/": {
        "min_interval_sec": 0.3, "max_requests": 5, "window_sec": 60.0,
    },
})
GOVERNOR_SWEEP_INTERVAL = cfg("governor.sweep_interval_sec", 30.0)
GOVERNOR_STALE_AFTER = cfg("governor.stale_after_sec", 300.0)
GOVERNOR_MAX_BACKOFF_INTERVAL = cfg("governor.max_backoff_interval_sec", 5.0)
HTTP_TIMEOUT = cfg("governor.http_timeout_sec", 30.0)


# ---------------------------------------------------------------------------
# Startup validation
# ---------------------------------------------------------------------------

def validate_config():
    """Validate critical config values. Call during app startup (not at import time).

    Raises ConfigError for fatal issues, logs warnings for non-fatal ones.
    """
    import logging
    _logger = logging.getLogger("edgeguard.config")

    # Fatal: port must be valid
    if not isinstance(PORT, int) or not (1 <= PORT <= 65535):
        raise ConfigError(f"server.port must be 1-65535, got {PORT}")

    # Fatal: store URL must be a redis URL
    scheme = urlparse(REDIS_URL).scheme
    if scheme not in ("redis", "rediss", "unix"):
        raise ConfigError(f"store.redis_url must use redis://, rediss:// or unix://, got '{REDIS_URL}'")

    # Fatal: every limiter needs a positive quota and window
    for kind, settings in RATE_LIMITS.items():
        limit = settings.get("limit")
        window = settings.get("window_sec")
        if not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0:
            raise ConfigError(f"rate_limits.{kind}.limit must be a positive integer, got {limit}")
        if not isinstance(window, (int, float)) or window <= 0:
            raise ConfigError(f"rate_limits.{kind}.window_sec must be > 0, got {window}")

    # Fatal: path rules must name a known limiter
    for rule in RATE_LIMIT_PATH_RULES:
        if len(rule) != 2 or rule[1] not in RATE_LIMITS:
            raise ConfigError(f"security.rate_limit_path_rules entry is invalid: {rule}")

    # Fatal: governor intervals must be sane
    for label, val in [("governor.sweep_interval_sec", GOVERNOR_SWEEP_INTERVAL),
                       ("governor.stale_after_sec", GOVERNOR_STALE_AFTER),
                       ("governor.max_backoff_interval_sec", GOVERNOR_MAX_BACKOFF_INTERVAL)]:
        if not isinstance(val, (int, float)) or val <= 0:
            raise ConfigError(f"{label} must be > 0, got {val}")

    # Warning: admin API unusable without a token
    if not ADMIN_API_TOKEN:
        _logger.warning(
            "EDGEGUARD_ADMIN_TOKEN is not set; the admin ban API will reject all requests"
        )
    elif len(ADMIN_API_TOKEN) < 32:
        _logger.warning("EDGEGUARD_ADMIN_TOKEN is shorter than 32 characters")

    # Warning: running production without enforcement
    if IS_PRODUCTION and not ENFORCE_RATE_LIMITS:
        _logger.warning("Rate limiting is disabled in production")
    if IS_PRODUCTION and not ENFORCE_BANS:
        _logger.warning("Ban enforcement is disabled in production")


class ConfigError(Exception):
    """Raised when critical configuration is invalid."""
