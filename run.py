#  EdgeGuard - Entry Point
#
#  Launches the edge service via uvicorn. Forwarded headers are honoured
#  only from trusted proxies, so the socket peer used as the last-resort
#  client IP is the real caller.
#
#  Depends on: edgeguard/app.py, edgeguard/config.py, edgeguard/logging_config.py
#  Used by:    (run directly)

import logging
import sys

import uvicorn

from edgeguard.logging_config import setup_logging

logger = logging.getLogger("edgeguard.run")


def main():
    try:
        from edgeguard import config
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(
        level=config.cfg("server.log_level", "INFO"),
        fmt=config.cfg("server.log_format", "json"),
    )
    logger.info(
        "Starting EdgeGuard (%s) on %s:%s: bans %s, rate limits %s",
        config.ENVIRONMENT, config.HOST, config.PORT,
        "enforced" if config.ENFORCE_BANS else "off",
        "enforced" if config.ENFORCE_RATE_LIMITS else "off",
    )

    uvicorn.run(
        "edgeguard.app:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.cfg("server.reload", False) and not config.IS_PRODUCTION,
        proxy_headers=True,
        forwarded_allow_ips=config.TRUSTED_PROXIES,
        server_header=False,
    )


if __name__ == "__main__":
    main()
