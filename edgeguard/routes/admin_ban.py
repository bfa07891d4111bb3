#  EdgeGuard - Admin Ban Routes
#
#  Single action-dispatching endpoint for operators to manage bans,
#  slow mode and CIDR ranges.
#
#  Depends on: container.py, middleware/admin.py, models/schemas.py,
#              services/ban_registry.py
#  Used by:    app.py

import logging

from dependency_injector.wiring import inject, Provide
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from edgeguard.container import Container
from edgeguard.exceptions import InvalidCidrError, InvalidIdentifierError, StoreUnavailableError
from edgeguard.middleware.admin import require_admin_token
from edgeguard.models.enums import BanAction
from edgeguard.models.schemas import BanError, BanRequest, BanResponse
from edgeguard.services.ban_registry import BanRegistry
from edgeguard.services.cidr_matcher import is_loopback

logger = logging.getLogger("edgeguard.admin")

router = APIRouter(prefix="/admin", tags=["admin"])

# Actions that operate on a single identifier / a single range
_NEEDS_IP = {BanAction.BAN, BanAction.UNBAN, BanAction.SLOW, BanAction.UNSLOW, BanAction.GET_META}
_NEEDS_CIDR = {BanAction.BAN_CIDR, BanAction.UNBAN_CIDR}


def _error(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=BanError(error=error).model_dump(),
    )


@router.post("/ban")
@inject
async def ban_operation(
    body: BanRequest,
    admin_ip: str = Depends(require_admin_token),
    bans: BanRegistry = Depends(Provide[Container.ban_registry]),
):
    """Ban, unban, slow, unslow, manage CIDR ranges, list and inspect."""
    try:
        action = BanAction(body.action)
    except ValueError:
        return _error(400, f"Invalid action: {body.action}")

    ip = (body.ip or "").strip()
    cidr = (body.cidr or "").strip()
    if action in _NEEDS_IP and not ip:
        return _error(400, "IP address is required")
    if action in _NEEDS_CIDR and not cidr:
        return _error(400, "CIDR range is required")

    banned_by = body.banned_by or f"admin@{admin_ip}"

    try:
        message, data = await _dispatch(bans, action, ip, cidr, body, banned_by)
    except (InvalidCidrError, InvalidIdentifierError) as e:
        return _error(400, str(e))
    except StoreUnavailableError as e:
        logger.error("Ban operation %s failed: %s", action.value, e, extra={"action": action.value})
        return _error(500, "Failed to process ban operation")

    logger.info("Admin %s performed %s (ip=%s, cidr=%s)", admin_ip, action.value, ip or "-", cidr or "-",
                extra={"action": action.value})
    return BanResponse(message=message, data=data)


async def _dispatch(
    bans: BanRegistry,
    action: BanAction,
    ip: str,
    cidr: str,
    body: BanRequest,
    banned_by: str,
) -> tuple[str, object]:
    if action in (BanAction.BAN, BanAction.SLOW) and is_loopback(ip):
        raise InvalidIdentifierError(f"Cannot {action.value} loopback address {ip}")

    if action == BanAction.BAN:
        await bans.ban(ip, reason=body.reason, ttl=body.seconds, banned_by=banned_by)
        suffix = f" for {body.seconds:g}s" if body.seconds else ""
        return f"IP {ip} banned{suffix}", None

    if action == BanAction.UNBAN:
        await bans.unban(ip)
        return f"IP {ip} unbanned", None

    if action == BanAction.SLOW:
        await bans.slow(ip, reason=body.reason)
        return f"IP {ip} added to slow mode", None

    if action == BanAction.UNSLOW:
        await bans.unslow(ip)
        return f"IP {ip} removed from slow mode", None

    if action == BanAction.BAN_CIDR:
        await bans.ban_cidr(cidr, reason=body.reason, ttl=body.seconds, banned_by=banned_by)
        return f"CIDR range {cidr} banned", None

    if action == BanAction.UNBAN_CIDR:
        await bans.unban_cidr(cidr)
        return f"CIDR range {cidr} unbanned", None

    if action == BanAction.LIST:
        banned = await bans.list_banned()
        slowed = await bans.list_slowed()
        return "Ban lists retrieved", {"banned": banned, "slowed": slowed}

    if action == BanAction.LIST_CIDR:
        return "Banned CIDR ranges retrieved", {"cidrs": await bans.list_banned_cidrs()}

    # GET_META
    return "Metadata retrieved", {
        "ip": ip,
        "banned": await bans.is_banned(ip),
        "slowed": await bans.is_slowed(ip),
        "ban": await bans.get_ban_metadata(ip),
        "slow": await bans.get_slow_metadata(ip),
    }
