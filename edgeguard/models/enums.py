#  EdgeGuard - Enums
#
#  Limiter kinds and admin ban actions.
#
#  Depends on: (none)
#  Used by:    models/schemas.py, services/limiter_bank.py, middleware/security.py,
#              routes/admin_ban.py

from enum import Enum


class LimiterKind(str, Enum):
    DEFAULT = "default"
    FORCED_SLOW_MODE = "forced_slow_mode"  # Applied to slowed identifiers regardless of path
    AUTH = "auth"
    API = "api"
    API_V1 = "api_v1"
    AI = "ai"                              # Cost-bearing endpoints


class BanAction(str, Enum):
    BAN = "ban"
    UNBAN = "unban"
    SLOW = "slow"
    UNSLOW = "unslow"
    BAN_CIDR = "ban-cidr"
    UNBAN_CIDR = "unban-cidr"
    LIST = "list"
    LIST_CIDR = "list-cidr"
    GET_META = "get-meta"
