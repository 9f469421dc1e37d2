"""Environment-driven settings for the bridge server and the hook client."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from os import getenv
from typing import Optional, Tuple

from approval_bridge import constants

logger = logging.getLogger(__name__)


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def parse_weekdays(value: str) -> Tuple[int, ...]:
    """Parse ``"1,2,3,4,5"`` into weekday numbers (0 = Sunday ... 6 = Saturday)."""
    days = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            day = int(part)
        except ValueError:
            logger.warning("Ignoring invalid weekday %r", part)
            continue
        if 0 <= day <= 6:
            days.append(day)
    return tuple(days)


@dataclass(frozen=True)
class WorkingHoursConfig:
    enabled: bool = True
    timezone: str = "Asia/Shanghai"
    weekdays: Tuple[int, ...] = (1, 2, 3, 4, 5)
    start_hour: int = 9
    end_hour: int = 18


@dataclass
class Settings:
    host: str = constants.SERVER_HOST
    port: int = constants.SERVER_PORT
    hook_secret: str = ""

    auth_ttl_seconds: float = 300.0

    feishu_app_id: Optional[str] = None
    feishu_app_secret: Optional[str] = None
    feishu_base_url: str = "https://open.feishu.cn/open-apis"
    feishu_verification_token: Optional[str] = None
    feishu_target_id: Optional[str] = None
    feishu_admin_user_id: Optional[str] = None

    alert_auth_delay_minutes: float = 5.0
    alert_task_delay_minutes: float = 10.0
    alert_tick_seconds: float = 5.0
    working_hours: WorkingHoursConfig = field(default_factory=WorkingHoursConfig)


@dataclass
class HookSettings:
    bridge_url: str = f"http://localhost:{constants.SERVER_PORT}"
    hook_secret: str = ""
    poll_interval_seconds: float = 2.0
    poll_timeout_seconds: float = 120.0
    request_timeout_seconds: float = 10.0


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    hook_secret = getenv("HOOK_SECRET", "")
    if not hook_secret:
        logger.warning("HOOK_SECRET not set; hook endpoints accept unauthenticated requests")

    return Settings(
        host=getenv("BRIDGE_HOST", constants.SERVER_HOST),
        port=int(getenv("BRIDGE_PORT", str(constants.SERVER_PORT))),
        hook_secret=hook_secret,
        auth_ttl_seconds=float(getenv("AUTH_TTL_SECONDS", "300")),
        feishu_app_id=getenv("FEISHU_APP_ID"),
        feishu_app_secret=getenv("FEISHU_APP_SECRET"),
        feishu_base_url=getenv("FEISHU_BASE_URL", "https://open.feishu.cn/open-apis"),
        feishu_verification_token=getenv("FEISHU_VERIFICATION_TOKEN") or None,
        feishu_target_id=getenv("FEISHU_TARGET_ID"),
        feishu_admin_user_id=getenv("FEISHU_ADMIN_USER_ID"),
        alert_auth_delay_minutes=float(getenv("ALERT_AUTH_DELAY_MINUTES", "5")),
        alert_task_delay_minutes=float(getenv("ALERT_TASK_DELAY_MINUTES", "10")),
        alert_tick_seconds=float(getenv("ALERT_TICK_SECONDS", "5")),
        working_hours=WorkingHoursConfig(
            enabled=_as_bool(getenv("VOICE_ALERT_WORKING_HOURS_ENABLED"), True),
            timezone=getenv("VOICE_ALERT_TIMEZONE", "Asia/Shanghai"),
            weekdays=parse_weekdays(getenv("VOICE_ALERT_WEEKDAYS", "1,2,3,4,5")),
            start_hour=int(getenv("VOICE_ALERT_START_HOUR", "9")),
            end_hour=int(getenv("VOICE_ALERT_END_HOUR", "18")),
        ),
    )


def get_hook_settings() -> HookSettings:
    """Read per invocation; hook processes are short lived."""
    return HookSettings(
        bridge_url=getenv("FEISHU_BRIDGE_URL", f"http://localhost:{constants.SERVER_PORT}").rstrip("/"),
        hook_secret=getenv("HOOK_SECRET", ""),
        poll_interval_seconds=int(getenv("AUTH_POLL_INTERVAL_MS", "2000")) / 1000,
        poll_timeout_seconds=int(getenv("AUTH_POLL_TIMEOUT_MS", "120000")) / 1000,
    )
