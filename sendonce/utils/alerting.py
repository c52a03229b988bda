"""
Critical alerting - sends alerts on events that need operator attention.

Alert channels:
1. Structured log (always) - at ERROR or CRITICAL level
2. Webhook (configurable) - Discord/Slack URL via ALERT_WEBHOOK_URL env var

Rate limiting: Per-type cooldowns to prevent alert storms.
Cooldowns stored in Redis (survives restarts), in-memory fallback when Redis is down.
A cooldown of 0 disables rate limiting for that type.
"""
import logging
from typing import Optional

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_SECONDS = 300  # 5 minutes (default)

# Per-type cooldown overrides (seconds).
ALERT_COOLDOWN_OVERRIDES: dict[str, int] = {
    "partial_finalization": 0,       # every occurrence needs a manual re-run
    "finalizer_pass_failed": 900,    # 15 minutes
}

# In-memory fallback when Redis is down (cleared on restart, but prevents alert storms)
_local_cooldowns: dict[str, float] = {}  # alert_type -> expiry timestamp


def _get_cooldown_seconds(alert_type: str) -> int:
    """Get cooldown duration for an alert type (per-type override or default)."""
    return ALERT_COOLDOWN_OVERRIDES.get(alert_type, ALERT_COOLDOWN_SECONDS)


class AlertType:
    """Alert type constants."""
    PARTIAL_FINALIZATION = "partial_finalization"
    FINALIZER_PASS_FAILED = "finalizer_pass_failed"
    EVENT_FINALIZE_FAILED = "event_finalize_failed"
    HEALTH_CHECK_FAILED = "health_check_failed"


async def send_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str] = None,
    severity: str = "error",
    extra: Optional[dict] = None,
) -> None:
    """
    Send an alert through all configured channels.
    Rate-limited per alert type to prevent alert storms.
    """
    if not await _acquire_cooldown(alert_type):
        return

    from sendonce.utils.logging import get_correlation_id
    cid = correlation_id or get_correlation_id()

    log_message = f"ALERT [{alert_type}]: {message}"
    if cid:
        log_message += f" (correlation_id={cid})"

    if severity == "critical":
        logger.critical(log_message)
    else:
        logger.error(log_message)

    await _send_webhook_alert(alert_type, message, cid, extra, severity)


async def _acquire_cooldown(alert_type: str) -> bool:
    """
    Atomically check-and-set alert cooldown. Returns True if alert should be sent.

    Uses Redis SET NX EX (atomic) to eliminate the race between check and record.
    Falls back to in-memory dict when Redis is unavailable.
    """
    import time

    cooldown = _get_cooldown_seconds(alert_type)
    if cooldown <= 0:
        return True

    try:
        from sendonce.utils.redis_client import get_redis
        redis = await get_redis()
        cooldown_key = f"sendonce:alert_cooldown:{alert_type}"
        acquired = await redis.set(cooldown_key, "1", nx=True, ex=cooldown)
        return bool(acquired)
    except Exception as e:
        logger.debug("Alert cooldown Redis check failed, using in-memory fallback: %s", str(e))
        now = time.monotonic()
        expiry = _local_cooldowns.get(alert_type, 0)
        if now < expiry:
            return False
        _local_cooldowns[alert_type] = now + cooldown
        return True


async def _send_webhook_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
    severity: str = "error",
) -> None:
    """Send alert to configured webhook (Discord/Slack)."""
    try:
        from sendonce.config import get_settings
        settings = get_settings()

        webhook_url = getattr(settings, "alert_webhook_url", "")
        if not webhook_url:
            return

        import httpx

        severity_emoji = {"critical": "\U0001f6a8", "error": "❌", "warning": "⚠️"}.get(severity, "ℹ️")
        content = f"{severity_emoji} **{alert_type}**\n{message}"
        if correlation_id:
            content += f"\n`correlation_id: {correlation_id}`"
        if extra:
            for key, val in extra.items():
                content += f"\n`{key}: {val}`"

        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(webhook_url, json={"content": content})
    except Exception as e:
        # Alert sending failure should never crash the caller
        logger.warning("Failed to send webhook alert: %s", str(e))
