"""Operator alerts (Telegram chat) for failures nobody sees in the UI.

Raised for AI retry exhaustion, unexpected dispatch errors, unreachable
WhatsApp-Web bridges and disconnected bridge sessions. The same alert is
sent at most once per ``ALERT_COOLDOWN_SECONDS`` so a dead bridge does not
produce one alert per queued message.
"""

import os
import threading
import time
from typing import Optional

import httpx

from chatrelay.logging_config import get_logger

logger = get_logger("alert_service")

ALERT_BOT_TOKEN = os.environ.get("ALERT_BOT_TOKEN")
ALERT_CHAT_ID = os.environ.get("ALERT_CHAT_ID")
ALERT_SERVICE_NAME = os.environ.get("ALERT_SERVICE_NAME", "chatrelay")
ALERT_COOLDOWN_SECONDS = float(os.environ.get("ALERT_COOLDOWN_SECONDS", "60"))

LEVEL_ICONS = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}

_recent: dict[tuple[str, str], float] = {}
_recent_lock = threading.Lock()


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    lines = [f"{LEVEL_ICONS.get(level, '📢')} *{level}* [{ALERT_SERVICE_NAME}]", "", message]
    if context:
        details = "\n".join(f"  {key}: {value}" for key, value in context.items())
        lines += ["", f"```\n{details}\n```"]
    return "\n".join(lines)


def reset_cooldowns() -> None:
    with _recent_lock:
        _recent.clear()


def _in_cooldown(level: str, message: str) -> bool:
    key = (level, message)
    now = time.monotonic()
    with _recent_lock:
        last = _recent.get(key)
        if last is not None and now - last < ALERT_COOLDOWN_SECONDS:
            return True
        _recent[key] = now
    return False


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Post one alert to the operators' chat.

    Returns True only when Telegram accepted it. Missing configuration,
    cooldown suppression and transport errors are logged and return False.
    """
    if not ALERT_BOT_TOKEN or not ALERT_CHAT_ID:
        logger.warning(f"Alert not configured: {level} - {message}", extra={"context": context or {}})
        return False

    if _in_cooldown(level, message):
        logger.info("Alert suppressed by cooldown", extra={"context": {"level": level, "alert": message}})
        return False

    payload = {"chat_id": ALERT_CHAT_ID, "text": format_alert(level, message, context), "parse_mode": "Markdown"}
    try:
        with httpx.Client(timeout=10) as client:
            response = client.post(f"https://api.telegram.org/bot{ALERT_BOT_TOKEN}/sendMessage", json=payload)
    except httpx.HTTPError as e:
        logger.error(f"Failed to send alert: {e}", extra={"context": {"level": level, "alert": message}})
        return False

    if response.status_code != 200:
        logger.error(
            "Telegram rejected alert",
            extra={"context": {"level": level, "alert": message, "status": response.status_code}},
        )
        return False
    return True


def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("WARNING", message, context)


def alert_error(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("ERROR", message, context)


def alert_critical(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("CRITICAL", message, context)
