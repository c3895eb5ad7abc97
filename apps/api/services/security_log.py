"""Structured security event logging."""

from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from typing import Any, Dict, Optional

from fastapi import Request


logger = logging.getLogger("imagenius.security")

SEVERITY_LEVELS = {
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.WARNING,
    "critical": logging.ERROR,
}


def request_info(request: Optional[Request]) -> Dict[str, Optional[str]]:
    """Extract ip, user agent and origin for event context."""
    if request is None:
        return {"ip": None, "user_agent": None, "origin": None}

    ip = None
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip() or None
    if not ip:
        ip = request.headers.get("x-real-ip")
    if not ip and request.client and request.client.host:
        ip = request.client.host
    return {
        "ip": ip,
        "user_agent": request.headers.get("user-agent"),
        "origin": request.headers.get("origin"),
    }


def log_security_event(
    event_type: str,
    severity: str,
    *,
    user_id: Optional[str] = None,
    request: Optional[Request] = None,
    **details: Any,
) -> None:
    """Emit one JSON line per security event. Never raises."""
    try:
        info = request_info(request)
        payload = {
            "type": "SECURITY_EVENT",
            "event": event_type,
            "severity": severity,
            "userId": user_id,
            "ip": info["ip"],
            "userAgent": info["user_agent"],
            "details": details,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        logger.log(SEVERITY_LEVELS.get(severity, logging.WARNING), json.dumps(payload, default=str))
    except Exception:
        logger.exception("Failed to log security event %s", event_type)
