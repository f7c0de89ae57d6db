"""
Client IP resolution for per-IP limits on the event stream.

Only trust X-Forwarded-For when DockGuard sits behind a reverse proxy you
control: with DOCKGUARD_REVERSE_PROXY_MODE on and the port directly exposed,
any client can spoof the header and dodge the per-IP connection cap.
"""

import logging
from fastapi import Request
from config.settings import AppConfig

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """
    Address the per-IP SSE connection limit is counted against.

    REVERSE_PROXY_MODE on: first X-Forwarded-For entry, else X-Real-IP.
    Otherwise (or when neither header is present): the socket peer.
    """
    if AppConfig.REVERSE_PROXY_MODE:
        # "client, proxy1, proxy2"
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()

        logger.warning(
            "REVERSE_PROXY_MODE enabled but request has neither X-Forwarded-For nor X-Real-IP, "
            "using the socket peer address"
        )

    return request.client.host if request.client else "unknown"
