"""
Utility functions for the webhook routes.
"""

import hmac
import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


def extract_webhook_token(header_token: Optional[str], payload: Any) -> Optional[str]:
    """
    Shared token sent by the gateway.

    Evolution API puts the instance api key in the body ("apikey"); WAHA and
    reverse proxies can send it as an "apikey" header instead.
    """
    if header_token:
        return header_token
    if isinstance(payload, dict):
        token = payload.get("apikey")
        if isinstance(token, str):
            return token
    return None


def verify_shared_token(token: Optional[str], secret: Optional[str]) -> bool:
    """
    Check a presented token against a configured shared secret.

    Args:
        token: Token presented by the caller (header, body or query string)
        secret: WEBHOOK_TOKEN or WS_TOKEN; when unset, every request is accepted

    Returns:
        True if the request is authorized, False otherwise
    """
    if not secret:
        return True

    if not token:
        logger.warning("Shared token missing")
        return False

    # Constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8"))
    logger.debug(f"Token verification: {'valid' if is_valid else 'invalid'}")

    return is_valid
