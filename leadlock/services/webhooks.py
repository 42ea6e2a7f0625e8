from __future__ import annotations

import hmac
from typing import Mapping, Optional

from starlette.datastructures import Headers

VALIDATION_TOKEN_HEADER = "Validation-Token"


class WebhookAuthError(Exception):
    pass


def _header_value(headers: Headers, candidates: list[str]) -> Optional[str]:
    for key in candidates:
        value = headers.get(key)
        if value:
            return value.strip()
    return None


def secrets_match(expected: str, provided: Optional[str]) -> bool:
    if provided is None:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def verify_webhook_secret(
    headers: Headers, query: Mapping[str, str], secret: str
) -> None:
    if not secret:
        return
    provided = _header_value(headers, ["x-webhook-secret"]) or query.get("secret")
    if not provided:
        raise WebhookAuthError("missing webhook secret")
    if not secrets_match(secret, provided):
        raise WebhookAuthError("invalid webhook secret")


def validation_token(headers: Headers) -> Optional[str]:
    """Subscription handshake token, echoed back verbatim when present."""
    return headers.get(VALIDATION_TOKEN_HEADER) or None
