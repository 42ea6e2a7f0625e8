from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from leadlock.services.phones import normalize_phone
from leadlock.store import ServiceState

logger = logging.getLogger("leadlock")

ENDED_MARKERS = ("disconnected", "ended", "completed")


def dig(payload: Any, *path: str) -> Any:
    """Follow ``path`` through nested dicts; ``None`` as soon as a step is missing."""
    current = payload
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _first_text(*values: Any) -> str:
    for value in values:
        if value is None or isinstance(value, (dict, list)):
            continue
        text = str(value)
        if text:
            return text
    return ""


def status_code(payload: Any) -> str:
    return _first_text(
        dig(payload, "body", "party", "status", "code"),
        dig(payload, "body", "status", "code"),
        dig(payload, "body", "party", "status"),
        dig(payload, "body", "status"),
    )


def is_call_ended(payload: Any) -> bool:
    status = status_code(payload).lower()
    return any(marker in status for marker in ENDED_MARKERS)


def call_direction(payload: Any) -> str:
    return _first_text(
        dig(payload, "body", "party", "direction"),
        dig(payload, "body", "direction"),
    ).lower()


def extract_phone(payload: Any, default_country_code: str = "1") -> Optional[str]:
    candidates = [
        dig(payload, "body", "party", "to", "phoneNumber"),
        dig(payload, "body", "party", "from", "phoneNumber"),
        dig(payload, "body", "to", "phoneNumber"),
        dig(payload, "body", "from", "phoneNumber"),
    ]
    parties = dig(payload, "body", "parties")
    if isinstance(parties, list):
        for party in parties:
            candidates.append(dig(party, "to", "phoneNumber"))
            candidates.append(dig(party, "from", "phoneNumber"))
    for candidate in candidates:
        phone = normalize_phone(candidate, default_country_code)
        if phone:
            return phone
    return None


def event_fingerprint(payload: Any) -> str:
    """``session|party|status|timestamp``; empty when none of the parts are present."""
    session_id = _first_text(
        dig(payload, "body", "telephonySessionId"),
        dig(payload, "telephonySessionId"),
        dig(payload, "uuid"),
        dig(payload, "id"),
    )
    party_id = _first_text(dig(payload, "body", "party", "id"), dig(payload, "body", "partyId"))
    status = _first_text(
        dig(payload, "body", "party", "status", "code"),
        dig(payload, "body", "status", "code"),
    )
    timestamp = _first_text(
        dig(payload, "timestamp"),
        dig(payload, "eventTime"),
        dig(payload, "body", "eventTime"),
    )
    parts = (session_id, party_id, status, timestamp)
    if not any(parts):
        return ""
    return "|".join(parts)


@dataclass(frozen=True)
class IntakeDecision:
    counted: bool
    reason: str
    phone: Optional[str] = None
    fingerprint: str = ""


class CallEventIntake:
    """Decides whether a telephony event counts toward a lead's lock, and queues it."""

    def __init__(
        self,
        state: ServiceState,
        *,
        count_outbound: bool = True,
        count_inbound: bool = False,
        default_country_code: str = "1",
    ) -> None:
        self.state = state
        self.count_outbound = count_outbound
        self.count_inbound = count_inbound
        self.default_country_code = default_country_code

    def process(self, payload: Any) -> IntakeDecision:
        self.state.metrics.record_webhook_event()

        if not is_call_ended(payload):
            return IntakeDecision(counted=False, reason="not_ended")

        direction = call_direction(payload)
        if "out" in direction and not self.count_outbound:
            return IntakeDecision(counted=False, reason="outbound_ignored")
        if "in" in direction and not self.count_inbound:
            return IntakeDecision(counted=False, reason="inbound_ignored")

        phone = extract_phone(payload, self.default_country_code)
        if not phone:
            return IntakeDecision(counted=False, reason="no_phone")

        fingerprint = event_fingerprint(payload)
        if self.state.dedupe.check_and_remember(fingerprint):
            return IntakeDecision(
                counted=False, reason="duplicate", phone=phone, fingerprint=fingerprint
            )

        self.state.pending.queue(phone, 1, event_id=fingerprint)
        self.state.metrics.record_counted_event(queued=1)
        logger.info("call_counted phone=%s event=%s", phone, fingerprint)
        return IntakeDecision(counted=True, reason="counted", phone=phone, fingerprint=fingerprint)

    def process_safely(self, payload: Any) -> Optional[IntakeDecision]:
        """Background entry point: never raises, records failures as the last error."""
        try:
            return self.process(payload)
        except Exception as exc:
            logger.exception("webhook_processing_failed")
            self.state.metrics.record_error("webhook", exc)
            return None
