"""
Audit logging for security-relevant events (login, callback outcome, CSRF/state failures, refresh, logout).
Records go to the "zauth.audit" logger. Never pass tokens, secrets, codes or cookie values.
"""
import logging

from fastapi import Request

EVENT_LOGIN_STARTED = "login_started"
EVENT_CALLBACK_OK = "callback_ok"
EVENT_CALLBACK_FAIL = "callback_fail"
EVENT_STATE_MISMATCH = "csrf_state_mismatch"
EVENT_STATE_MISSING = "transient_state_missing"
EVENT_CLAIM_VALIDATION_FAIL = "claim_validation_fail"
EVENT_SESSION_DECRYPT_FAIL = "session_decrypt_fail"
EVENT_TOKEN_REFRESHED = "token_refreshed"
EVENT_TOKEN_REFRESH_FAIL = "token_refresh_fail"
EVENT_LOGOUT = "logout"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"

audit_logger = logging.getLogger("zauth.audit")


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (request.client.host). Forwarding headers are not trusted here."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


def log_audit(
    event_type: str,
    *,
    outcome: str = OUTCOME_SUCCESS,
    request: Request | None = None,
    subject: str | None = None,
    reason: str | None = None,
) -> None:
    """Emit one audit record. Failures are logged at WARNING so operators see them without DEBUG."""
    level = logging.INFO if outcome == OUTCOME_SUCCESS else logging.WARNING
    audit_logger.log(
        level,
        "event=%s outcome=%s ip=%s sub=%s reason=%s",
        event_type,
        outcome,
        get_client_ip(request),
        subject,
        reason,
        extra={"event_type": event_type, "outcome": outcome},
    )
