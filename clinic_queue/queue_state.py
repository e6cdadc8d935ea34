"""Token status transitions.

    waiting -> called -> served
    waiting -> skipped | cancelled
    called  -> waiting   (reverted when another token is called)
    called  -> skipped

``served``, ``skipped`` and ``cancelled`` are terminal.  Each ``mark_*``
function checks its guard first and leaves the token untouched when the
guard fails.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Dict, FrozenSet

from .errors import InvalidTransition
from .models import Token, TokenStatus

W, C = TokenStatus.waiting, TokenStatus.called

ALLOWED: Dict[str, FrozenSet[TokenStatus]] = {
    "call": frozenset({W}),
    "serve": frozenset({W, C}),
    "skip": frozenset({W, C}),
    "cancel": frozenset({W}),
    "force_cancel": frozenset({W, C}),
    "revert": frozenset({C}),
}


def ensure(token: Token, action: str) -> None:
    if token.status not in ALLOWED[action]:
        raise InvalidTransition(token.id, TokenStatus(token.status).value, action)


def mark_called(token: Token, now: datetime) -> Token:
    ensure(token, "call")
    token.status = TokenStatus.called
    token.called_at = now
    token.updated_at = now
    return token


def revert_to_waiting(token: Token, now: datetime) -> Token:
    ensure(token, "revert")
    token.status = TokenStatus.waiting
    token.called_at = None
    token.updated_at = now
    return token


def mark_served(token: Token, now: datetime) -> Token:
    ensure(token, "serve")
    token.status = TokenStatus.served
    token.served_at = now
    token.actual_wait_time = max(math.floor((now - token.created_at).total_seconds() / 60), 0)
    token.updated_at = now
    return token


def mark_skipped(token: Token, now: datetime) -> Token:
    ensure(token, "skip")
    token.status = TokenStatus.skipped
    token.called_at = None
    token.updated_at = now
    return token


def mark_cancelled(token: Token, now: datetime, reason: str, force: bool = False) -> Token:
    """Cancel a token.

    Patients may only cancel while waiting.  The operator path (``force``)
    also cancels a called token.
    """
    ensure(token, "force_cancel" if force else "cancel")
    token.status = TokenStatus.cancelled
    token.cancelled_at = now
    token.cancellation_reason = reason
    token.updated_at = now
    return token
