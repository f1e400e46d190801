"""Pending-action confirmation handshake.

A caller stages a proposed action for an owner, the owner replies, and the
reply is classified as approve/deny/none. Approval atomically consumes the
staged proposal so it can be executed at most once. Expiry is a stored
timestamp checked lazily on every access; :meth:`ConfirmationManager.sweep_expired`
can additionally be called periodically to bound memory.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Literal

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 5 * 60

APPROVE_VOCABULARY = (
    "yes", "y", "yeah", "yep", "yup", "confirm", "confirmed", "ok", "okay",
    "sure", "go", "do it", "proceed", "approve", "approved", "👍",
)
DENY_VOCABULARY = (
    "no", "n", "nah", "nope", "cancel", "stop", "abort", "don't", "dont",
    "nevermind", "never mind", "reject", "deny", "👎",
)

# Read-only or low-risk actions that never need a confirmation round-trip.
ACTIONS_WITHOUT_CONFIRMATION = frozenset({
    "check-status", "project-status", "git status", "pm2 status", "pm2 logs",
    "health-check", "list", "view", "read", "show", "get", "process-receipt",
    "log-receipt", "scan-receipt", "check-deadlines", "list-deadlines",
    "check-reminders", "npm test", "npm run test", "npm run lint",
    "npm run build", "npm ci", "git log", "git branch", "ls", "pwd", "uptime",
})

ACTIONS_REQUIRING_CONFIRMATION = frozenset({
    "agent_session", "deploy", "deploy-project", "git pull", "pm2 restart",
    "pm2 stop", "pm2 start", "npm install", "npm run dev", "npm start",
    "create-page", "create-feature", "create-component", "create-repo",
    "create-branch", "file-taxes", "submit-filing", "submit-accounts",
    "pay-invoice", "approve-payment", "delete", "delete-file", "delete-branch",
    "delete-task", "remove", "send-email", "publish", "post",
    "change-settings", "update-config", "generate-image", "generate-logo",
})

_DESTRUCTIVE_RE = re.compile(r"delete|remove|destroy|drop|purge|wipe", re.IGNORECASE)
_RISKY_PREFIXES = ("deploy", "create", "delete", "remove", "send", "publish", "submit", "file", "pay")
_TOKEN_RE = re.compile(r"[\w']+|👍|👎")


class Verdict(str, Enum):
    APPROVE = "approve"
    DENY = "deny"
    NONE = "none"


@dataclass(slots=True)
class PendingConfirmation:
    """A proposed action awaiting an explicit yes/no from its owner."""

    owner_id: str
    action: str
    params: dict[str, Any]
    context: dict[str, Any]
    created_at: datetime
    expires_at: datetime

    def expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(slots=True)
class ConsumeResult:
    status: Literal["consumed", "expired", "absent"]
    pending: PendingConfirmation | None = None

    @property
    def ok(self) -> bool:
        return self.status == "consumed"


def _phrases(vocabulary: tuple[str, ...]) -> tuple[tuple[str, ...], ...]:
    return tuple(tuple(_TOKEN_RE.findall(entry.lower())) for entry in vocabulary)


def _contains_phrase(tokens: list[str], phrases: tuple[tuple[str, ...], ...]) -> bool:
    for phrase in phrases:
        width = len(phrase)
        for start in range(len(tokens) - width + 1):
            if tuple(tokens[start : start + width]) == phrase:
                return True
    return False


class ConfirmationManager:
    """Holds at most one live pending confirmation per owner."""

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] | None = None,
        approve_vocabulary: tuple[str, ...] = APPROVE_VOCABULARY,
        deny_vocabulary: tuple[str, ...] = DENY_VOCABULARY,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._approve = _phrases(approve_vocabulary)
        self._deny = _phrases(deny_vocabulary)
        self._pending: dict[str, PendingConfirmation] = {}

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def _live(self, owner_id: str) -> tuple[PendingConfirmation | None, bool]:
        """Return the live entry and whether an expired one was purged."""

        pending = self._pending.get(owner_id)
        if pending is None:
            return None, False
        if pending.expired(self._clock()):
            del self._pending[owner_id]
            logger.info(
                "Pending confirmation expired",
                extra={"owner_id": owner_id, "action": pending.action},
            )
            return None, True
        return pending, False

    def stage(
        self,
        owner_id: str,
        action: str,
        params: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
        *,
        ttl_seconds: float | None = None,
    ) -> PendingConfirmation:
        """Stage ``action`` for ``owner_id``, replacing any live proposal."""

        ttl = timedelta(seconds=ttl_seconds) if ttl_seconds is not None else self._ttl
        now = self._clock()
        previous, _ = self._live(owner_id)
        if previous is not None:
            logger.warning(
                "Replacing pending confirmation",
                extra={
                    "owner_id": owner_id,
                    "replaced_action": previous.action,
                    "action": action,
                },
            )

        pending = PendingConfirmation(
            owner_id=owner_id,
            action=action,
            params=dict(params or {}),
            context=dict(context or {}),
            created_at=now,
            expires_at=now + ttl,
        )
        self._pending[owner_id] = pending
        logger.info("Pending confirmation staged", extra={"owner_id": owner_id, "action": action})
        return pending

    def classify(self, text: str | None) -> Verdict:
        tokens = _TOKEN_RE.findall((text or "").lower())
        if not tokens:
            return Verdict.NONE
        approves = _contains_phrase(tokens, self._approve)
        denies = _contains_phrase(tokens, self._deny)
        if approves and not denies:
            return Verdict.APPROVE
        if denies and not approves:
            return Verdict.DENY
        return Verdict.NONE

    def consume(self, owner_id: str) -> ConsumeResult:
        pending, purged = self._live(owner_id)
        if purged:
            return ConsumeResult(status="expired")
        if pending is None:
            return ConsumeResult(status="absent")
        del self._pending[owner_id]
        logger.info("Pending confirmation approved", extra={"owner_id": owner_id, "action": pending.action})
        return ConsumeResult(status="consumed", pending=pending)

    def deny(self, owner_id: str) -> bool:
        pending, _ = self._live(owner_id)
        if pending is None:
            return False
        del self._pending[owner_id]
        logger.info("Pending confirmation denied", extra={"owner_id": owner_id, "action": pending.action})
        return True

    def has_pending(self, owner_id: str) -> bool:
        pending, _ = self._live(owner_id)
        return pending is not None

    def get(self, owner_id: str) -> PendingConfirmation | None:
        pending, _ = self._live(owner_id)
        return pending

    def time_remaining(self, owner_id: str) -> timedelta | None:
        pending, _ = self._live(owner_id)
        if pending is None:
            return None
        remaining = pending.expires_at - self._clock()
        return remaining if remaining > timedelta(0) else timedelta(0)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        now = self._clock()
        return {
            owner_id: {
                "action": pending.action,
                "params": pending.params,
                "created_at": pending.created_at.isoformat(),
                "expires_at": pending.expires_at.isoformat(),
                "seconds_remaining": int((pending.expires_at - now).total_seconds()),
            }
            for owner_id, pending in self._pending.items()
            if not pending.expired(now)
        }

    def sweep_expired(self) -> int:
        now = self._clock()
        expired = [owner for owner, pending in self._pending.items() if pending.expired(now)]
        for owner_id in expired:
            del self._pending[owner_id]
        if expired:
            logger.info("Swept expired confirmations", extra={"count": len(expired)})
        return len(expired)

    def clear(self) -> int:
        count = len(self._pending)
        self._pending.clear()
        return count


def requires_confirmation(action: str | None) -> bool:
    """Return whether ``action`` must go through the confirmation handshake."""

    normalized = (action or "").strip().lower()
    if normalized in ACTIONS_WITHOUT_CONFIRMATION:
        return False
    if normalized in ACTIONS_REQUIRING_CONFIRMATION:
        return True
    if _DESTRUCTIVE_RE.search(normalized):
        return True
    return normalized.startswith(_RISKY_PREFIXES)


__all__ = [
    "ACTIONS_REQUIRING_CONFIRMATION",
    "ACTIONS_WITHOUT_CONFIRMATION",
    "ConfirmationManager",
    "ConsumeResult",
    "PendingConfirmation",
    "Verdict",
    "requires_confirmation",
]
