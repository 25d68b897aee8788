"""Reconnection policy: disconnect cause → recovery action.

The protocol library reports *why* a session closed through a numeric
status code and a free-text message.  :meth:`DisconnectCause.from_status`
classifies that into a closed enum, and :meth:`ReconnectionPolicy.decide`
maps ``(cause, has_valid_session)`` to exactly one :data:`Action`.

Decision table, evaluated in priority order:

====  ==========================  ==========================================
 #    Condition                   Action
====  ==========================  ==========================================
 1    durable status disconnected ``StopNoAction``
 2    conflict                    ``StopAndReportConflict``
 3    restart required            ``RetryWithCredentials(restart_delay)``
                                  or ``RetryFresh(restart_delay)``
 4    authentication failure      ``RetryFresh(auth_failure_delay,
                                  clear_session=True)``
 5    logged out                  ``StopAndClearSession``
 6    anything else               ``RetryWithCredentials(transient_delay)``
                                  or ``RetryFresh(transient_delay)``
====  ==========================  ==========================================

``decide`` is pure: no I/O, no clock, never raises.  Unrecognised causes
land in bucket 6.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TypeAlias
from enum import StrEnum

from devicelink._settings import SupervisorSettings

CONFLICT_MESSAGE = (
    "Conflict: this device is already connected elsewhere. "
    "Log out from the other session or re-enroll the device."
)


class DisconnectBucket(StrEnum):
    """Recovery bucket a disconnect cause folds into."""

    CONFLICT = "conflict"
    RESTART_REQUIRED = "restart_required"
    AUTH_FAILURE = "auth_failure"
    LOGGED_OUT = "logged_out"
    TRANSIENT = "transient"


class DisconnectCause(StrEnum):
    """Closed set of reasons a protocol session can close."""

    CONNECTION_CLOSED = "connection_closed"
    CONNECTION_LOST = "connection_lost"
    TIMED_OUT = "timed_out"
    KEEPALIVE_TIMEOUT = "keepalive_timeout"
    TRANSPORT_ERROR = "transport_error"
    STREAM_ERRORED = "stream_errored"
    SERVER_SHUTDOWN = "server_shutdown"
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE_SERVICE = "unavailable_service"
    CONNECTION_REPLACED = "connection_replaced"
    CONFLICT = "conflict"
    RESTART_REQUIRED = "restart_required"
    LOGGED_OUT = "logged_out"
    BAD_SESSION = "bad_session"
    FORBIDDEN = "forbidden"
    METHOD_NOT_ALLOWED = "method_not_allowed"
    MULTIDEVICE_MISMATCH = "multidevice_mismatch"
    UNKNOWN = "unknown"

    @property
    def bucket(self) -> DisconnectBucket:
        """The recovery bucket for this cause."""
        return _BUCKETS.get(self, DisconnectBucket.TRANSIENT)

    @classmethod
    def from_status(
        cls,
        status_code: int | None,
        message: str | None = None,
    ) -> DisconnectCause:
        """Classify a protocol close into a :class:`DisconnectCause`.

        Conflict and restart-required are also detected from the
        message text, since some transports report them without a
        status code.
        """
        text = (message or "").lower()
        if status_code == 440:
            return cls.CONNECTION_REPLACED
        if "conflict" in text:
            return cls.CONFLICT
        if status_code == 515 or "restart required" in text:
            return cls.RESTART_REQUIRED
        if status_code == 408 and "timed out" in text:
            return cls.TIMED_OUT
        if status_code is not None and status_code in _BY_STATUS:
            return _BY_STATUS[status_code]
        if "timed out" in text:
            return cls.TIMED_OUT
        return cls.UNKNOWN


_BY_STATUS: dict[int, DisconnectCause] = {
    401: DisconnectCause.LOGGED_OUT,
    403: DisconnectCause.FORBIDDEN,
    405: DisconnectCause.METHOD_NOT_ALLOWED,
    408: DisconnectCause.CONNECTION_LOST,
    411: DisconnectCause.MULTIDEVICE_MISMATCH,
    428: DisconnectCause.CONNECTION_CLOSED,
    429: DisconnectCause.RATE_LIMITED,
    440: DisconnectCause.CONNECTION_REPLACED,
    500: DisconnectCause.BAD_SESSION,
    503: DisconnectCause.UNAVAILABLE_SERVICE,
    515: DisconnectCause.RESTART_REQUIRED,
}

_BUCKETS: dict[DisconnectCause, DisconnectBucket] = {
    DisconnectCause.CONNECTION_REPLACED: DisconnectBucket.CONFLICT,
    DisconnectCause.CONFLICT: DisconnectBucket.CONFLICT,
    DisconnectCause.RESTART_REQUIRED: DisconnectBucket.RESTART_REQUIRED,
    DisconnectCause.BAD_SESSION: DisconnectBucket.AUTH_FAILURE,
    DisconnectCause.FORBIDDEN: DisconnectBucket.AUTH_FAILURE,
    DisconnectCause.METHOD_NOT_ALLOWED: DisconnectBucket.AUTH_FAILURE,
    DisconnectCause.MULTIDEVICE_MISMATCH: DisconnectBucket.AUTH_FAILURE,
    DisconnectCause.LOGGED_OUT: DisconnectBucket.LOGGED_OUT,
}

# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RetryWithCredentials:
    """Reconnect silently with stored credentials (recovery mode)."""

    delay: float


@dataclass(frozen=True, slots=True)
class RetryFresh:
    """Reconnect requiring enrollment.

    With ``clear_session`` the stored credentials are discarded first,
    since they were rejected by the remote side.
    """

    delay: float
    clear_session: bool = False


@dataclass(frozen=True, slots=True)
class StopAndClearSession:
    """Terminal: clear credentials, require manual re-enrollment."""


@dataclass(frozen=True, slots=True)
class StopAndReportConflict:
    """Terminal: identity in use elsewhere; surface *message*."""

    message: str = CONFLICT_MESSAGE


@dataclass(frozen=True, slots=True)
class StopNoAction:
    """The user stopped the device; leave everything as is."""


Action: TypeAlias = (
    RetryWithCredentials
    | RetryFresh
    | StopAndClearSession
    | StopAndReportConflict
    | StopNoAction
)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ReconnectionPolicy:
    """Pure decision table with configurable delays (seconds)."""

    restart_delay: float = 1.5
    auth_failure_delay: float = 1.0
    transient_delay: float = 0.5

    @classmethod
    def from_settings(cls, settings: SupervisorSettings) -> ReconnectionPolicy:
        """Build a policy from :class:`SupervisorSettings` delays."""
        return cls(
            restart_delay=settings.restart_delay,
            auth_failure_delay=settings.auth_failure_delay,
            transient_delay=settings.transient_delay,
        )

    def decide(
        self,
        cause: DisconnectCause,
        has_valid_session: bool,
        *,
        user_stopped: bool = False,
    ) -> Action:
        """Map a disconnect to the recovery action.

        Args:
            cause: Classified disconnect cause.
            has_valid_session: Whether durable credentials are registered.
            user_stopped: Durable status was ``disconnected`` when the
                close arrived (read from the store, not from memory).
        """
        if user_stopped:
            return StopNoAction()

        bucket = cause.bucket if isinstance(cause, DisconnectCause) else DisconnectBucket.TRANSIENT

        if bucket is DisconnectBucket.CONFLICT:
            return StopAndReportConflict()
        if bucket is DisconnectBucket.RESTART_REQUIRED:
            return self._retry(self.restart_delay, has_valid_session)
        if bucket is DisconnectBucket.AUTH_FAILURE:
            return RetryFresh(self.auth_failure_delay, clear_session=True)
        if bucket is DisconnectBucket.LOGGED_OUT:
            return StopAndClearSession()
        return self._retry(self.transient_delay, has_valid_session)

    @staticmethod
    def _retry(delay: float, has_valid_session: bool) -> Action:
        if has_valid_session:
            return RetryWithCredentials(delay)
        return RetryFresh(delay)


DEFAULT_POLICY = ReconnectionPolicy()


def decide(
    cause: DisconnectCause,
    has_valid_session: bool,
    *,
    user_stopped: bool = False,
) -> Action:
    """Module-level shortcut for :meth:`ReconnectionPolicy.decide` with defaults."""
    return DEFAULT_POLICY.decide(cause, has_valid_session, user_stopped=user_stopped)
