"""Per-link connection state and reconnect bookkeeping."""

from __future__ import annotations

from enum import StrEnum

import structlog

from wxbridge.core.backoff import DEFAULT_BASE_DELAY, DEFAULT_MAX_DELAY, compute_delay

logger = structlog.get_logger()


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"


class ReconnectTracker:
    """Counts reconnect decisions for one link and enforces the attempt cap.

    The counter only resets through :meth:`reset`, which sessions call when
    the link reaches its ready state (``connected`` for the messaging socket,
    ``authenticated`` for the gateway).
    """

    def __init__(
        self,
        name: str,
        *,
        max_attempts: int = 10,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
    ) -> None:
        self.name = name
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.attempts = 0

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def next_delay(self) -> float | None:
        """Record one reconnect decision and return its delay.

        Returns None once the cap is reached; the caller must stop
        reconnecting.
        """
        if self.exhausted:
            logger.error(
                "reconnect_exhausted",
                link=self.name,
                attempts=self.attempts,
                max_attempts=self.max_attempts,
            )
            return None
        self.attempts += 1
        delay = compute_delay(self.attempts, self.base_delay, self.max_delay)
        logger.info(
            "reconnect_scheduled",
            link=self.name,
            attempt=self.attempts,
            max_attempts=self.max_attempts,
            delay=delay,
        )
        return delay

    def reset(self) -> None:
        self.attempts = 0
