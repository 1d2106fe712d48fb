"""Client-side status poller.

A single-threaded, cooperative loop: a fixed-interval timer fires a fetch of
the status fragment endpoint, each response is handed to the renderer, and the
timer is cancelled once the response carries the terminal marker. Closing the
poller (session teardown) cancels the timer regardless of state.

The base behavior polls indefinitely; ``max_attempts`` and
``max_duration_seconds`` are opt-in circuit breakers.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import httpx

from image_taxonomy.web.contracts import STREAM_MEDIA_TYPE, TERMINAL_MARKER

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 2.0


class PollOutcome(str, Enum):
    """Why a polling session ended."""

    TERMINAL = "terminal"
    NOT_FOUND = "not_found"
    MAX_ATTEMPTS = "max_attempts"
    MAX_DURATION = "max_duration"
    CANCELED = "canceled"


@dataclass(slots=True)
class PollResult:
    """Summary of one polling session."""

    outcome: PollOutcome
    attempts: int
    last_fragment: str | None


class RepeatingTimer:
    """Fixed-interval scheduled task with cancellation.

    ``run`` blocks the calling thread, invoking ``callback`` once per interval
    until ``cancel`` is called (from the callback or from teardown code).
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], None],
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.interval_seconds = interval_seconds
        self._callback = callback
        self._clock = clock
        self._sleep = sleep
        self._canceled = False
        self.ticks = 0

    @property
    def canceled(self) -> bool:
        return self._canceled

    def cancel(self) -> None:
        self._canceled = True

    def run(self) -> int:
        """Fire the callback every interval until cancelled; return tick count."""

        next_fire = self._clock() + self.interval_seconds
        while not self._canceled:
            self._sleep_until(next_fire)
            if self._canceled:
                break
            self.ticks += 1
            self._callback()
            next_fire += self.interval_seconds
        return self.ticks

    def _sleep_until(self, deadline: float) -> None:
        while not self._canceled:
            remaining = deadline - self._clock()
            if remaining <= 0:
                return
            self._sleep(min(0.1, remaining))


class StatusPoller:
    """Polls one work item's status fragment until a terminal marker arrives."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        client: httpx.Client,
        url: str,
        on_fragment: Callable[[str], None],
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        max_attempts: int = 0,
        max_duration_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        owns_client: bool = False,
    ) -> None:
        self.client = client
        self.url = url
        self.on_fragment = on_fragment
        self.max_attempts = max_attempts
        self.max_duration_seconds = max_duration_seconds
        self._clock = clock
        self._owns_client = owns_client
        self._timer = RepeatingTimer(interval_seconds, self._tick, clock=clock, sleep=sleep)
        self._started_at: float | None = None
        self._next_sequence = 0
        self._last_rendered_sequence = 0
        self._attempts = 0
        self._outcome: PollOutcome | None = None
        self._last_fragment: str | None = None

    @classmethod
    def for_work_item(  # noqa: PLR0913
        cls,
        *,
        base_url: str,
        work_item_id: int,
        on_fragment: Callable[[str], None],
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        max_attempts: int = 0,
        max_duration_seconds: float = 0.0,
        request_timeout_seconds: float = 10.0,
    ) -> StatusPoller:
        """Build a poller that owns its HTTP client."""

        client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(request_timeout_seconds, connect=5.0),
        )
        return cls(
            client=client,
            url=f"/items/{work_item_id}",
            on_fragment=on_fragment,
            interval_seconds=interval_seconds,
            max_attempts=max_attempts,
            max_duration_seconds=max_duration_seconds,
            owns_client=True,
        )

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def active(self) -> bool:
        return not self._timer.canceled

    def poll(self) -> PollResult:
        """Run the timer loop until a stop condition; blocks the caller."""

        self._started_at = self._clock()
        self._timer.run()
        return PollResult(
            outcome=self._outcome or PollOutcome.CANCELED,
            attempts=self._attempts,
            last_fragment=self._last_fragment,
        )

    def stop(self, outcome: PollOutcome = PollOutcome.CANCELED) -> None:
        """Cancel the timer; the first recorded outcome wins."""

        if self._outcome is None:
            self._outcome = outcome
        self._timer.cancel()

    def close(self) -> None:
        """Session teardown: cancel unconditionally and release the client."""

        self.stop(PollOutcome.CANCELED)
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> StatusPoller:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def apply_response(self, sequence: int, body: str) -> bool:
        """Render ``body`` unless a newer response was already rendered.

        Returns True when the body was rendered.
        """

        if sequence <= self._last_rendered_sequence:
            logger.debug(
                "Discarding out-of-order response %s (last rendered %s)",
                sequence,
                self._last_rendered_sequence,
            )
            return False
        self._last_rendered_sequence = sequence
        self._last_fragment = body
        self.on_fragment(body)
        if TERMINAL_MARKER in body:
            logger.info("Terminal marker received from %s; polling stopped", self.url)
            self.stop(PollOutcome.TERMINAL)
        return True

    def _tick(self) -> None:
        if self._duration_exceeded():
            return

        self._next_sequence += 1
        self._attempts += 1
        self._fetch(self._next_sequence)

        if self.active and 0 < self.max_attempts <= self._attempts:
            logger.warning("Giving up on %s after %s attempts", self.url, self._attempts)
            self.stop(PollOutcome.MAX_ATTEMPTS)

    def _fetch(self, sequence: int) -> None:
        try:
            response = self.client.get(self.url, headers={"Accept": STREAM_MEDIA_TYPE})
        except httpx.HTTPError as error:
            logger.warning("Status fetch failed for %s: %s", self.url, error)
            return

        if response.status_code == httpx.codes.NOT_FOUND:
            logger.info("Work item behind %s not found; polling stopped", self.url)
            self.stop(PollOutcome.NOT_FOUND)
            return
        if not response.is_success:
            logger.warning("Status fetch for %s returned HTTP %s", self.url, response.status_code)
            return
        self.apply_response(sequence, response.text)

    def _duration_exceeded(self) -> bool:
        if self.max_duration_seconds > 0 and self._started_at is not None:
            elapsed = self._clock() - self._started_at
            if elapsed >= self.max_duration_seconds:
                logger.warning("Giving up on %s after %.1fs", self.url, elapsed)
                self.stop(PollOutcome.MAX_DURATION)
                return True
        return False
