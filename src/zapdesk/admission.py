from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeAlias

from .errors import AdmissionRejected

SEND_COOLDOWN_MS = 5000


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass(frozen=True, slots=True)
class Admitted:
    at_ms: float


@dataclass(frozen=True, slots=True)
class Rejected:
    retry_after_ms: float


AdmissionResult: TypeAlias = Admitted | Rejected


class AdmissionController:
    """One shared send gate per session, across every conversation and channel.

    ``try_admit`` never awaits, so the read-check-write cannot interleave with
    another send on the event loop.
    """

    def __init__(
        self,
        *,
        cooldown_ms: float = SEND_COOLDOWN_MS,
        clock: Callable[[], float] = monotonic_ms,
    ) -> None:
        self._cooldown_ms = float(cooldown_ms)
        self._clock = clock
        self._last_accepted: float | None = None
        self._previous: float | None = None

    @property
    def cooldown_ms(self) -> float:
        return self._cooldown_ms

    @property
    def last_accepted(self) -> float | None:
        return self._last_accepted

    def try_admit(self, now: float | None = None) -> AdmissionResult:
        if now is None:
            now = self._clock()
        if self._last_accepted is not None:
            elapsed = now - self._last_accepted
            if elapsed < self._cooldown_ms:
                return Rejected(retry_after_ms=self._cooldown_ms - elapsed)
        # reserved before the send runs; a failed send keeps the slot
        self._previous = self._last_accepted
        self._last_accepted = now
        return Admitted(at_ms=now)

    def admit(self, now: float | None = None) -> Admitted:
        result = self.try_admit(now)
        if isinstance(result, Rejected):
            raise AdmissionRejected(result.retry_after_ms, self._cooldown_ms)
        return result

    def release(self, admitted: Admitted) -> None:
        """Give back a slot whose attempt never reached the provider."""
        if self._last_accepted == admitted.at_ms:
            self._last_accepted = self._previous
            self._previous = None
