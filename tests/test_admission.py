import pytest

from tests.fakes import FakeClock
from zapdesk.admission import AdmissionController, Admitted, Rejected
from zapdesk.errors import AdmissionRejected


def test_first_send_is_admitted() -> None:
    gate = AdmissionController(cooldown_ms=5000)

    assert gate.try_admit(1_000.0) == Admitted(at_ms=1_000.0)
    assert gate.last_accepted == 1_000.0


def test_send_inside_window_reports_remaining_wait() -> None:
    gate = AdmissionController(cooldown_ms=5000)
    gate.try_admit(10_000.0)

    result = gate.try_admit(12_000.0)

    assert result == Rejected(retry_after_ms=3_000.0)
    assert gate.last_accepted == 10_000.0


def test_send_at_window_edge_is_admitted() -> None:
    gate = AdmissionController(cooldown_ms=5000)
    gate.try_admit(0.0)

    assert isinstance(gate.try_admit(5_000.0), Admitted)


def test_rejections_do_not_extend_the_window() -> None:
    gate = AdmissionController(cooldown_ms=5000)
    gate.try_admit(0.0)

    assert isinstance(gate.try_admit(4_000.0), Rejected)
    assert isinstance(gate.try_admit(4_900.0), Rejected)
    assert isinstance(gate.try_admit(5_000.0), Admitted)


def test_accepted_sends_are_spaced_by_the_cooldown() -> None:
    gate = AdmissionController(cooldown_ms=5000)

    accepted = [
        now
        for now in range(0, 30_000, 700)
        if isinstance(gate.try_admit(float(now)), Admitted)
    ]

    assert len(accepted) > 1
    assert all(b - a >= 5000 for a, b in zip(accepted, accepted[1:]))


def test_admit_raises_with_retry_hint() -> None:
    clock = FakeClock(now_ms=0.0)
    gate = AdmissionController(cooldown_ms=5000, clock=clock)
    gate.admit()
    clock.advance(2_000)

    with pytest.raises(AdmissionRejected, match=r"retry in 3\.0s") as excinfo:
        gate.admit()

    assert excinfo.value.retry_after_ms == 3_000.0
    assert "every 5 seconds" in excinfo.value.notice


def test_clock_is_read_when_no_time_is_given() -> None:
    clock = FakeClock(now_ms=42.0)
    gate = AdmissionController(clock=clock)

    assert gate.admit() == Admitted(at_ms=42.0)
    assert gate.cooldown_ms == 5000.0


def test_release_restores_the_previous_slot() -> None:
    gate = AdmissionController(cooldown_ms=5000)
    gate.try_admit(0.0)
    held = gate.admit(6_000.0)

    gate.release(held)

    assert gate.last_accepted == 0.0
    assert isinstance(gate.try_admit(6_000.0), Admitted)


def test_release_ignores_a_superseded_slot() -> None:
    gate = AdmissionController(cooldown_ms=5000)
    first = gate.admit(0.0)
    gate.admit(5_000.0)

    gate.release(first)

    assert gate.last_accepted == 5_000.0
