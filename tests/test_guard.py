"""Tests for the single-flight reload guard."""

from __future__ import annotations

from fl.session.guard import GuardState, ReloadGuard


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestReloadGuard:
    def test_starts_idle(self):
        guard = ReloadGuard(clock=FakeClock())
        assert guard.state is GuardState.IDLE
        assert not guard.is_busy

    def test_second_acquire_during_cooldown_is_dropped(self):
        clock = FakeClock()
        guard = ReloadGuard(clock=clock)

        assert guard.try_acquire(1.0) is True
        clock.now += 0.5
        assert guard.try_acquire(2.0) is False
        assert guard.is_busy

    def test_idle_again_after_cooldown(self):
        clock = FakeClock()
        guard = ReloadGuard(clock=clock)

        guard.try_acquire(2.0)
        clock.now += 1.999
        assert guard.is_busy
        clock.now += 0.001
        assert guard.state is GuardState.IDLE
        assert guard.try_acquire(1.0) is True

    def test_release(self):
        guard = ReloadGuard(clock=FakeClock())
        guard.try_acquire(5.0)
        guard.release()
        assert not guard.is_busy

    def test_reload_and_restart_race_runs_one(self):
        clock = FakeClock()
        guard = ReloadGuard(clock=clock)
        results = [guard.try_acquire(1.0), guard.try_acquire(2.0)]
        assert results.count(True) == 1
