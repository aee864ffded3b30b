import time
from typing import Callable, Set, Tuple


class Clock:
    """Server time source. Participant-reported times are never trusted."""

    def now(self) -> float:
        return time.time()


class RoundTimer:
    """One countdown per (round, purpose).

    - No-ops in TESTING mode unless ENABLE_TIMER_IN_TESTS is set
    - Never holds state beyond the set of armed countdowns
    - The callback re-checks round state itself; a fire for a round that has
      already moved on is harmless
    """

    def __init__(self, socketio):
        self._socketio = socketio
        self._scheduled: Set[Tuple[int, str]] = set()

    def is_scheduled(self, round_id: int, purpose: str) -> bool:
        return (round_id, purpose) in self._scheduled

    def schedule_deadline(self, app, round_id: int, delay: float, on_fire: Callable[[int], None]) -> None:
        self._schedule(app, round_id, 'deadline', delay, on_fire)

    def schedule_release(self, app, round_id: int, delay: float, on_fire: Callable[[int], None]) -> None:
        self._schedule(app, round_id, 'release', delay, on_fire)

    def _schedule(self, app, round_id: int, purpose: str, delay: float, on_fire: Callable[[int], None]) -> None:
        if app.config.get('TESTING') and not app.config.get('ENABLE_TIMER_IN_TESTS'):
            return

        key = (round_id, purpose)
        if key in self._scheduled:
            app.logger.info(f"[timer-skip] round={round_id} purpose={purpose} already scheduled")
            return
        self._scheduled.add(key)
        delay = max(0.0, float(delay))
        app.logger.info(f"[timer-set] round={round_id} purpose={purpose} delay={delay:.1f}s")

        def _worker(rid: int, what: str, wait: float):
            hb = int(app.config.get('TIMER_HEARTBEAT_SEC', 0) or 0)
            if hb > 0:
                slept = 0.0
                while slept < wait:
                    step = min(hb, wait - slept)
                    time.sleep(step)
                    slept += step
                    app.logger.info(f"[timer-heartbeat] round={rid} purpose={what} remaining={max(0.0, wait - slept):.1f}s")
            else:
                time.sleep(wait)
            with app.app_context():
                self._scheduled.discard((rid, what))
                app.logger.info(f"[timer-fire] round={rid} purpose={what}")
                try:
                    on_fire(rid)
                except Exception:
                    # A failed fire must not kill the worker; recovery re-checks round state
                    app.logger.exception(f"[timer-error] round={rid} purpose={what}")

        if app.config.get('TESTING'):
            _worker(round_id, purpose, delay)
        else:
            self._socketio.start_background_task(_worker, round_id, purpose, delay)
