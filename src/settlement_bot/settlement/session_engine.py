"""Settlement session engine -- one monitoring session per settlement tick.

Session states:
  pending    created once the next settlement is inside the pre-monitoring window
  active     symbols selected at settlement - top3_selection_minutes;
             an immediate "pre" snapshot, then one round per snapshot interval
  analyzing  entered at settlement + post_monitoring_minutes
  closed     analysis persisted; the session leaves the registry

Sessions live in a registry keyed by settlement time. Admission is an
explicit check: while any session is pending or active, a session for
another settlement is rejected (logged, retried on later ticks while its
pre-window lasts). A settlement whose selection finds no significant
funding rate is aborted and never re-admitted.

All work happens in tick(), driven by one background task, so two
ticks never interleave.
"""

import asyncio
import time
from collections.abc import Callable

from settlement_bot.config import SettlementSettings
from settlement_bot.data.store import SettlementStore
from settlement_bot.logging import get_logger, log_context
from settlement_bot.market_data.price_collector import PriceCollector, classify_phase
from settlement_bot.market_data.scheduler import SettlementScheduler
from settlement_bot.models import SessionState, SettlementSession, SnapshotPhase
from settlement_bot.settlement.analysis import analyze_session

logger = get_logger(__name__)

_OCCUPYING_STATES = (SessionState.PENDING, SessionState.ACTIVE)
_HANDLED_RETENTION_MS = 24 * 3_600_000


class SessionEngine:
    """Drives settlement sessions from creation to persisted analysis.

    Args:
        scheduler: Source of settlement times and funding rates.
        collector: Captures snapshot rounds.
        store: Durable audit trail. Write failures are logged, never fatal.
        settings: Session windows and selection parameters.
        clock: Returns Unix seconds; injected for tests.
    """

    def __init__(
        self,
        scheduler: SettlementScheduler,
        collector: PriceCollector,
        store: SettlementStore,
        settings: SettlementSettings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._scheduler = scheduler
        self._collector = collector
        self._store = store
        self._settings = settings
        self._clock = clock
        self._sessions: dict[int, SettlementSession] = {}
        self._last_snapshot_at: dict[int, int] = {}
        # settlement time -> when it was finished or aborted
        self._handled: dict[int, int] = {}
        self._rejected: set[int] = set()
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ──────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            logger.warning("session_engine_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "session_engine_started",
            pre_minutes=self._settings.pre_monitoring_minutes,
            post_minutes=self._settings.post_monitoring_minutes,
            snapshot_interval=self._settings.snapshot_interval_seconds,
        )

    async def stop(self) -> None:
        """Cancel the loop and abandon in-flight sessions.

        Snapshots already written stay in the store.
        """
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        for session in self._sessions.values():
            logger.warning(
                "session_abandoned",
                session_id=session.id,
                state=session.state.value,
                snapshots=len(session.snapshots),
            )
        self._sessions.clear()
        self._last_snapshot_at.clear()
        logger.info("session_engine_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("session_tick_error", exc_info=True)
            await asyncio.sleep(self._settings.tick_interval_seconds)

    # ──────────────────────────────────────────────
    # State machine
    # ──────────────────────────────────────────────

    async def tick(self) -> None:
        """Advance every session by at most one step and admit new ones."""
        now = self._now_ms()
        self._prune_handled(now)
        self._maybe_create_session(now)

        for settlement_time in sorted(self._sessions):
            session = self._sessions[settlement_time]
            with log_context(settlement_time=settlement_time):
                if session.state is SessionState.PENDING:
                    await self._maybe_select(session, now)
                elif session.state is SessionState.ACTIVE:
                    await self._advance_active(session, now)

    def _maybe_create_session(self, now: int) -> None:
        settlement_time = self._scheduler.next_settlement_time()
        if settlement_time is None or self._is_known(settlement_time):
            return
        if settlement_time - now > self._settings.pre_monitoring_minutes * 60_000:
            return

        allowed, reason = self._admit(settlement_time)
        if not allowed:
            if settlement_time not in self._rejected:
                self._rejected.add(settlement_time)
                logger.warning(
                    "settlement_session_rejected",
                    settlement_time=settlement_time,
                    reason=reason,
                )
            return

        self._rejected.discard(settlement_time)
        session = SettlementSession(
            id=f"settlement_{settlement_time}",
            settlement_time=settlement_time,
            created_at=now,
        )
        self._sessions[settlement_time] = session
        logger.info(
            "settlement_session_created",
            session_id=session.id,
            settlement_time=settlement_time,
            minutes_until=round((settlement_time - now) / 60_000, 2),
        )

    def _admit(self, settlement_time: int) -> tuple[bool, str]:
        """At most one pending or active session system-wide."""
        for existing in self._sessions.values():
            if existing.state in _OCCUPYING_STATES:
                return False, (
                    f"session {existing.id} is {existing.state.value} "
                    f"for settlement {existing.settlement_time}"
                )
        return True, ""

    def _is_known(self, settlement_time: int) -> bool:
        window = self._settings.settlement_window_seconds * 1000
        for known in list(self._sessions) + list(self._handled):
            if abs(known - settlement_time) <= window:
                return True
        return False

    async def _maybe_select(self, session: SettlementSession, now: int) -> None:
        selection_at = session.settlement_time - self._settings.top3_selection_minutes * 60_000
        if now < selection_at:
            return
        if now >= session.settlement_time:
            logger.warning("settlement_session_missed", session_id=session.id)
            self._finish(session, now)
            return

        pool = self._scheduler.top_by_abs_rate(
            session.settlement_time, self._settings.selection_pool_size
        )
        selected = [
            s for s in pool if abs(s.funding_rate) > self._settings.min_abs_funding_rate
        ][: self._settings.max_selected_symbols]

        if not selected:
            logger.info(
                "settlement_session_aborted",
                session_id=session.id,
                reason="no symbol above significance threshold",
                pool=len(pool),
            )
            self._finish(session, now)
            return

        session.selected_symbols = [s.symbol for s in selected]
        session.funding_rates_at_selection = {s.symbol: s.funding_rate for s in selected}
        session.selection_timestamp = now
        session.state = SessionState.ACTIVE
        logger.info(
            "session_selected",
            session_id=session.id,
            symbols=session.selected_symbols,
            rates={k: str(v) for k, v in session.funding_rates_at_selection.items()},
        )

        try:
            await self._store.save_session(session)
        except Exception:
            logger.error("session_save_failed", session_id=session.id, exc_info=True)

        await self._snapshot_round(session, now, SnapshotPhase.PRE)

    async def _advance_active(self, session: SettlementSession, now: int) -> None:
        monitoring_ends = session.settlement_time + self._settings.post_monitoring_minutes * 60_000
        if now >= monitoring_ends:
            await self._analyze(session, now)
            return

        last = self._last_snapshot_at.get(session.settlement_time, 0)
        if now - last >= self._settings.snapshot_interval_seconds * 1000:
            phase = classify_phase(
                now, session.settlement_time, self._settings.phase_window_seconds
            )
            await self._snapshot_round(session, now, phase)

    async def _snapshot_round(
        self, session: SettlementSession, now: int, phase: SnapshotPhase
    ) -> None:
        self._last_snapshot_at[session.settlement_time] = now
        snapshots = await self._collector.collect(session.selected_symbols, now, phase)
        if not snapshots:
            logger.warning("snapshot_round_empty", session_id=session.id, phase=phase.value)
            return

        session.append_snapshots(snapshots)
        try:
            await self._store.save_snapshots(session.id, snapshots)
        except Exception:
            logger.error("snapshot_save_failed", session_id=session.id, exc_info=True)

        logger.debug(
            "snapshot_round_recorded",
            session_id=session.id,
            phase=phase.value,
            count=len(snapshots),
            total=len(session.snapshots),
        )

    async def _analyze(self, session: SettlementSession, now: int) -> None:
        session.state = SessionState.ANALYZING
        logger.info("session_analyzing", session_id=session.id, snapshots=len(session.snapshots))

        analyses = analyze_session(session)
        try:
            await self._store.save_analyses(analyses)
            session.state = SessionState.CLOSED
            await self._store.update_session_state(session.id, session.state)
        except Exception:
            logger.error("analysis_save_failed", session_id=session.id, exc_info=True)
            session.state = SessionState.CLOSED

        for analysis in analyses:
            logger.info(
                "settlement_analysis",
                session_id=session.id,
                symbol=analysis.symbol,
                funding_rate=str(analysis.funding_rate),
                price_change_pct=str(round(analysis.price_change_percent, 4)),
                max_move_pct=str(round(analysis.max_price_move, 4)),
                time_to_max_move=analysis.time_to_max_move,
                theory_test=analysis.theory_test.value,
            )
        logger.info("session_closed", session_id=session.id, analyzed=len(analyses))
        self._finish(session, now)

    def _finish(self, session: SettlementSession, now: int) -> None:
        self._sessions.pop(session.settlement_time, None)
        self._last_snapshot_at.pop(session.settlement_time, None)
        self._handled[session.settlement_time] = now

    def _prune_handled(self, now: int) -> None:
        cutoff = now - _HANDLED_RETENTION_MS
        for settlement_time in [t for t, at in self._handled.items() if at < cutoff]:
            del self._handled[settlement_time]
        self._rejected = {t for t in self._rejected if t > now}

    # ──────────────────────────────────────────────
    # Queries
    # ──────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._running

    def get_sessions(self) -> list[SettlementSession]:
        """Sessions currently in the registry, earliest settlement first."""
        return [self._sessions[t] for t in sorted(self._sessions)]

    def get_status(self) -> dict:
        next_time = self._scheduler.next_settlement_time()
        return {
            "running": self._running,
            "sessions": [
                {
                    "id": s.id,
                    "state": s.state.value,
                    "settlement_time": s.settlement_time,
                    "symbols": list(s.selected_symbols),
                    "snapshots": len(s.snapshots),
                }
                for s in self.get_sessions()
            ],
            "next_settlement_time": next_time,
            "upcoming_within_hour": len(self._scheduler.upcoming(60)),
        }
