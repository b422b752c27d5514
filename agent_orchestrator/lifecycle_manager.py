"""
Lifecycle Manager: the reconciliation loop.

This module handles:
- Polling every non-terminal session on a fixed interval
- Deriving each session's status from runtime, agent and PR signals
- Persisting transitions (one serialized update per session per tick)
- Dispatching reactions for transitions and the fleet-wide all-complete

Per-session ordering within a tick:
1. Gather signals (plugin calls, each bounded by a timeout)
2. Under the session lock: re-read, compute, write
3. Outside the lock: emit the event and run the reaction

Status precedence (first match wins):
0. Terminal status stays as it is
1. PR merged -> merged; PR closed -> done
2. Runtime dead and agent exited -> done
3. CI failing -> ci_failed
4. Changes requested -> changes_requested
5. Approved, CI green, no conflicts -> mergeable
6. Review pending or unresolved threads -> review_pending
7. Waiting for input -> needs_input; blocked -> stuck
8. Otherwise working (spawning until anything has been observed)
Draft PRs skip 3-6.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional

from agent_orchestrator.errors import OrchestratorError, PluginError
from agent_orchestrator.models import (
    ActivityState,
    CIStatus,
    PRInfo,
    PRSnapshot,
    PRState,
    ReviewDecision,
    Session,
    SessionStatus,
    utc_now_iso,
)
from agent_orchestrator.reactions import ReactionEngine, ReactionTracker, transition_event

if TYPE_CHECKING:
    from agent_orchestrator.config import OrchestratorConfig
    from agent_orchestrator.events.bus import EventBus
    from agent_orchestrator.logger import OrchestratorLogger
    from agent_orchestrator.plugins.registry import PluginRegistry
    from agent_orchestrator.session_manager import SessionManager


@dataclass(frozen=True)
class StatusSignals:
    """Everything determine_status looks at, observed in one pass."""
    current_status: SessionStatus
    runtime_alive: bool
    activity: Optional[ActivityState]
    pr: Optional[PRSnapshot] = None


def determine_status(signals: StatusSignals) -> SessionStatus:
    """Derive a session's status from its signals. Pure."""
    current = signals.current_status
    if current.is_terminal:
        return current

    pr = signals.pr
    activity = signals.activity

    if pr is not None:
        if pr.state == PRState.MERGED:
            return SessionStatus.MERGED
        if pr.state == PRState.CLOSED:
            return SessionStatus.DONE

    if not signals.runtime_alive and activity == ActivityState.EXITED:
        return SessionStatus.DONE

    if pr is not None and pr.state == PRState.OPEN and not pr.is_draft:
        if pr.ci_status == CIStatus.FAILING:
            return SessionStatus.CI_FAILED
        if pr.review_decision == ReviewDecision.CHANGES_REQUESTED:
            return SessionStatus.CHANGES_REQUESTED
        if (
            pr.review_decision == ReviewDecision.APPROVED
            and pr.ci_status in (CIStatus.PASSING, CIStatus.NONE)
            and not pr.has_conflicts
        ):
            return SessionStatus.MERGEABLE
        if pr.review_decision == ReviewDecision.PENDING or pr.unresolved_threads > 0:
            return SessionStatus.REVIEW_PENDING

    if activity == ActivityState.WAITING_INPUT:
        return SessionStatus.NEEDS_INPUT
    if activity == ActivityState.BLOCKED:
        return SessionStatus.STUCK

    if pr is None and activity is None and current == SessionStatus.SPAWNING:
        return SessionStatus.SPAWNING
    return SessionStatus.WORKING


@dataclass
class Transition:
    """One persisted status change."""
    session_id: str
    from_status: SessionStatus
    to_status: SessionStatus

    def to_dict(self) -> dict[str, str]:
        return {
            "session_id": self.session_id,
            "from": self.from_status.value,
            "to": self.to_status.value,
        }


@dataclass
class TickResult:
    """Outcome of one reconciliation pass."""
    checked: int = 0
    transitions: list[Transition] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    overran: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "transitions": [t.to_dict() for t in self.transitions],
            "errors": self.errors,
            "skipped": self.skipped,
            "overran": self.overran,
        }


@dataclass
class _Gathered:
    runtime_alive: bool
    activity: Optional[ActivityState]
    pr_info: Optional[PRInfo]
    pr: Optional[PRSnapshot]


class LifecycleManager:
    """
    Periodically reconciles every live session with the outside world.

    Sessions are checked concurrently on a bounded pool. A session whose
    previous check is still running is skipped rather than checked twice.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        registry: PluginRegistry,
        session_manager: SessionManager,
        logger: Optional[OrchestratorLogger] = None,
        event_bus: Optional[EventBus] = None,
        reactions: Optional[ReactionEngine] = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.session_manager = session_manager
        self.store = session_manager.store
        self._logger = logger
        self._bus = event_bus
        self.reactions = reactions or ReactionEngine(
            config,
            registry,
            session_manager,
            tracker=ReactionTracker(),
            event_bus=event_bus,
            logger=logger,
            call=self._call_plugin,
        )

        lifecycle = config.lifecycle
        self.interval = lifecycle.interval_seconds
        self.max_concurrency = lifecycle.max_concurrency
        self.plugin_timeout = lifecycle.plugin_timeout_seconds
        self.tick_deadline = lifecycle.tick_deadline_seconds

        self._pools_lock = threading.Lock()
        self._check_pool: Optional[ThreadPoolExecutor] = None
        self._io_pool: Optional[ThreadPoolExecutor] = None
        self._inflight: set[str] = set()
        self._inflight_lock = threading.Lock()
        self._all_complete_fired = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    # =========================================================================
    # Pools
    # =========================================================================

    def _pools(self) -> tuple[ThreadPoolExecutor, ThreadPoolExecutor]:
        with self._pools_lock:
            if self._check_pool is None:
                self._check_pool = ThreadPoolExecutor(
                    max_workers=self.max_concurrency, thread_name_prefix="ao-check"
                )
            if self._io_pool is None:
                # Timed-out calls keep their worker until they return.
                self._io_pool = ThreadPoolExecutor(
                    max_workers=self.max_concurrency * 4, thread_name_prefix="ao-io"
                )
            return self._check_pool, self._io_pool

    def _shutdown_pools(self) -> None:
        with self._pools_lock:
            for pool in (self._check_pool, self._io_pool):
                if pool is not None:
                    pool.shutdown(wait=False, cancel_futures=True)
            self._check_pool = None
            self._io_pool = None

    def _call_plugin(
        self,
        plugin: str,
        operation: str,
        fn: Callable[..., Any],
        *args: Any,
        session_id: Optional[str] = None,
    ) -> Any:
        """
        Run one plugin call on the I/O pool with the configured timeout.

        Raises:
            PluginError: The call raised, or did not finish in time.
        """
        _, io_pool = self._pools()
        future = io_pool.submit(fn, *args)
        try:
            return future.result(timeout=self.plugin_timeout)
        except FutureTimeout as e:
            future.cancel()
            raise PluginError(
                plugin, operation, session_id,
                TimeoutError(f"timed out after {self.plugin_timeout:g}s"),
            ) from e
        except OrchestratorError:
            raise
        except Exception as e:
            raise PluginError(plugin, operation, session_id, e) from e

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def _gather(self, session: Session) -> _Gathered:
        """Query runtime, agent and SCM for one session."""
        sid = session.id
        project = self.config.get_project(session.project_id)
        plugins, agent = self.session_manager.plugins_for(session)

        runtime_alive = False
        if session.runtime_handle is not None:
            runtime_alive = bool(self._call_plugin(
                plugins.runtime.name, "is_alive", plugins.runtime.is_alive,
                session.runtime_handle, session_id=sid,
            ))
        if runtime_alive:
            activity = self._call_plugin(
                agent.name, "get_activity_state", agent.get_activity_state, session,
                session_id=sid,
            )
        else:
            activity = ActivityState.EXITED

        scm = plugins.scm
        pr_info: Optional[PRInfo] = None
        if session.branch and not session.is_orchestrator:
            pr_info = self._call_plugin(scm.name, "detect_pr", scm.detect_pr, session, project,
                                        session_id=sid)
        if pr_info is None:
            pr_info = session.pr

        snapshot: Optional[PRSnapshot] = None
        if pr_info is not None:
            state = self._call_plugin(scm.name, "get_pr_state", scm.get_pr_state, pr_info,
                                      session_id=sid)
            if state != PRState.OPEN:
                snapshot = PRSnapshot(state=state, is_draft=pr_info.is_draft)
            else:
                ci = self._call_plugin(scm.name, "get_ci_summary", scm.get_ci_summary, pr_info,
                                       session_id=sid)
                review = self._call_plugin(scm.name, "get_review_decision",
                                           scm.get_review_decision, pr_info, session_id=sid)
                comments = self._call_plugin(scm.name, "get_pending_comments",
                                             scm.get_pending_comments, pr_info, session_id=sid)
                readiness = self._call_plugin(scm.name, "get_mergeability",
                                              scm.get_mergeability, pr_info, session_id=sid)
                snapshot = PRSnapshot(
                    state=state,
                    is_draft=pr_info.is_draft,
                    ci_status=ci,
                    review_decision=review,
                    unresolved_threads=len(comments),
                    has_conflicts=not readiness.no_conflicts,
                )

        return _Gathered(runtime_alive, activity, pr_info, snapshot)

    def check_session(self, session: Session) -> Optional[Transition]:
        """
        Reconcile one session.

        Returns:
            The transition that was persisted, or None if the status did not
            change (or the session vanished or went terminal meanwhile).

        Raises:
            PluginError / ConfigError: If signals could not be gathered. The
                record is left untouched.
        """
        gathered = self._gather(session)
        sid = session.id

        with self.store.lock(sid):
            fresh = self.session_manager.load(sid)
            if fresh is None or fresh.is_terminal:
                return None

            old_status = fresh.status
            new_status = determine_status(StatusSignals(
                current_status=old_status,
                runtime_alive=gathered.runtime_alive,
                activity=gathered.activity,
                pr=gathered.pr,
            ))

            updates: dict[str, Optional[str]] = {"status": new_status.value}
            if gathered.activity is not None:
                updates["activity"] = gathered.activity.value
            if gathered.activity == ActivityState.ACTIVE:
                updates["lastActivityAt"] = utc_now_iso()
            if gathered.pr_info is not None and gathered.pr_info.url != fresh.pr_ref:
                updates["pr"] = gathered.pr_info.url

            exited = (
                new_status == SessionStatus.DONE
                and not gathered.runtime_alive
                and gathered.activity == ActivityState.EXITED
            )
            if exited and fresh.runtime_handle is not None:
                self._release_runtime(fresh)
                updates["runtimeHandle"] = ""

            record = self.store.update(sid, updates)
            updated = Session.from_record(sid, record)

        if new_status == old_status:
            return None

        transition = Transition(sid, old_status, new_status)
        self._log("status_changed", transition.to_dict())
        event = transition_event(updated, old_status, new_status)
        if self._bus:
            self._bus.emit(event)
        self.reactions.dispatch(updated, event)
        if new_status.is_terminal:
            self.reactions.forget(sid)
        return transition

    def _release_runtime(self, session: Session) -> None:
        """Destroy an orphaned runtime handle; failure is logged."""
        try:
            plugins, _ = self.session_manager.plugins_for(session)
            self._call_plugin(plugins.runtime.name, "destroy", plugins.runtime.destroy,
                              session.runtime_handle, session_id=session.id)
        except Exception as e:
            self._log("runtime_release_failed", {"session_id": session.id, "error": str(e)},
                      level="warn")

    def _check_and_release(self, session: Session) -> Optional[Transition]:
        try:
            if self._logger is None:
                return self.check_session(session)
            with self._logger.session_context(session.id):
                return self.check_session(session)
        finally:
            with self._inflight_lock:
                self._inflight.discard(session.id)

    def tick(self) -> TickResult:
        """
        Run one reconciliation pass over all non-terminal sessions.

        Returns after every check finished or the soft deadline passed;
        checks still running then carry on and are skipped next tick.
        """
        started = time.monotonic()
        result = TickResult()
        check_pool, _ = self._pools()

        futures: dict[Future, str] = {}
        for session_id in self.store.list():
            session = self.session_manager.load(session_id)
            # Bare reservations (no project yet) belong to an in-progress spawn.
            if session is None or session.is_terminal or not session.project_id:
                continue
            with self._inflight_lock:
                if session_id in self._inflight:
                    result.skipped.append(session_id)
                    continue
                self._inflight.add(session_id)
            futures[check_pool.submit(self._check_and_release, session)] = session_id

        remaining = max(0.0, self.tick_deadline - (time.monotonic() - started))
        done, not_done = wait(futures, timeout=remaining) if futures else (set(), set())
        for future in done:
            session_id = futures[future]
            result.checked += 1
            error = future.exception()
            if error is not None:
                result.errors.append(f"{session_id}: {error}")
                self._log("session_check_failed", {
                    "session_id": session_id,
                    "error": str(error),
                }, level="error")
                continue
            transition = future.result()
            if transition is not None:
                result.transitions.append(transition)

        if not_done:
            result.overran = True
            self._log("tick_overran", {
                "pending": sorted(futures[f] for f in not_done),
                "deadline_seconds": self.tick_deadline,
            }, level="warn")

        self._check_all_complete()

        self._log("tick_complete", {
            "checked": result.checked,
            "transitions": len(result.transitions),
            "errors": len(result.errors),
            "skipped": len(result.skipped),
            "duration_seconds": round(time.monotonic() - started, 3),
        }, level="debug")
        return result

    def _check_all_complete(self) -> None:
        """Fire all-complete once when every worker is terminal; re-arm otherwise."""
        workers = []
        active: set[str] = set()
        for session_id in self.store.list():
            session = self.session_manager.load(session_id)
            if session is None or not session.project_id:
                continue
            if not session.is_terminal:
                active.add(session.id)
            if not session.is_orchestrator:
                workers.append(session)

        # Reaction counters live as long as the session does.
        for session_id in self.reactions.tracker.tracked_sessions() - active:
            self.reactions.forget(session_id)

        live = [s.id for s in workers if not s.is_terminal]

        if live:
            self._all_complete_fired = False
            return
        if workers and not self._all_complete_fired:
            self._all_complete_fired = True
            self._log("all_complete", {"sessions": len(workers)})
            self.reactions.all_complete(len(workers))

    # =========================================================================
    # Loop
    # =========================================================================

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                self._log("tick_failed", {"error": str(e)}, level="error")
            self._stop_event.wait(self.interval)

    def start(self) -> None:
        """Start ticking on a daemon thread. No-op if already running."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="ao-lifecycle", daemon=True)
        self._thread.start()
        self._log("lifecycle_started", {"interval_seconds": self.interval})

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the loop and release the pools."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self._shutdown_pools()
        self._log("lifecycle_stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_forever(self) -> None:
        """Tick in the calling thread until stop() or Ctrl-C."""
        self._stop_event.clear()
        self._log("lifecycle_started", {"interval_seconds": self.interval})
        try:
            self._run()
        except KeyboardInterrupt:
            self._log("lifecycle_interrupted")
        finally:
            self.stop()
