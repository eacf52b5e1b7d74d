"""
Session Coordinator
===================

Owns the per-session phase state machine:

    Init -> Latency -> Download -> Upload -> Done

Any non-terminal phase may end in Failed, or in Done early with reason
TimedOut once the session deadline has passed. Phase failures are turned
into session state here and never escape as crashes; only the session
that hit them is affected.
"""

import logging
from typing import AsyncIterable, Awaitable, Callable, Optional

from velocity.errors import (
    ClientCancelled,
    PhaseOrderError,
    SessionClosed,
    SessionTimeout,
    StalledTransfer,
    VelocityError,
)
from velocity.latency import LatencyProber, ProbeTransport
from velocity.models import (
    PHASE_ORDER,
    Direction,
    LatencyResult,
    Phase,
    PhaseTransition,
    ResultRecord,
    Session,
    Status,
    ThroughputResult,
    utcnow,
)
from velocity.payload import PayloadGenerator
from velocity.registry import SessionRegistry
from velocity.throughput import ThroughputEstimator

logger = logging.getLogger(__name__)

TIMED_OUT = "TimedOut"
INVARIANT_VIOLATION = PhaseOrderError.code
INTERNAL_ERROR = "InternalError"


class SessionCoordinator:
    """Runs measurement phases for sessions held by a SessionRegistry"""

    def __init__(self, registry: SessionRegistry, prober: LatencyProber,
                 estimator: ThroughputEstimator, payload: PayloadGenerator,
                 server: Optional[dict] = None):
        self.registry = registry
        self.prober = prober
        self.estimator = estimator
        self.payload = payload
        self.server = server or {}

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def run_latency(self, session: Session, transport: ProbeTransport,
                          count: Optional[int] = None,
                          interval: Optional[float] = None) -> LatencyResult:
        self._enter(session, Phase.LATENCY)
        try:
            result = await self.prober.probe(session, transport, count, interval)
        except Exception:
            logger.exception(f"❌ Latency phase crashed for session {session.session_id}")
            self.fail(session, INTERNAL_ERROR)
            raise
        finally:
            session.busy = False

        session.latency = result
        if session.phase is Phase.FAILED:
            # Aborted from outside while probing; keep what was measured
            session.record = self._build_record(session)
        elif result.error == ClientCancelled.code:
            logger.info(f"📡 Session {session.session_id} disconnected during latency probing")
            self.fail(session, ClientCancelled.code)
        else:
            logger.info(f"🏓 Session {session.session_id} latency: median {result.median_ms} ms, "
                        f"jitter {result.jitter_ms} ms ({result.status.value})")
        return result

    async def run_download(self, session: Session, send: Callable[[bytes], Awaitable[None]],
                           cancelled=None) -> ThroughputResult:
        self._enter(session, Phase.DOWNLOAD)
        # Sends should complete well inside one window even on slow links
        transfer = self.payload.stream(send, clock=self.estimator.clock,
                                       target=self.estimator.window / 4)
        return await self._measure(session, Direction.DOWNLOAD, transfer, cancelled)

    async def run_upload(self, session: Session, chunks: AsyncIterable[bytes],
                         cancelled=None) -> ThroughputResult:
        self._enter(session, Phase.UPLOAD)
        transfer = self.payload.drain(chunks)
        result = await self._measure(session, Direction.UPLOAD, transfer, cancelled)
        if not session.finished:
            self.finish(session)
        return result

    async def _measure(self, session: Session, direction: Direction, transfer,
                       cancelled) -> ThroughputResult:
        try:
            result = await self.estimator.measure(session, direction, transfer, cancelled)
        except StalledTransfer as e:
            logger.warning(f"⚠️ Session {session.session_id} {direction.value} stalled: {e.message}")
            self.fail(session, e.code)
            raise
        except VelocityError as e:
            logger.warning(f"⚠️ Session {session.session_id} {direction.value} rejected: {e.message}")
            self.fail(session, e.code)
            raise
        except Exception:
            logger.exception(f"❌ {direction.value.title()} phase crashed for session {session.session_id}")
            self.fail(session, INTERNAL_ERROR)
            raise
        finally:
            session.busy = False

        setattr(session, direction.value, result)
        if session.phase is Phase.FAILED:
            # Aborted from outside while measuring; keep what was measured
            session.record = self._build_record(session)
        elif result.error == ClientCancelled.code:
            self.fail(session, ClientCancelled.code)
        return result

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def ensure_ready(self, session: Session, phase: Phase):
        """
        Check that ``phase`` may start now. An out-of-order request is an
        invariant violation and fails the session.
        """
        if session.finished:
            reason = f" ({session.failure_reason})" if session.failure_reason else ""
            raise SessionClosed(f"Session {session.session_id} is already {session.phase.value}{reason}")

        if session.remaining() <= 0:
            self.expire(session)
            raise SessionTimeout(f"Session {session.session_id} deadline elapsed")

        current = session.phase
        expected = PHASE_ORDER[PHASE_ORDER.index(current) + 1]
        if session.busy or phase is not expected:
            logger.error(
                f"❌ Phase order violation in session {session.session_id}: "
                f"requested {phase.value} while in {current.value} (expected {expected.value})",
                stack_info=True,
            )
            self.fail(session, INVARIANT_VIOLATION)
            raise PhaseOrderError(
                f"{phase.value} requested out of sequence; session was in {current.value}"
            )

    def _enter(self, session: Session, phase: Phase):
        self.ensure_ready(session, phase)
        self._transition(session, phase)
        session.busy = True

    def _transition(self, session: Session, phase: Phase):
        session.phase = phase
        session.transitions.append(PhaseTransition(phase, utcnow()))
        logger.debug(f"Session {session.session_id} -> {phase.value}")

    def finish(self, session: Session) -> ResultRecord:
        """Complete a session normally"""
        if session.finished:
            return self.result(session)
        self._transition(session, Phase.DONE)
        return self._seal(session)

    def fail(self, session: Session, reason: str) -> ResultRecord:
        """Move a session to Failed, keeping whatever was measured"""
        if session.finished:
            return self.result(session)
        session.failure_reason = reason
        self._transition(session, Phase.FAILED)
        logger.info(f"🛑 Session {session.session_id} failed: {reason}")
        return self._seal(session)

    def expire(self, session: Session) -> ResultRecord:
        """End a session whose deadline elapsed, as Done/TimedOut"""
        if session.finished:
            return self.result(session)
        session.failure_reason = TIMED_OUT
        self._transition(session, Phase.DONE)
        logger.info(f"⏰ Session {session.session_id} timed out in {session.transitions[-2].phase.value}")
        return self._seal(session)

    def cancel(self, session: Session) -> ResultRecord:
        """Client-requested abort; releases the slot before returning"""
        session.cancelled.set()
        return self.fail(session, ClientCancelled.code)

    def expire_overdue(self) -> int:
        """Time out idle sessions past their deadline. Running phases end on their own."""
        expired = 0
        for session in self.registry.expired():
            if session.busy:
                continue
            self.expire(session)
            expired += 1
        return expired

    def _seal(self, session: Session) -> ResultRecord:
        session.record = self._build_record(session)
        self.registry.close(session.session_id)
        return session.record

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def result(self, session: Session) -> ResultRecord:
        """Final record, or a partial snapshot while the session is running"""
        return session.record or self._build_record(session)

    def _build_record(self, session: Session) -> ResultRecord:
        latency, download, upload = session.latency, session.download, session.upload

        if session.phase is Phase.FAILED:
            status = Status.FAILED
        elif (session.phase is Phase.DONE and session.failure_reason is None
              and all(r is not None and r.status is Status.SUCCESS for r in (latency, download, upload))):
            status = Status.SUCCESS
        else:
            status = Status.PARTIAL

        return ResultRecord(
            session_id=session.session_id,
            status=status,
            phase=session.phase,
            ping_ms=latency.median_ms if latency else None,
            jitter_ms=latency.jitter_ms if latency else None,
            download_bps=download.bits_per_second if download else None,
            upload_bps=upload.bits_per_second if upload else None,
            sample_count=latency.sample_count if latency else 0,
            server=self.server,
            timestamp=utcnow(),
            failure_reason=session.failure_reason,
            transitions=tuple(session.transitions),
        )
