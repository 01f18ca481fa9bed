"""Session-completion orchestrator: the retry / backoff state machine.

A finished session moves through:

    in_progress ─► processing ─► completed
                      │   ▲
                      │   └── rescheduled per attempt delay (attempts 1–11)
                      ▼
                 pending_sync ─► completed | data_unavailable   (attempt 12)

    any state ─► failed            credential permanently unusable
    processing ─► data_unavailable schedule exhausted, no fallback

One call to ``process_attempt`` runs exactly one attempt, computed from the
persisted ``attempt_count``, and leaves the session either terminal or with
``next_attempt_at`` set for the next sweep.  Per-attempt errors are written
into the session's retry schedule and never escape this module; only
credential errors end the schedule early.

The patient's credential lock is held only while the token is resolved and
telemetry is fetched.  Imputation, scoring and persistence run unlocked.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Sequence

from src.rehab.base import (
    AttemptResult,
    CredentialError,
    HeartRateSample,
    ReadingProvenance,
    RetryAttempt,
    Session,
    SessionStatus,
    TelemetryError,
    TelemetryProvider,
    TelemetryUnauthorizedError,
    utc_now,
)
from src.rehab.baseline import BaselineEngine
from src.rehab.config_loader import PipelineConfig, get_pipeline_config
from src.rehab.credentials import CredentialService
from src.rehab.imputation import ImputationResult, impute_session
from src.rehab.push import PartnerPushClient
from src.rehab.repositories import Repositories
from src.rehab.scoring import determine_risk_level, heart_rate_stats, score_session
from src.rehab.sync import schedule
from src.rehab.sync.credential_lock import CredentialLockManager
from src.rehab.sync.dedup import filter_window, merge_samples, points_to_readings
from src.rehab.vitals import assess_vitals
from src.rehab.weekly import WeeklyAggregator

logger = logging.getLogger("cardiorehab.rehab.sync.orchestrator")

SESSION_FETCH_SOURCE = "session_fetch"

CREDENTIAL_FAILURE_REASON = (
    "Telemetry credential expired or invalid. Patient needs to reconnect."
)
EXHAUSTED_REASON = "All retry attempts exhausted without sufficient data"
NO_HISTORICAL_DATA_REASON = "No data available even after historical sync"


@dataclass(frozen=True)
class AttemptReport:
    """What one ``process_attempt`` call did.

    Attributes:
        session_id:      Session processed.
        attempt:         Attempt number that ran (None when skipped).
        outcome:         'completed', 'rescheduled', 'awaiting_sync',
                         'data_unavailable', 'failed', 'lock_busy' or 'skipped'.
        completeness:    Real-data completeness observed, if any.
        next_attempt_at: When the next attempt is due, if rescheduled.
        detail:          Free-text reason for logs.
    """

    session_id: int
    attempt: int | None
    outcome: str
    completeness: float | None = None
    next_attempt_at: datetime | None = None
    detail: str | None = None


class SessionOrchestrator:
    """Drive sessions through fetch → impute → gate → score → persist.

    Usage::

        orchestrator = SessionOrchestrator(repos, GoogleFitProvider(), push_client)
        report = await orchestrator.process_attempt(session_id)
    """

    def __init__(
        self,
        repos: Repositories,
        provider: TelemetryProvider,
        push_client: PartnerPushClient | None = None,
        config: PipelineConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
        lock_manager: CredentialLockManager | None = None,
        credential_service: CredentialService | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            repos:              Repository bundle.
            provider:           Telemetry provider used for live fetches.
            push_client:        Partner push client (None disables pushes).
            config:             Pipeline config (defaults to the loaded singleton).
            clock:              Source of the current time.
            lock_manager:       Credential lock manager override.
            credential_service: Token resolution override.
        """
        self._repos = repos
        self._provider = provider
        self._push = push_client
        self._config = config or get_pipeline_config()
        self._clock = clock
        self._locks = lock_manager or CredentialLockManager(
            repos.credentials,
            stale_after=timedelta(minutes=self._config.credentials.lock_stale_minutes),
            clock=clock,
        )
        self._credentials = credential_service or CredentialService(
            repos.credentials,
            provider,
            refresh_buffer=timedelta(seconds=self._config.credentials.refresh_buffer_seconds),
            clock=clock,
        )
        self._weekly = WeeklyAggregator(repos, self._config.weekly)
        self._baseline = BaselineEngine(repos, self._config.baseline)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def begin_processing(self, session: Session, now: datetime) -> Session:
        """Move a finished session into ``processing`` with a fresh schedule."""
        session.status = SessionStatus.processing
        session.attempt_count = 0
        session.retry_schedule = schedule.build_retry_schedule(now, self._config.retry)
        session.next_attempt_at = now
        session.updated_at = now
        return session

    async def process_attempt(self, session_id: int) -> AttemptReport:
        """Run the next attempt for a session.

        Args:
            session_id: Session to process.

        Returns:
            AttemptReport describing the transition.
        """
        session = await self._repos.sessions.get(session_id)
        if session is None:
            logger.error("Session %s not found", session_id)
            return AttemptReport(session_id, None, "skipped", detail="not found")
        if session.is_terminal:
            logger.debug("Session %s already %s", session_id, session.status.value)
            return AttemptReport(session_id, None, "skipped", detail=session.status.value)

        now = self._clock()
        if not session.retry_schedule:
            self.begin_processing(session, now)
            await self._repos.sessions.save(session)

        attempt = session.attempt_count + 1
        logger.info("Session %s: attempt #%d", session_id, attempt)

        if attempt >= self._config.retry.fallback_attempt:
            return await self._run_fallback_attempt(session, attempt, now)
        return await self._run_live_attempt(session, attempt, now)

    # ------------------------------------------------------------------
    # Live attempts (1..11)
    # ------------------------------------------------------------------

    async def _run_live_attempt(
        self, session: Session, attempt: int, now: datetime
    ) -> AttemptReport:
        try:
            fetched = await self._fetch_with_lock(session, now)
        except CredentialError as exc:
            return await self._fail_credentials(session, attempt, exc, now)
        except Exception as exc:
            logger.warning("Session %s attempt #%d fetch failed: %s", session.session_id, attempt, exc)
            return await self._handle_shortfall(
                session, attempt, now, AttemptResult.error, error=str(exc) or type(exc).__name__
            )

        if fetched is None:
            logger.info(
                "Session %s: credential for patient %s busy, retrying next sweep",
                session.session_id, session.patient_id,
            )
            return AttemptReport(session.session_id, attempt, "lock_busy")

        try:
            return await self._evaluate(session, attempt, fetched, now)
        except Exception as exc:
            logger.exception("Session %s attempt #%d failed", session.session_id, attempt)
            return await self._handle_shortfall(
                session, attempt, now, AttemptResult.error, error=str(exc) or type(exc).__name__
            )

    async def _fetch_with_lock(
        self, session: Session, now: datetime
    ) -> list[HeartRateSample] | None:
        """Resolve a token and fetch under the credential lock.

        Returns:
            Samples filtered to the session window, or None if the lock is busy.
        """
        holder = f"session_{session.session_id}"
        async with self._locks.hold(session.patient_id, holder) as acquired:
            if not acquired:
                return None
            token = await self._credentials.get_valid_token(session.patient_id)
            try:
                samples = await self._fetch_window(session, token, now)
            except TelemetryUnauthorizedError:
                await self._credentials.invalidate_access_token(session.patient_id)
                raise
        return filter_window(samples, session.start_time, session.end_time)

    async def _fetch_window(
        self, session: Session, access_token: str, now: datetime
    ) -> list[HeartRateSample]:
        """Fetch with a buffer sized by how long ago the session ended.

        Recent sessions get a single narrow fetch.  Older ones get widening
        buffer cycles merged by timestamp, since wearables upload late and
        the provider may bucket late data differently per request window.
        """
        cfg = self._config.fetch
        start, end = session.start_time, session.end_time

        if now - end <= timedelta(minutes=cfg.recent_session_window_minutes):
            buffer = timedelta(minutes=cfg.recent_buffer_minutes)
            return await self._provider.fetch_heart_rate(access_token, start - buffer, end + buffer)

        batches: list[list[HeartRateSample]] = []
        last_error: TelemetryError | None = None
        for minutes in cfg.old_session_buffer_cycles:
            buffer = timedelta(minutes=minutes)
            try:
                batch = await self._provider.fetch_heart_rate(
                    access_token, start - buffer, end + buffer
                )
            except TelemetryUnauthorizedError:
                raise
            except TelemetryError as exc:
                logger.warning(
                    "Session %s: ±%d min fetch cycle failed: %s", session.session_id, minutes, exc
                )
                last_error = exc
                continue
            logger.debug("Session %s: ±%d min cycle → %d samples", session.session_id, minutes, len(batch))
            batches.append(batch)

        # Nothing came back and at least one cycle failed: the attempt errored
        if last_error is not None and not any(batches):
            raise last_error
        return merge_samples(batches)

    async def _evaluate(
        self,
        session: Session,
        attempt: int,
        samples: Sequence[HeartRateSample],
        now: datetime,
    ) -> AttemptReport:
        """Gate fetched data on completeness and complete or reschedule."""
        last_live = attempt >= self._config.retry.max_attempts

        if not samples and last_live:
            samples = await self._stored_samples(session)
            if samples:
                logger.info(
                    "Session %s: no fresh data on final attempt, using %d stored readings",
                    session.session_id, len(samples),
                )

        if not samples:
            return await self._handle_shortfall(
                session, attempt, now, AttemptResult.insufficient_data, data_points=0
            )

        imputed = impute_session(samples, session.start_time, session.end_time)
        required = schedule.completeness_threshold(attempt, self._config.retry)
        if imputed.completeness < required:
            logger.info(
                "Session %s attempt #%d: completeness %.1f%% below %.0f%%",
                session.session_id, attempt, imputed.completeness * 100, required * 100,
            )
            return await self._handle_shortfall(
                session,
                attempt,
                now,
                AttemptResult.insufficient_data,
                data_points=imputed.real_count,
                completeness=imputed.completeness,
            )

        return await self._complete(session, attempt, imputed, now)

    # ------------------------------------------------------------------
    # Historical fallback (attempt 12)
    # ------------------------------------------------------------------

    async def _run_fallback_attempt(
        self, session: Session, attempt: int, now: datetime
    ) -> AttemptReport:
        """Score from bulk-synced storage only; no live fetch, no lock."""
        try:
            samples = await self._stored_samples(session)
            if not samples:
                return await self._mark_unavailable(
                    session, attempt, now, NO_HISTORICAL_DATA_REASON, data_points=0
                )

            imputed = impute_session(samples, session.start_time, session.end_time)
            required = schedule.completeness_threshold(attempt, self._config.retry)
            if imputed.completeness < required:
                reason = (
                    f"Insufficient data after historical sync "
                    f"({imputed.completeness * 100:.1f}% < {required * 100:.0f}%)"
                )
                return await self._mark_unavailable(
                    session, attempt, now, reason,
                    data_points=imputed.real_count, completeness=imputed.completeness,
                )
            return await self._complete(session, attempt, imputed, now)
        except Exception as exc:
            logger.exception("Session %s historical fallback failed", session.session_id)
            return await self._mark_unavailable(
                session, attempt, now, f"Historical fallback failed: {exc}"
            )

    async def _stored_samples(self, session: Session) -> list[HeartRateSample]:
        rows = await self._repos.readings.in_window(
            session.patient_id, session.start_time, session.end_time
        )
        return [
            HeartRateSample(timestamp=r.recorded_at, value=float(r.heart_rate))
            for r in rows
            if r.provenance == ReadingProvenance.primary
        ]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _complete(
        self, session: Session, attempt: int, imputed: ImputationResult, now: datetime
    ) -> AttemptReport:
        """Persist readings and scores, then run the downstream updates."""
        readings = points_to_readings(
            session.patient_id, imputed.points, SESSION_FETCH_SOURCE, session.session_id
        )
        inserted = await self._repos.readings.insert_many(readings)

        values = imputed.values
        scores = score_session(
            values, session.zones, session.effective_duration, session.planned_duration
        )
        stats = heart_rate_stats(values)

        session.warmup_score = scores.warmup_score
        session.exercise_score = scores.exercise_score
        session.cooldown_score = scores.cooldown_score
        session.session_score = scores.overall_score
        session.session_risk_level = determine_risk_level(scores.overall_score)
        if stats:
            session.max_hr, session.min_hr, session.avg_hr = stats.max_hr, stats.min_hr, stats.avg_hr
        session.data_completeness = imputed.completeness
        session.retry_schedule = schedule.record_attempt(
            session.retry_schedule, attempt, AttemptResult.success.value, now,
            data_points=imputed.real_count,
        )
        session.status = SessionStatus.completed
        session.attempt_count = attempt
        session.last_attempt_at = now
        session.next_attempt_at = None
        session.updated_at = now
        await self._repos.sessions.save(session)

        logger.info(
            "Session %s completed on attempt #%d: score=%d completeness=%.3f "
            "(%d real, %d imputed, %d new readings stored)",
            session.session_id, attempt, scores.overall_score, imputed.completeness,
            imputed.real_count, imputed.imputed_count, inserted,
        )

        await self._after_completion(session)
        return AttemptReport(
            session.session_id, attempt, "completed", completeness=imputed.completeness
        )

    async def _after_completion(self, session: Session) -> None:
        """Vitals, weekly, baseline, health status and partner push.

        The session is already terminal; a failure here is logged and left
        for remediation rather than reopening the session.
        """
        cumulative: float | None = None
        session.risk_level = session.session_risk_level
        try:
            vitals = await self._repos.vitals.latest(session.patient_id)
            # Zones snapshot the age the session was planned for
            age = 220 - session.zones.max_permissible_hr
            assessment = assess_vitals(age, vitals, session.session_score)
            session.vital_score = assessment.vital_score
            session.vital_risk_level = assessment.vital_risk_level

            weekly = await self._weekly.update(session.patient_id, session.week_number)
            cumulative = weekly.cumulative_score
            session.risk_level = determine_risk_level(cumulative)
            # The aggregator flags counted sessions on the stored rows
            stored = await self._repos.sessions.get(session.session_id)
            if stored is not None:
                session.is_counted_in_weekly = stored.is_counted_in_weekly

            baseline = await self._baseline.check_milestone(session.patient_id)
            if baseline is None:
                latest = await self._repos.baselines.latest(session.patient_id)
                baseline = latest.baseline_score if latest else None
            session.baseline_score = baseline
            session.health_status = await self._baseline.health_status(
                session.patient_id, float(session.session_score)
            )
        except Exception:
            logger.exception("Session %s: post-completion aggregation failed", session.session_id)

        if self._push is not None:
            outcome = await self._push.push_session_result(session, cumulative)
            session.pushed_to_partner = outcome.success
            session.pushed_at = self._clock() if outcome.success else None
            session.push_status = outcome.status

        session.updated_at = self._clock()
        await self._repos.sessions.save(session)

    async def _handle_shortfall(
        self,
        session: Session,
        attempt: int,
        now: datetime,
        result: AttemptResult,
        data_points: int | None = None,
        completeness: float | None = None,
        error: str | None = None,
    ) -> AttemptReport:
        """Insufficient data or a recoverable error: reschedule or fall back."""
        cfg = self._config.retry
        if attempt >= cfg.max_attempts and cfg.fallback_enabled:
            return await self._schedule_fallback(
                session, attempt, now, result, data_points, completeness, error
            )
        return await self._schedule_next(
            session, attempt, now, result, data_points, completeness, error
        )

    async def _schedule_next(
        self,
        session: Session,
        attempt: int,
        now: datetime,
        result: AttemptResult,
        data_points: int | None,
        completeness: float | None,
        error: str | None,
    ) -> AttemptReport:
        session.retry_schedule = schedule.record_attempt(
            session.retry_schedule, attempt, result.value, now,
            data_points=data_points, error_message=error,
        )
        session.attempt_count = attempt
        session.last_attempt_at = now

        upcoming = schedule.next_pending_attempt(session.retry_schedule)
        delay = schedule.attempt_delay(upcoming.attempt, self._config.retry) if upcoming else None
        if upcoming is None or delay is None:
            return await self._mark_unavailable(
                session, attempt, now, EXHAUSTED_REASON, record=False, completeness=completeness
            )

        session.status = SessionStatus.processing
        session.next_attempt_at = now + delay
        session.updated_at = now
        await self._repos.sessions.save(session)

        logger.info(
            "Session %s attempt #%d %s; attempt #%d at %s",
            session.session_id, attempt, result.value, upcoming.attempt,
            session.next_attempt_at.isoformat(),
        )
        return AttemptReport(
            session.session_id, attempt, "rescheduled",
            completeness=completeness, next_attempt_at=session.next_attempt_at, detail=error,
        )

    async def _schedule_fallback(
        self,
        session: Session,
        attempt: int,
        now: datetime,
        result: AttemptResult,
        data_points: int | None,
        completeness: float | None,
        error: str | None,
    ) -> AttemptReport:
        run_at = schedule.fallback_attempt_time(now, self._config.retry, self._config.bulk_sync)
        fallback = self._config.retry.fallback_attempt

        updated = schedule.record_attempt(
            session.retry_schedule, attempt, result.value, now,
            data_points=data_points, error_message=error,
        )
        if not any(item.attempt == fallback for item in updated):
            updated.append(RetryAttempt(attempt=fallback, scheduled_for=run_at))
        session.retry_schedule = updated
        session.status = SessionStatus.pending_sync
        session.attempt_count = attempt
        session.last_attempt_at = now
        session.next_attempt_at = run_at
        session.updated_at = now
        await self._repos.sessions.save(session)

        logger.info(
            "Session %s: live attempts exhausted, historical fallback at %s",
            session.session_id, run_at.isoformat(),
        )
        return AttemptReport(
            session.session_id, attempt, "awaiting_sync",
            completeness=completeness, next_attempt_at=run_at, detail=error,
        )

    async def _mark_unavailable(
        self,
        session: Session,
        attempt: int,
        now: datetime,
        reason: str,
        data_points: int | None = None,
        completeness: float | None = None,
        record: bool = True,
    ) -> AttemptReport:
        if record:
            session.retry_schedule = schedule.record_attempt(
                session.retry_schedule, attempt, AttemptResult.insufficient_data.value, now,
                data_points=data_points, error_message=reason,
            )
        session.status = SessionStatus.data_unavailable
        session.failure_reason = reason
        session.attempt_count = attempt
        session.last_attempt_at = now
        session.next_attempt_at = None
        if completeness is not None:
            session.data_completeness = completeness
        session.updated_at = now
        await self._repos.sessions.save(session)

        logger.warning("Session %s marked data_unavailable: %s", session.session_id, reason)
        return AttemptReport(
            session.session_id, attempt, "data_unavailable", completeness=completeness, detail=reason
        )

    async def _fail_credentials(
        self, session: Session, attempt: int, exc: CredentialError, now: datetime
    ) -> AttemptReport:
        """Terminal failure: the patient has to reconnect their wearable."""
        session.retry_schedule = schedule.record_attempt(
            session.retry_schedule, attempt, AttemptResult.token_expired.value, now,
            error_message=str(exc) or type(exc).__name__, status="failed",
        )
        session.status = SessionStatus.failed
        session.failure_reason = CREDENTIAL_FAILURE_REASON
        session.attempt_count = attempt
        session.last_attempt_at = now
        session.next_attempt_at = None
        session.updated_at = now
        await self._repos.sessions.save(session)

        logger.error(
            "Session %s failed: credential unusable for patient %s (%s)",
            session.session_id, session.patient_id, exc,
        )
        if self._push is not None:
            await self._push.notify_token_expired(session.patient_id, session.session_id)
        return AttemptReport(session.session_id, attempt, "failed", detail=str(exc))
