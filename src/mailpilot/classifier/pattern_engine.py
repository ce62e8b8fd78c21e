"""Pattern engine: turns mailbox activity into scored automation suggestions.

For each (user, mailbox) the engine runs two aggregations over the
observation window, ignoring events caused by MailPilot's own rules:

1. Sender patterns: per sender, each of deleted/moved/read is scored against
   the sender's arrivals. Only scores at or above the sender confidence
   floor are persisted.
2. Folder-routing patterns: per sender, the destination folder with the most
   moves (at least the configured minimum), scored against all of the
   sender's arrivals. No confidence floor. A later run that finds a new
   leading destination retargets the open pattern.

Every scored candidate goes through a cooldown-aware upsert:
- a rejected pattern still in cooldown suppresses the tuple entirely
- an open (detected/suggested) pattern is refreshed in place
- an approved pattern suppresses new duplicates
- otherwise a new pattern is created

Usage:
    from mailpilot.classifier.pattern_engine import PatternEngine

    engine = PatternEngine(store, config)
    result = await engine.analyze_mailbox(user_id, mailbox_id)
    run = await engine.analyze_all()
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING

from mailpilot.classifier.confidence import (
    calculate_confidence,
    map_event_type_to_action_type,
    should_suggest_pattern,
)
from mailpilot.core.logging import get_logger, run_context
from mailpilot.db.store import (
    OPEN_PATTERN_STATUSES,
    ActionSpec,
    EventType,
    EvidenceItem,
    Pattern,
    PatternCondition,
    PatternStatus,
    PatternType,
    new_id,
    utcnow,
)

if TYPE_CHECKING:
    from mailpilot.config_schema import AppConfig
    from mailpilot.db.store import DatabaseStore, FolderRouting, SenderActivity

logger = get_logger(__name__)

# Event types evaluated against arrivals for sender-level patterns
SENDER_ACTION_EVENTS = (EventType.DELETED, EventType.MOVED, EventType.READ)


def _winning_routes(routings: list[FolderRouting]) -> list[FolderRouting]:
    """Keep the leading destination per sender (input is ordered by move count)."""
    winners: dict[str, FolderRouting] = {}
    for routing in routings:
        winners.setdefault(routing.sender_email, routing)
    return list(winners.values())


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


class UpsertOutcome(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED_COOLDOWN = "skipped_cooldown"
    SKIPPED_APPROVED = "skipped_approved"
    CONTENDED = "contended"


@dataclass
class PatternCandidate:
    """A scored behavior ready to be written as a pattern."""

    user_id: str
    mailbox_id: str
    pattern_type: PatternType
    sender_email: str
    action_type: str
    confidence: int
    sample_size: int
    exception_count: int
    first_seen: datetime
    suggest: bool
    sender_domain: str | None = None
    to_folder: str | None = None
    evidence: list[EvidenceItem] = field(default_factory=list)

    @property
    def status(self) -> PatternStatus:
        return PatternStatus.SUGGESTED if self.suggest else PatternStatus.DETECTED


@dataclass
class MailboxAnalysisResult:
    """Result of analyzing one mailbox."""

    user_id: str
    mailbox_id: str
    sender_patterns: int = 0
    folder_routing_patterns: int = 0
    created: int = 0
    updated: int = 0
    skipped_cooldown: int = 0
    skipped_approved: int = 0
    contended: int = 0

    def record(self, outcome: UpsertOutcome) -> None:
        if outcome == UpsertOutcome.CREATED:
            self.created += 1
        elif outcome == UpsertOutcome.UPDATED:
            self.updated += 1
        elif outcome == UpsertOutcome.SKIPPED_COOLDOWN:
            self.skipped_cooldown += 1
        elif outcome == UpsertOutcome.SKIPPED_APPROVED:
            self.skipped_approved += 1
        else:
            self.contended += 1


@dataclass
class AnalysisRunResult:
    """Result of a bulk analysis run over several mailboxes."""

    run_id: str
    duration_ms: int = 0
    mailboxes_analyzed: int = 0
    mailboxes_failed: int = 0
    sender_patterns: int = 0
    folder_routing_patterns: int = 0
    mailbox_results: list[MailboxAnalysisResult] = field(default_factory=list)
    failed_mailbox_ids: list[str] = field(default_factory=list)


class PatternEngine:
    """Detects, scores and persists behavioral patterns.

    Attributes:
        _store: DatabaseStore for events and patterns
        _config: Application configuration (analysis section is used)
    """

    def __init__(self, store: DatabaseStore, config: AppConfig):
        self._store = store
        self._config = config

    def update_config(self, config: AppConfig) -> None:
        """Update the config reference for hot-reload support."""
        self._config = config

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def analyze_mailbox(
        self, user_id: str, mailbox_id: str, now: datetime | None = None
    ) -> MailboxAnalysisResult:
        """Run sender and folder-routing detection for one mailbox.

        Raises:
            DatabaseError: If the event or pattern store fails
        """
        now = now or utcnow()
        analysis = self._config.analysis
        since = now - timedelta(days=analysis.observation_window_days)
        result = MailboxAnalysisResult(user_id=user_id, mailbox_id=mailbox_id)

        with run_context():
            senders = await self._store.aggregate_sender_activity(
                user_id,
                mailbox_id,
                since=since,
                min_events=analysis.min_sender_events,
                max_evidence=analysis.max_evidence_items,
            )
            for activity in senders:
                for candidate in await self._score_sender(user_id, mailbox_id, activity, now):
                    result.record(await self._upsert_pattern(candidate, now))
                    result.sender_patterns += 1

            routings = await self._store.aggregate_folder_routing(
                user_id,
                mailbox_id,
                since=since,
                min_moves=analysis.min_folder_moves,
                max_evidence=analysis.max_evidence_items,
            )
            for routing in _winning_routes(routings):
                candidate = await self._score_folder_routing(user_id, mailbox_id, routing, now)
                if candidate is None:
                    continue
                result.record(await self._upsert_pattern(candidate, now))
                result.folder_routing_patterns += 1

            logger.info(
                "mailbox_analysis_complete",
                user_id=user_id,
                mailbox_id=mailbox_id,
                senders_aggregated=len(senders),
                routings_aggregated=len(routings),
                sender_patterns=result.sender_patterns,
                folder_routing_patterns=result.folder_routing_patterns,
                created=result.created,
                updated=result.updated,
                skipped_cooldown=result.skipped_cooldown,
                skipped_approved=result.skipped_approved,
            )
        return result

    async def analyze_user(self, user_id: str, now: datetime | None = None) -> AnalysisRunResult:
        """Analyze every connected mailbox of one user."""
        mailboxes = await self._store.list_mailboxes(user_id=user_id)
        return await self._analyze_many([(m.user_id, m.id) for m in mailboxes], now)

    async def analyze_all(self, now: datetime | None = None) -> AnalysisRunResult:
        """Analyze every connected mailbox (the scheduled job)."""
        mailboxes = await self._store.list_mailboxes()
        return await self._analyze_many([(m.user_id, m.id) for m in mailboxes], now)

    async def _analyze_many(
        self, targets: list[tuple[str, str]], now: datetime | None
    ) -> AnalysisRunResult:
        """Analyze mailboxes one at a time; a failing mailbox never stops the rest."""
        with run_context() as run_id:
            start_time = time.monotonic()
            run = AnalysisRunResult(run_id=run_id)
            logger.info("analysis_run_start", mailboxes=len(targets))

            for user_id, mailbox_id in targets:
                try:
                    mailbox_result = await self.analyze_mailbox(user_id, mailbox_id, now=now)
                except Exception as e:
                    run.mailboxes_failed += 1
                    run.failed_mailbox_ids.append(mailbox_id)
                    logger.error(
                        "mailbox_analysis_failed",
                        user_id=user_id,
                        mailbox_id=mailbox_id,
                        error=str(e),
                        error_type=type(e).__name__,
                        exc_info=True,
                    )
                    continue

                run.mailboxes_analyzed += 1
                run.sender_patterns += mailbox_result.sender_patterns
                run.folder_routing_patterns += mailbox_result.folder_routing_patterns
                run.mailbox_results.append(mailbox_result)

            run.duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.info(
                "analysis_run_complete",
                duration_ms=run.duration_ms,
                mailboxes_analyzed=run.mailboxes_analyzed,
                mailboxes_failed=run.mailboxes_failed,
                sender_patterns=run.sender_patterns,
                folder_routing_patterns=run.folder_routing_patterns,
            )

        return run

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    async def _score_sender(
        self,
        user_id: str,
        mailbox_id: str,
        activity: SenderActivity,
        now: datetime,
    ) -> list[PatternCandidate]:
        """Score each action taken on a sender's mail against its arrivals."""
        analysis = self._config.analysis
        arrived = activity.arrived_count
        if arrived == 0:
            # Nothing arrived in the window, so there is no meaningful ratio
            return []

        counts = {
            EventType.DELETED: activity.deleted_count,
            EventType.MOVED: activity.moved_count,
            EventType.READ: activity.read_count,
        }
        recency_since = now - timedelta(days=analysis.recency_window_days)
        candidates = []

        for event_type in SENDER_ACTION_EVENTS:
            action_count = counts[event_type]
            if action_count == 0:
                continue

            action_type = map_event_type_to_action_type(event_type)
            recency = await self._store.get_recency_stats(
                user_id, mailbox_id, activity.sender_email, event_type, since=recency_since
            )
            confidence = calculate_confidence(
                action_count=action_count,
                total_events=arrived,
                recent_action_count=recency.action_count,
                recent_total_events=recency.total_events,
            )
            if confidence < analysis.sender_confidence_floor:
                continue

            candidates.append(
                PatternCandidate(
                    user_id=user_id,
                    mailbox_id=mailbox_id,
                    pattern_type=PatternType.SENDER,
                    sender_email=activity.sender_email,
                    sender_domain=activity.sender_domain,
                    action_type=action_type,
                    confidence=confidence,
                    sample_size=arrived,
                    exception_count=max(0, arrived - action_count),
                    first_seen=activity.first_seen,
                    suggest=self._should_suggest(confidence, action_type, activity.first_seen, now),
                    evidence=activity.evidence,
                )
            )
        return candidates

    async def _score_folder_routing(
        self,
        user_id: str,
        mailbox_id: str,
        routing: FolderRouting,
        now: datetime,
    ) -> PatternCandidate | None:
        """Score moves to one folder against all of the sender's arrivals."""
        analysis = self._config.analysis
        sender_total = await self._store.count_sender_events(
            user_id, mailbox_id, routing.sender_email, EventType.ARRIVED
        )
        if sender_total == 0:
            return None

        recency = await self._store.get_recency_stats(
            user_id,
            mailbox_id,
            routing.sender_email,
            EventType.MOVED,
            since=now - timedelta(days=analysis.recency_window_days),
        )
        confidence = calculate_confidence(
            action_count=routing.move_count,
            total_events=sender_total,
            recent_action_count=recency.action_count,
            recent_total_events=recency.total_events,
        )
        return PatternCandidate(
            user_id=user_id,
            mailbox_id=mailbox_id,
            pattern_type=PatternType.FOLDER_ROUTING,
            sender_email=routing.sender_email,
            action_type="move",
            to_folder=routing.to_folder,
            confidence=confidence,
            sample_size=sender_total,
            exception_count=max(0, sender_total - routing.move_count),
            first_seen=routing.first_seen,
            suggest=self._should_suggest(confidence, "move", routing.first_seen, now),
            evidence=routing.evidence,
        )

    def _should_suggest(
        self, confidence: int, action_type: str, first_seen: datetime, now: datetime
    ) -> bool:
        analysis = self._config.analysis
        return should_suggest_pattern(
            confidence,
            action_type,
            first_seen,
            now=now,
            thresholds=analysis.thresholds,
            min_observation_days=analysis.min_observation_days,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _upsert_pattern(self, candidate: PatternCandidate, now: datetime) -> UpsertOutcome:
        """Write a candidate, honoring cooldowns and existing approvals.

        A concurrent run may create the same open pattern between our lookup
        and insert; the unique index rejects the second insert and we refresh
        the winner's row instead.
        """
        lookup = dict(
            user_id=candidate.user_id,
            mailbox_id=candidate.mailbox_id,
            pattern_type=candidate.pattern_type,
            sender_email=candidate.sender_email,
            action_type=candidate.action_type,
        )
        log_context = dict(
            pattern_type=str(candidate.pattern_type),
            sender=candidate.sender_email,
            action_type=candidate.action_type,
            confidence=candidate.confidence,
        )
        evidence = candidate.evidence[: self._config.analysis.max_evidence_items]

        cooling = await self._store.find_pattern(
            **lookup, statuses=[PatternStatus.REJECTED], cooldown_active_at=now
        )
        if cooling is not None:
            logger.debug(
                "pattern_skipped_cooldown",
                pattern_id=cooling.id,
                cooldown_until=str(cooling.rejection_cooldown_until),
                **log_context,
            )
            return UpsertOutcome.SKIPPED_COOLDOWN

        for _ in range(2):
            existing = await self._store.find_pattern(**lookup, statuses=OPEN_PATTERN_STATUSES)
            if existing is not None:
                refreshed = await self._store.refresh_pattern(
                    existing.id,
                    status=candidate.status,
                    confidence=candidate.confidence,
                    sample_size=candidate.sample_size,
                    exception_count=candidate.exception_count,
                    evidence=evidence,
                    analyzed_at=now,
                    to_folder=candidate.to_folder,
                )
                if refreshed:
                    logger.debug(
                        "pattern_updated",
                        pattern_id=existing.id,
                        status=str(candidate.status),
                        **log_context,
                    )
                    return UpsertOutcome.UPDATED
                # Approved or rejected while we were scoring; re-evaluate below

            approved = await self._store.find_pattern(
                **lookup, statuses=[PatternStatus.APPROVED]
            )
            if approved is not None:
                logger.debug("pattern_skipped_approved", pattern_id=approved.id, **log_context)
                return UpsertOutcome.SKIPPED_APPROVED

            pattern = Pattern(
                id=new_id(),
                user_id=candidate.user_id,
                mailbox_id=candidate.mailbox_id,
                pattern_type=candidate.pattern_type,
                status=candidate.status,
                condition=PatternCondition(
                    sender_email=candidate.sender_email,
                    sender_domain=candidate.sender_domain,
                    to_folder=candidate.to_folder,
                ),
                suggested_action=ActionSpec(
                    action_type=candidate.action_type, to_folder=candidate.to_folder
                ),
                confidence=candidate.confidence,
                sample_size=candidate.sample_size,
                exception_count=candidate.exception_count,
                evidence=evidence,
                last_analyzed_at=now,
            )
            if await self._store.create_pattern(pattern):
                logger.info(
                    "pattern_created",
                    pattern_id=pattern.id,
                    status=str(pattern.status),
                    **log_context,
                )
                return UpsertOutcome.CREATED
            # Lost the insert race; the next pass refreshes the winner

        logger.warning("pattern_upsert_contended", **log_context)
        return UpsertOutcome.CONTENDED
