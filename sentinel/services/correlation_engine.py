# sentinel/services/correlation_engine.py
"""
Multi-device correlation and dashboard rollups.

Events from every device are tagged with their source and kept in memory
(never written back to the store). Each ingest runs the pattern detectors
over the recent window:

  - MotionSequenceDetector: person detections on two or more devices within
    60s of each other share one correlation id and are chained in time order.
  - PersonTrackingDetector / AreaCoverageDetector: hooks for appearance
    matching and coverage analysis; they accept the stream and report nothing.

Dashboard queries are read-only and return copies.
"""

import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from sentinel.config import settings
from sentinel.schemas.correlation import (
    AggregateFilter, AlertLevel, ChainType, DetectionStat, DeviceEventSummary,
    EventChain, LocationEventSummary, MultiDeviceEvent, SourceDevice,
)
from sentinel.schemas.event import EventOut
from sentinel.utils.clock import start_of_day, utcnow
from sentinel.utils.logger import get_logger

logger = get_logger(__name__)

ALERT_WINDOW = timedelta(minutes=30)
ACTIVE_WINDOW = timedelta(minutes=5)
HIGH_ALERT_EVENTS = 10
MEDIUM_ALERT_EVENTS = 5
TOP_DETECTIONS = 5

EventListener = Callable[[MultiDeviceEvent], None]


@dataclass
class Correlation:
    correlation_id: str
    chain_type: ChainType
    members: list[MultiDeviceEvent]


class PatternDetector:
    chain_type: ChainType

    def analyze(self, event: MultiDeviceEvent,
                recent: list[MultiDeviceEvent]) -> Optional[Correlation]:
        raise NotImplementedError


class MotionSequenceDetector(PatternDetector):
    """A subject moving between covered areas: person hits on different devices close in time."""
    chain_type = ChainType.MOTION_SEQUENCE

    def __init__(self, window: timedelta = timedelta(seconds=settings.CORRELATION_SEQUENCE_WINDOW_SECONDS)):
        self.window = window

    def analyze(self, event, recent):
        if not event.has_person:
            return None

        group = [
            e for e in recent
            if e.has_person and abs(e.timestamp - event.timestamp) < self.window
        ]
        if all(e.id != event.id for e in group):
            group.append(event)
        if len({e.source_device.id for e in group}) < 2:
            return None

        group.sort(key=lambda e: e.timestamp)
        existing = next((e.correlation_id for e in group if e.correlation_id), None)
        return Correlation(
            correlation_id=existing or f"motion_seq_{uuid.uuid4().hex[:12]}",
            chain_type=self.chain_type,
            members=group,
        )


class PersonTrackingDetector(PatternDetector):
    """Re-identifying one person across cameras needs an appearance model; not wired up."""
    chain_type = ChainType.PERSON_TRACKING

    def analyze(self, event, recent):
        return None


class AreaCoverageDetector(PatternDetector):
    """Blind-spot / coverage-gap analysis hook."""
    chain_type = ChainType.AREA_COVERAGE

    def analyze(self, event, recent):
        return None


def default_detectors() -> list[PatternDetector]:
    return [MotionSequenceDetector(), PersonTrackingDetector(), AreaCoverageDetector()]


class CorrelationEngine:
    def __init__(
        self,
        detectors: Optional[list[PatternDetector]] = None,
        recent_window: timedelta = timedelta(minutes=settings.CORRELATION_RECENT_WINDOW_MINUTES),
        history: timedelta = timedelta(hours=settings.CORRELATION_HISTORY_HOURS),
        clock: Callable[[], datetime] = utcnow,
    ):
        self._detectors = detectors if detectors is not None else default_detectors()
        self._recent_window = recent_window
        self._history = history
        self._clock = clock

        self._events: dict[str, MultiDeviceEvent] = {}
        self._device_queues: dict[str, list[MultiDeviceEvent]] = defaultdict(list)
        self._correlations: dict[str, list[str]] = {}
        self._listeners: list[EventListener] = []

    # ── Ingestion ─────────────────────────────────────────────────────────

    async def ingest_event(self, event: EventOut, source_device: SourceDevice) -> MultiDeviceEvent:
        if event.id in self._events:
            return self._events[event.id].model_copy()

        tagged = MultiDeviceEvent(
            **event.model_dump(include=set(EventOut.model_fields)),
            source_device=source_device,
        )
        self._prune()
        self._events[tagged.id] = tagged
        self._device_queues[source_device.id].append(tagged)

        recent = self._recent_events()
        for detector in self._detectors:
            correlation = detector.analyze(tagged, recent)
            if correlation is not None:
                self._apply(correlation)

        self._notify(tagged)
        return tagged.model_copy()

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event: MultiDeviceEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event.model_copy())
            except Exception as e:
                logger.error(f"[CORR] Listener {listener!r} raised: {e}", exc_info=True)

    def _apply(self, correlation: Correlation) -> None:
        cid = correlation.correlation_id
        ids = set(self._correlations.get(cid, [])) | {m.id for m in correlation.members}
        # A group bridging two sequences folds the other one into this id
        absorbed = {m.correlation_id for m in correlation.members
                    if m.correlation_id and m.correlation_id != cid}
        for other in absorbed:
            ids.update(self._correlations.pop(other, []))
            logger.info(f"🔗 [CORR] {other} merged into {cid}")
        members = sorted((self._events[i] for i in ids if i in self._events), key=lambda e: e.timestamp)

        for idx, member in enumerate(members):
            member.correlation_id = cid
            member.event_chain = EventChain(
                previous_event=members[idx - 1].id if idx > 0 else None,
                next_event=members[idx + 1].id if idx < len(members) - 1 else None,
                chain_type=correlation.chain_type,
            )

        is_new = cid not in self._correlations
        self._correlations[cid] = [m.id for m in members]
        if is_new:
            logger.info(f"🔗 [CORR] {correlation.chain_type.value} detected: {cid} "
                        f"({len(members)} events, {len({m.source_device.id for m in members})} devices)")

    def _recent_events(self) -> list[MultiDeviceEvent]:
        cutoff = self._clock() - self._recent_window
        return [e for e in self._events.values() if e.timestamp >= cutoff]

    def _prune(self) -> None:
        cutoff = self._clock() - self._history
        stale = [eid for eid, e in self._events.items() if e.timestamp < cutoff]
        if not stale:
            return
        for eid in stale:
            del self._events[eid]
        for device_id, queue in list(self._device_queues.items()):
            queue[:] = [e for e in queue if e.id in self._events]
            if not queue:
                del self._device_queues[device_id]
        for cid, ids in list(self._correlations.items()):
            kept = [i for i in ids if i in self._events]
            if kept:
                self._correlations[cid] = kept
            else:
                del self._correlations[cid]
        logger.debug(f"[CORR] Pruned {len(stale)} events older than {cutoff}")

    # ── Correlation lookups ───────────────────────────────────────────────

    @property
    def correlations(self) -> dict[str, list[str]]:
        return {cid: list(ids) for cid, ids in self._correlations.items()}

    def get_correlation(self, correlation_id: str) -> list[MultiDeviceEvent]:
        return [self._events[i].model_copy() for i in self._correlations.get(correlation_id, [])]

    # ── Dashboard read surface ────────────────────────────────────────────

    def get_aggregated_events(self, filters: Optional[AggregateFilter] = None) -> list[MultiDeviceEvent]:
        filters = filters or AggregateFilter()
        events: Iterable[MultiDeviceEvent] = self._events.values()

        if filters.device_ids is not None:
            events = [e for e in events if e.source_device.id in filters.device_ids]
        if filters.locations is not None:
            events = [e for e in events if e.source_device.location in filters.locations]
        if filters.start is not None:
            events = [e for e in events if e.timestamp >= filters.start]
        if filters.end is not None:
            events = [e for e in events if e.timestamp <= filters.end]
        if filters.object_classes is not None:
            wanted = set(filters.object_classes)
            events = [e for e in events if any(d.class_name in wanted for d in e.detections)]
        if filters.alert_level is not None:
            now = self._clock()
            levels = {
                device_id: self._alert_level(queue, now)
                for device_id, queue in self._device_queues.items()
            }
            events = [e for e in events if levels.get(e.source_device.id) == filters.alert_level]

        ordered = sorted(events, key=lambda e: e.timestamp, reverse=True)
        if filters.limit:
            ordered = ordered[:filters.limit]
        return [e.model_copy() for e in ordered]

    def get_device_event_summaries(self) -> list[DeviceEventSummary]:
        now = self._clock()
        today = start_of_day(now)
        summaries = []

        for device_id, queue in self._device_queues.items():
            today_events = [e for e in queue if e.timestamp >= today]
            summaries.append(DeviceEventSummary(
                device_id=device_id,
                device_name=queue[-1].source_device.name if queue else "Unknown",
                events_today=len(today_events),
                last_event_time=max((e.timestamp for e in queue), default=None),
                alert_level=self._alert_level(queue, now),
                top_detections=self._top_detections(today_events),
            ))
        return summaries

    def get_location_event_summaries(self) -> list[LocationEventSummary]:
        now = self._clock()
        today = start_of_day(now)
        by_location: dict[str, list[MultiDeviceEvent]] = defaultdict(list)
        for event in self._events.values():
            by_location[event.source_device.location].append(event)

        summaries = []
        for location, events in by_location.items():
            summaries.append(LocationEventSummary(
                location_name=location,
                devices=len({e.source_device.id for e in events}),
                events_today=sum(1 for e in events if e.timestamp >= today),
                alert_level=self._alert_level(events, now),
                last_activity=max((e.timestamp for e in events), default=None),
                active_detections=sum(1 for e in events if e.timestamp >= now - ACTIVE_WINDOW),
            ))
        return summaries

    @staticmethod
    def _alert_level(events: list[MultiDeviceEvent], now: datetime) -> AlertLevel:
        recent = sum(1 for e in events if now - e.timestamp < ALERT_WINDOW)
        if recent > HIGH_ALERT_EVENTS:
            return AlertLevel.HIGH
        if recent > MEDIUM_ALERT_EVENTS:
            return AlertLevel.MEDIUM
        return AlertLevel.LOW

    @staticmethod
    def _top_detections(events: list[MultiDeviceEvent]) -> list[DetectionStat]:
        counts: Counter = Counter()
        confidence: dict[str, float] = defaultdict(float)
        for event in events:
            for d in event.detections:
                counts[d.class_name] += 1
                confidence[d.class_name] += d.score

        ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[:TOP_DETECTIONS]
        return [
            DetectionStat(object=name, count=count, confidence=confidence[name] / count)
            for name, count in ranked
        ]
