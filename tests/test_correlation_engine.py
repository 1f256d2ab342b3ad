# tests/test_correlation_engine.py
"""Unit tests for multi-device correlation and the dashboard rollups."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from datetime import timedelta
from sentinel.schemas.correlation import AggregateFilter, AlertLevel, ChainType, SourceDevice
from sentinel.schemas.event import EventKind, EventOut
from sentinel.services.correlation_engine import (
    AreaCoverageDetector, CorrelationEngine, MotionSequenceDetector, PersonTrackingDetector,
)
from sentinel.utils.clock import utcnow
from conftest import make_draft

FRONT = SourceDevice(id="d1", name="Front Cam", location="Front Door")
BACK = SourceDevice(id="d2", name="Back Cam", location="Back Yard")
GARAGE = SourceDevice(id="d3", name="Garage Cam", location="Garage")

_counter = 0


def make_event(timestamp=None, classes=("person",), kind=EventKind.DETECTION) -> EventOut:
    global _counter
    _counter += 1
    draft = make_draft(kind=kind, classes=classes, timestamp=timestamp or utcnow())
    return EventOut(
        id=f"evt_test_{_counter}",
        **draft.model_dump(include={"timestamp", "kind", "detections", "confidence", "metadata"}),
    )


class FixedClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    # Midday, so "today" windows never straddle midnight
    return FixedClock(utcnow().replace(hour=12, minute=0, second=0, microsecond=0))


@pytest.fixture
def engine(clock):
    return CorrelationEngine(clock=clock)


class TestMotionSequence:
    @pytest.mark.asyncio
    async def test_two_devices_ten_seconds_apart(self, engine, clock):
        first = await engine.ingest_event(make_event(clock.now - timedelta(seconds=10)), FRONT)
        second = await engine.ingest_event(make_event(clock.now), BACK)

        assert first.correlation_id is None   # copy returned before the second event arrived
        assert second.correlation_id is not None
        assert second.correlation_id.startswith("motion_seq_")
        assert engine.correlations == {second.correlation_id: [first.id, second.id]}

        locations = {s.location_name: s for s in engine.get_location_event_summaries()}
        assert set(locations) == {"Front Door", "Back Yard"}
        assert locations["Front Door"].devices == 1
        assert locations["Back Yard"].devices == 1

    @pytest.mark.asyncio
    async def test_chain_links_in_time_order(self, engine, clock):
        a = await engine.ingest_event(make_event(clock.now - timedelta(seconds=20)), FRONT)
        b = await engine.ingest_event(make_event(clock.now - timedelta(seconds=10)), BACK)
        c = await engine.ingest_event(make_event(clock.now), GARAGE)

        members = engine.get_correlation(c.correlation_id)
        assert [m.id for m in members] == [a.id, b.id, c.id]
        assert members[0].event_chain.previous_event is None
        assert members[0].event_chain.next_event == b.id
        assert members[1].event_chain.previous_event == a.id
        assert members[1].event_chain.next_event == c.id
        assert members[2].event_chain.next_event is None
        assert all(m.event_chain.chain_type == ChainType.MOTION_SEQUENCE for m in members)
        assert len(engine.correlations) == 1

    @pytest.mark.asyncio
    async def test_same_device_not_correlated(self, engine, clock):
        await engine.ingest_event(make_event(clock.now - timedelta(seconds=5)), FRONT)
        event = await engine.ingest_event(make_event(clock.now), FRONT)
        assert event.correlation_id is None
        assert engine.correlations == {}

    @pytest.mark.asyncio
    async def test_outside_window_not_correlated(self, engine, clock):
        await engine.ingest_event(make_event(clock.now - timedelta(seconds=90)), FRONT)
        event = await engine.ingest_event(make_event(clock.now), BACK)
        assert event.correlation_id is None

    @pytest.mark.asyncio
    async def test_non_person_detections_ignored(self, engine, clock):
        await engine.ingest_event(make_event(clock.now - timedelta(seconds=5), classes=("car",)), FRONT)
        event = await engine.ingest_event(make_event(clock.now), BACK)
        assert event.correlation_id is None

    @pytest.mark.asyncio
    async def test_bridging_event_merges_sequences(self, engine, clock):
        a1 = await engine.ingest_event(make_event(clock.now - timedelta(seconds=110)), FRONT)
        a2 = await engine.ingest_event(make_event(clock.now - timedelta(seconds=100)), BACK)
        b1 = await engine.ingest_event(make_event(clock.now - timedelta(seconds=20)), GARAGE)
        b2 = await engine.ingest_event(make_event(clock.now - timedelta(seconds=10)),
                                       SourceDevice(id="d4", name="Porch", location="Porch"))
        owner = {eid: cid for cid, ids in engine.correlations.items() for eid in ids}
        first_id, second_id = owner[a1.id], owner[b1.id]
        assert first_id != second_id

        bridge = await engine.ingest_event(make_event(clock.now - timedelta(seconds=55)),
                                           SourceDevice(id="d5", name="Side", location="Side Gate"))

        assert bridge.correlation_id == first_id
        assert list(engine.correlations) == [first_id]
        assert engine.get_correlation(second_id) == []
        members = engine.get_correlation(first_id)
        assert [m.id for m in members] == [a1.id, a2.id, bridge.id, b1.id, b2.id]
        assert all(m.correlation_id == first_id for m in members)

    def test_extension_detectors_report_nothing(self):
        event = make_event()
        assert PersonTrackingDetector().analyze(event, [event]) is None
        assert AreaCoverageDetector().analyze(event, [event]) is None

    @pytest.mark.asyncio
    async def test_custom_window(self, clock):
        engine = CorrelationEngine(detectors=[MotionSequenceDetector(window=timedelta(seconds=5))], clock=clock)
        await engine.ingest_event(make_event(clock.now - timedelta(seconds=10)), FRONT)
        event = await engine.ingest_event(make_event(clock.now), BACK)
        assert event.correlation_id is None


class TestIngest:
    @pytest.mark.asyncio
    async def test_input_event_not_mutated(self, engine, clock):
        original = make_event(clock.now)
        tagged = await engine.ingest_event(original, FRONT)
        assert tagged.source_device == FRONT
        assert not hasattr(original, "source_device")

    @pytest.mark.asyncio
    async def test_reingest_is_idempotent(self, engine, clock):
        event = make_event(clock.now)
        await engine.ingest_event(event, FRONT)
        await engine.ingest_event(event, FRONT)
        assert len(engine.get_aggregated_events()) == 1

    @pytest.mark.asyncio
    async def test_subscribers_notified(self, engine, clock):
        seen = []
        unsubscribe = engine.subscribe(seen.append)
        await engine.ingest_event(make_event(clock.now), FRONT)
        unsubscribe()
        await engine.ingest_event(make_event(clock.now), BACK)
        assert len(seen) == 1
        assert seen[0].source_device.id == "d1"

    @pytest.mark.asyncio
    async def test_history_pruned(self, engine, clock):
        stale = await engine.ingest_event(make_event(clock.now - timedelta(hours=30)), FRONT)
        await engine.ingest_event(make_event(clock.now), BACK)
        ids = [e.id for e in engine.get_aggregated_events()]
        assert stale.id not in ids
        assert [s.device_id for s in engine.get_device_event_summaries()] == ["d2"]


class TestAggregation:
    @pytest.mark.asyncio
    async def test_filters_and_ordering(self, engine, clock):
        old = await engine.ingest_event(make_event(clock.now - timedelta(minutes=30), classes=("car",)), FRONT)
        mid = await engine.ingest_event(make_event(clock.now - timedelta(minutes=10)), BACK)
        new = await engine.ingest_event(make_event(clock.now, classes=("dog",)), FRONT)

        assert [e.id for e in engine.get_aggregated_events()] == [new.id, mid.id, old.id]
        assert [e.id for e in engine.get_aggregated_events(AggregateFilter(device_ids=["d1"]))] == [new.id, old.id]
        assert [e.id for e in engine.get_aggregated_events(AggregateFilter(locations=["Back Yard"]))] == [mid.id]
        assert [e.id for e in engine.get_aggregated_events(AggregateFilter(object_classes=["car", "dog"]))] == [new.id, old.id]
        assert [e.id for e in engine.get_aggregated_events(
            AggregateFilter(start=clock.now - timedelta(minutes=15), end=clock.now - timedelta(minutes=5)))] == [mid.id]
        assert len(engine.get_aggregated_events(AggregateFilter(limit=2))) == 2
        assert engine.get_aggregated_events(AggregateFilter(device_ids=[])) == []

    @pytest.mark.asyncio
    async def test_alert_level_filter(self, engine, clock):
        for i in range(6):
            await engine.ingest_event(make_event(clock.now - timedelta(minutes=i)), FRONT)
        await engine.ingest_event(make_event(clock.now), BACK)

        medium = engine.get_aggregated_events(AggregateFilter(alert_level=AlertLevel.MEDIUM))
        low = engine.get_aggregated_events(AggregateFilter(alert_level=AlertLevel.LOW))
        assert {e.source_device.id for e in medium} == {"d1"}
        assert {e.source_device.id for e in low} == {"d2"}


class TestSummaries:
    @pytest.mark.asyncio
    async def test_alert_levels(self, engine, clock):
        for i in range(11):
            await engine.ingest_event(make_event(clock.now - timedelta(minutes=i)), FRONT)
        for i in range(6):
            await engine.ingest_event(make_event(clock.now - timedelta(minutes=i)), BACK)
        for i in range(5):
            await engine.ingest_event(make_event(clock.now - timedelta(minutes=i)), GARAGE)

        levels = {s.device_id: s.alert_level for s in engine.get_device_event_summaries()}
        assert levels == {"d1": AlertLevel.HIGH, "d2": AlertLevel.MEDIUM, "d3": AlertLevel.LOW}

    @pytest.mark.asyncio
    async def test_old_events_do_not_raise_alert_level(self, engine, clock):
        for i in range(12):
            await engine.ingest_event(make_event(clock.now - timedelta(minutes=40 + i)), FRONT)
        summary = engine.get_device_event_summaries()[0]
        assert summary.alert_level == AlertLevel.LOW

    @pytest.mark.asyncio
    async def test_device_summary_fields(self, engine, clock):
        await engine.ingest_event(make_event(clock.now - timedelta(minutes=1), classes=("person", "car")), FRONT)
        await engine.ingest_event(make_event(clock.now, classes=("person",)), FRONT)

        summary = engine.get_device_event_summaries()[0]
        assert summary.device_name == "Front Cam"
        assert summary.last_event_time == clock.now
        assert summary.top_detections[0].object == "person"
        assert summary.top_detections[0].count == 2
        assert summary.top_detections[0].confidence == pytest.approx(0.9)
        assert summary.top_detections[1].object == "car"

    @pytest.mark.asyncio
    async def test_top_detections_capped_at_five(self, engine, clock):
        classes = ("person", "car", "dog", "cat", "bicycle", "truck")
        await engine.ingest_event(make_event(clock.now, classes=classes), FRONT)
        summary = engine.get_device_event_summaries()[0]
        assert len(summary.top_detections) == 5

    @pytest.mark.asyncio
    async def test_location_active_detections(self, engine, clock):
        await engine.ingest_event(make_event(clock.now - timedelta(minutes=2)), FRONT)
        await engine.ingest_event(make_event(clock.now - timedelta(minutes=20)), FRONT)
        await engine.ingest_event(make_event(clock.now), SourceDevice(id="d4", name="Porch", location="Front Door"))

        summary = engine.get_location_event_summaries()[0]
        assert summary.location_name == "Front Door"
        assert summary.devices == 2
        assert summary.active_detections == 2
        assert summary.last_activity == clock.now
