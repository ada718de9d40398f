"""
Unit tests for the session store.

Tests cover:
- Idempotent segment insert
- Sort invariant under arbitrary insert order
- Rejection of invariant-violating segments and entities
- Visit state machine transitions
- Health record edits
"""

import itertools
import pytest # pyright: ignore[reportMissingImports]
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from session.data_models import (
    Entity,
    EntityValidationError,
    Segment,
    SegmentValidationError,
    VisitState,
    coerce_ms,
)
from session.enums import EntityType, Modality, Speaker, VisitStatus
from session.store import SegmentStore, VisitTransitionError


def make_segment(seg_id, t_start, t_end=None, speaker=Speaker.PATIENT, **kwargs):
    return Segment(
        id=seg_id,
        speaker=speaker,
        modality=kwargs.pop('modality', Modality.SIGNED),
        t_start=t_start,
        t_end=t_start if t_end is None else t_end,
        **kwargs
    )


@pytest.fixture
def store():
    s = SegmentStore()
    s.start_visit(started_at_ms=1_000_000)
    return s


class TestSegmentInsert:
    """Test add_segment."""

    def test_insert_returns_true(self, store):
        assert store.add_segment(make_segment('a', 100)) is True
        assert [s.id for s in store.segments] == ['a']

    def test_insert_is_idempotent(self, store):
        seg = make_segment('a', 100, text='chest pain')
        store.add_segment(seg)
        before = store.segments

        assert store.add_segment(seg) is False
        assert store.segments == before
        assert len(store.segments) == 1

    def test_duplicate_id_keeps_first(self, store):
        store.add_segment(make_segment('a', 100, text='first'))
        store.add_segment(make_segment('a', 500, text='second'))

        assert store.get_segment('a').text == 'first'
        assert len(store.segments) == 1

    def test_sorted_after_every_insert(self):
        starts = [500, 0, 300, 100, 300, 200]
        for order in itertools.permutations(range(len(starts)), len(starts)):
            store = SegmentStore()
            store.start_visit(started_at_ms=0)
            for i in order:
                store.add_segment(make_segment(f"s{i}", starts[i]))
                view = [s.t_start for s in store.segments]
                assert view == sorted(view)

    def test_equal_start_keeps_insertion_order(self, store):
        store.add_segment(make_segment('first', 100))
        store.add_segment(make_segment('second', 100))
        store.add_segment(make_segment('early', 50))

        assert [s.id for s in store.segments] == ['early', 'first', 'second']

    def test_out_of_order_producers(self, store):
        # Transcript chunk arrives after a later gesture
        store.add_segment(make_segment('gesture', 4000))
        store.add_segment(make_segment('asr', 1000, 3500, speaker=Speaker.CLINICIAN,
                                       modality=Modality.SPOKEN, text='where does it hurt'))

        assert [s.id for s in store.segments] == ['asr', 'gesture']

    def test_segments_view_is_immutable(self, store):
        store.add_segment(make_segment('a', 100))
        view = store.segments
        assert isinstance(view, tuple)
        with pytest.raises(Exception):
            view[0].text = 'changed'


class TestSegmentValidation:
    """Test rejection of invariant-violating segments."""

    def test_inverted_range_rejected(self, store):
        assert store.add_segment(make_segment('bad', 500, 100)) is False
        assert store.segments == ()

    def test_negative_start_rejected(self, store):
        assert store.add_segment(make_segment('bad', -1, 10)) is False

    def test_confidence_out_of_range_rejected(self, store):
        assert store.add_segment(make_segment('bad', 0, confidence=1.5)) is False

    def test_empty_id_rejected(self, store):
        assert store.add_segment(make_segment('', 0)) is False

    def test_instantaneous_segment_accepted(self, store):
        assert store.add_segment(make_segment('point', 1234, 1234)) is True

    def test_from_dict_missing_field(self):
        with pytest.raises(SegmentValidationError):
            Segment.from_dict({'speaker': 'patient', 't_start': 0, 't_end': 1})

    def test_from_dict_unknown_speaker(self):
        with pytest.raises(SegmentValidationError):
            Segment.from_dict({'speaker': 'nurse', 'modality': 'spoken', 't_start': 0, 't_end': 1})

    def test_from_dict_roundtrip_fields(self):
        seg = Segment.from_dict({
            'id': 'x',
            'speaker': 'clinician',
            'modality': 'spoken',
            't_start': 10,
            't_end': 20,
            'text': 'hello',
            'glosses': ['HELLO'],
            'confidence': 0.7,
        })
        assert seg.speaker == Speaker.CLINICIAN
        assert seg.glosses == ('HELLO',)
        assert seg.to_dict()['glosses'] == ['HELLO']

    def test_coerce_ms(self):
        assert coerce_ms(None) is None
        assert coerce_ms(1500) == 1500
        assert coerce_ms('1500') == 1500
        assert coerce_ms(12.9) == 12

    @pytest.mark.parametrize('value', ['soon', [1], {}, True, float('inf'), float('nan')])
    def test_coerce_ms_rejects(self, value):
        with pytest.raises(ValueError):
            coerce_ms(value)


class TestEntities:
    """Test add_entities."""

    def test_bulk_insert_counts(self, store):
        entities = [
            Entity('e1', EntityType.SYMPTOM, 'chest pain', 'seg1'),
            Entity('e2', EntityType.BODY_SITE, 'left side', 'seg1'),
        ]
        assert store.add_entities(entities) == 2
        assert [e.id for e in store.entities] == ['e1', 'e2']

    def test_duplicate_ids_dropped(self, store):
        store.add_entities([Entity('e1', EntityType.SYMPTOM, 'chest pain', 'seg1')])
        inserted = store.add_entities([
            Entity('e1', EntityType.SYMPTOM, 'other', 'seg2'),
            Entity('e2', EntityType.DURATION, 'two days', 'seg2'),
        ])

        assert inserted == 1
        assert store.entities[0].text == 'chest pain'

    def test_entity_without_source_rejected(self, store):
        assert store.add_entities([Entity('e1', EntityType.SYMPTOM, 'chest pain', '')]) == 0

    def test_entity_from_dict_unknown_type(self):
        with pytest.raises(EntityValidationError):
            Entity.from_dict({'type': 'vital_sign', 'text': 'x', 'source_segment_id': 's'})


class TestVisitStateMachine:
    """Test visit lifecycle transitions."""

    def test_initial_state(self):
        store = SegmentStore()
        assert store.visit.status == VisitStatus.IDLE
        assert store.is_recording is False

    def test_start_stop_reset(self):
        store = SegmentStore()
        store.start_visit(started_at_ms=5000)
        assert store.visit.status == VisitStatus.RECORDING
        assert store.visit.started_at == 5000

        store.stop_visit()
        assert store.visit.status == VisitStatus.REVIEW

        store.reset()
        assert store.visit.status == VisitStatus.IDLE
        assert store.visit.started_at is None

    def test_stop_preserves_history(self, store):
        store.add_segment(make_segment('a', 100))
        store.stop_visit()
        assert len(store.segments) == 1

    def test_start_clears_history(self):
        store = SegmentStore()
        store.start_visit(started_at_ms=0)
        store.add_segment(make_segment('a', 100))
        store.stop_visit()
        store.reset()
        store.start_visit(started_at_ms=10_000)

        assert store.segments == ()

    def test_reset_clears_everything(self, store):
        store.add_segment(make_segment('a', 100))
        store.add_entities([Entity('e1', EntityType.SYMPTOM, 'chest pain', 'a')])
        store.set_health_record('notes')

        store.reset()

        assert store.segments == ()
        assert store.entities == ()
        assert store.health_record == ''

    def test_start_while_recording_raises(self, store):
        with pytest.raises(VisitTransitionError):
            store.start_visit()

    def test_start_from_review_raises(self, store):
        store.stop_visit()
        with pytest.raises(VisitTransitionError):
            store.start_visit()

    def test_stop_when_idle_raises(self):
        with pytest.raises(VisitTransitionError):
            SegmentStore().stop_visit()

    def test_listeners_notified(self):
        store = SegmentStore()
        seen = []
        store.add_status_listener(seen.append)

        store.start_visit(started_at_ms=0)
        store.stop_visit()
        store.reset()

        assert seen == [VisitStatus.RECORDING, VisitStatus.REVIEW, VisitStatus.IDLE]

    def test_listener_can_read_store(self):
        store = SegmentStore()
        observed = []
        store.add_status_listener(lambda status: observed.append(store.visit.status))

        store.start_visit(started_at_ms=0)

        assert observed == [VisitStatus.RECORDING]

    def test_relative_ms(self, store):
        assert store.relative_ms(1_000_250) == 250
        assert store.relative_ms(999_000) == 0

    def test_visit_state_relative_without_start(self):
        assert VisitState().relative_ms(12345) == 0


class TestHealthRecord:
    """Test health record edits."""

    def test_set(self, store):
        store.set_health_record('Patient reports chest pain.')
        assert store.health_record == 'Patient reports chest pain.'

    def test_append_on_new_line(self, store):
        store.set_health_record('HPI:')
        store.append_health_record('• [00:01] chest pain')
        assert store.health_record == 'HPI:\n• [00:01] chest pain'

    def test_append_to_empty(self, store):
        store.append_health_record('first line')
        assert store.health_record == 'first line'

    def test_append_blank_ignored(self, store):
        store.set_health_record('HPI:')
        store.append_health_record('   ')
        assert store.health_record == 'HPI:'
