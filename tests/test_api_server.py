"""
Unit tests for the REST API.

Tests cover:
- Visit lifecycle endpoints and illegal transitions (409)
- Segment/entity injection and validation errors (400)
- Producer endpoints (transcript chunks, gesture and pointing frames)
- Read views and health record editing
"""

import base64
import pytest # pyright: ignore[reportMissingImports]
from pathlib import Path

from fastapi.testclient import TestClient

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from fusion import VisitFusionEngine
from utils.api_server import create_app
from video_pipeline.gesture_detector import GestureFrame

T0 = 1_700_000_000_000

CONFIG = {
    'gesture_detection': {'required_streak': 2, 'stable_ms': 100, 'cooldown_ms': 1500},
}


@pytest.fixture
def engine():
    return VisitFusionEngine(CONFIG)


@pytest.fixture
def client(engine):
    return TestClient(create_app(engine=engine))


def segment_body(seg_id, t_start, t_end, speaker='clinician', modality='spoken', text='hello'):
    return {
        'id': seg_id,
        'speaker': speaker,
        'modality': modality,
        't_start': t_start,
        't_end': t_end,
        'text': text,
        'confidence': 0.9,
    }


class TestVisitEndpoints:
    """Test visit lifecycle endpoints."""

    def test_root(self, client):
        response = client.get('/')
        assert response.status_code == 200
        assert '/segments' in response.json()['endpoints']

    def test_lifecycle(self, client):
        assert client.get('/visit').json() == {'status': 'idle'}
        assert client.post('/visit/start').json() == {'status': 'recording'}
        assert client.post('/visit/stop').json() == {'status': 'review'}
        assert client.post('/visit/reset').json() == {'status': 'idle'}

    def test_double_start_conflict(self, client):
        client.post('/visit/start')
        response = client.post('/visit/start')
        assert response.status_code == 409

    def test_stop_when_idle_conflict(self, client):
        assert client.post('/visit/stop').status_code == 409


class TestSegmentEndpoints:
    """Test segment and entity injection."""

    def test_insert_and_list(self, client):
        client.post('/visit/start')
        assert client.post('/segments', json=segment_body('b', 500, 600)).json() == {'inserted': True, 'id': 'b'}
        client.post('/segments', json=segment_body('a', 0, 100))

        ids = [s['id'] for s in client.get('/segments').json()]
        assert ids == ['a', 'b']

    def test_duplicate_not_inserted(self, client):
        client.post('/segments', json=segment_body('a', 0, 100))
        response = client.post('/segments', json=segment_body('a', 0, 100))

        assert response.json()['inserted'] is False
        assert len(client.get('/segments').json()) == 1

    def test_malformed_segment(self, client):
        response = client.post('/segments', json={'speaker': 'patient'})
        assert response.status_code == 400

    def test_invariant_violation_not_inserted(self, client):
        response = client.post('/segments', json=segment_body('bad', 500, 100))
        assert response.status_code == 200
        assert response.json()['inserted'] is False

    def test_display_and_turns(self, client):
        client.post('/segments', json=segment_body('a', 0, 100, text='my chest'))
        client.post('/segments', json=segment_body('b', 250, 400, text='hurts'))
        client.post('/segments', json=segment_body('c', 3000, 3000, speaker='patient', modality='signed', text='left side'))

        display = client.get('/segments/display').json()
        assert [s['text'] for s in display] == ['my chest hurts', 'left side']

        assert len(client.get('/segments/display', params={'window_ms': 100}).json()) == 3

        turns = client.get('/turns').json()
        assert [t['speaker'] for t in turns] == ['clinician', 'patient']
        assert turns[0]['segment_ids'] == ['a', 'b']

    def test_entities(self, client):
        body = {'entities': [
            {'id': 'e1', 'type': 'symptom', 'text': 'chest pain', 'source_segment_id': 'a'},
            {'id': 'e1', 'type': 'symptom', 'text': 'chest pain', 'source_segment_id': 'a'},
        ]}
        assert client.post('/entities', json=body).json() == {'inserted': 1}
        assert [e['id'] for e in client.get('/entities').json()] == ['e1']

    def test_entities_missing_list(self, client):
        assert client.post('/entities', json={}).status_code == 400

    def test_entities_bad_type(self, client):
        body = {'entities': [{'type': 'vital_sign', 'text': 'x', 'source_segment_id': 'a'}]}
        assert client.post('/entities', json=body).status_code == 400


class TestProducerEndpoints:
    """Test recognizer-facing endpoints."""

    def test_transcript_chunk(self, client, engine):
        engine.start_visit(T0)
        response = client.post('/transcript/chunks', json={
            'events': [
                {'text': 'where', 'is_final': False},
                {'text': 'where does it hurt', 'is_final': True, 'confidence': 0.8},
            ],
            'started_at_ms': T0 + 1000,
            'ended_at_ms': T0 + 2500,
        })

        segment = response.json()['segment']
        assert segment['text'] == 'where does it hurt'
        assert (segment['t_start'], segment['t_end']) == (1000, 2500)

    def test_transcript_chunk_missing_fields(self, client):
        assert client.post('/transcript/chunks', json={'events': []}).status_code == 400

    def test_gesture_frames(self, client, engine):
        engine.start_visit(T0)
        emissions = []
        for i in range(3):
            response = client.post('/gestures/frames', json={
                'gestures': [[{'name': 'Thumb_Down', 'score': 0.95}]],
                'now_ms': T0 + i * 100,
            })
            emissions.append(response.json()['emission'])

        assert emissions[0] is None
        assert emissions[1]['segment']['text'] == 'chest pain'
        assert emissions[1]['entity']['type'] == 'symptom'
        assert emissions[2] is None

    def test_gesture_frames_pair_form(self, client, engine):
        engine.start_visit(T0)
        for i in range(2):
            response = client.post('/gestures/frames', json={
                'gestures': [[['Open_Palm', 0.9]]],
                'now_ms': T0 + i * 100,
            })
        assert response.json()['emission']['segment']['text'] == 'left side'

    def test_transcript_chunk_bad_bounds(self, client, engine):
        engine.start_visit(T0)
        response = client.post('/transcript/chunks', json={
            'events': [{'text': 'hi', 'is_final': True}],
            'started_at_ms': 'soon',
            'ended_at_ms': T0 + 100,
        })

        assert response.status_code == 400
        assert client.get('/segments').json() == []

    def test_transcript_chunk_null_bounds(self, client):
        response = client.post('/transcript/chunks', json={'events': [], 'started_at_ms': None, 'ended_at_ms': None})
        assert response.status_code == 400

    def test_bad_now_ms_rejected_without_touching_detector(self, client, engine):
        engine.start_visit(T0)

        first = client.post('/gestures/frames', json={'gestures': [[['Thumb_Down', 0.95]]], 'now_ms': 'x'})
        codes = [first.status_code]
        emissions = []
        for i in range(6):
            response = client.post('/gestures/frames', json={
                'gestures': [[['Thumb_Down', 0.95]]],
                'now_ms': T0 + i * 200,
            })
            codes.append(response.status_code)
            emissions.append(response.json()['emission'])

        assert codes == [400] + [200] * 6
        assert emissions[1]['segment']['text'] == 'chest pain'

    def test_gesture_candidate_without_name(self, client):
        response = client.post('/gestures/frames', json={'gestures': [[{'score': 0.9}]]})
        assert response.status_code == 400

    def test_pointing_bad_now_ms(self, client):
        response = client.post('/pointing/frames', json={'hands': [], 'now_ms': [1]})
        assert response.status_code == 400

    def test_gesture_frames_ignored_when_idle(self, client):
        response = client.post('/gestures/frames', json={'gestures': [[['Thumb_Down', 0.99]]]})
        assert response.json() == {'emission': None}

    def test_pointing_frames(self, client, engine):
        engine.start_visit(T0)
        hand = [[100.0 + 5 * i, 450.0] for i in range(21)]
        hand[7] = [270.0, 200.0]
        hand[8] = [290.0, 200.0]
        face = {
            'bbox_width': 200.0,
            'keypoints': [[230, 180], [170, 180], [200, 210], [200, 240], [300, 200], [100, 200]],
        }

        results = [
            client.post('/pointing/frames', json={'hands': [hand], 'face': face, 'now_ms': T0 + t}).json()
            for t in range(0, 500, 100)
        ]

        assert [r['emission'] is not None for r in results] == [False, False, False, False, True]
        assert results[-1]['emission']['segment']['text'] == 'ear pain'

    def test_pointing_frames_malformed_face(self, client):
        response = client.post('/pointing/frames', json={'hands': [], 'face': {'keypoints': []}})
        assert response.status_code == 400


class TestNoteEndpoints:
    """Test HPI and health record endpoints."""

    def test_hpi_and_health_record(self, client, engine):
        engine.start_visit(T0)
        for i in range(2):
            client.post('/gestures/frames', json={
                'gestures': [[['Thumb_Down', 0.95]]],
                'now_ms': T0 + 65_000 + i * 100,
            })

        assert client.get('/hpi').json() == {'lines': ['• [01:05] chest pain']}

        client.put('/health-record', json={'text': 'HPI:'})
        response = client.post('/health-record/append-from-entities').json()

        assert response['appended'] == ['• [01:05] chest pain']
        assert client.get('/health-record').json() == {'text': 'HPI:\n• [01:05] chest pain'}

    def test_put_health_record_requires_text(self, client):
        assert client.put('/health-record', json={}).status_code == 400

    def test_followups_empty(self, client):
        assert client.get('/followups').json() == {'followups': [], 'errors': []}


class FakeGestureHandle:
    """Recognizer stand-in returning a fixed gesture frame."""

    def __init__(self, frame):
        self.frame = frame
        self.shapes = []

    def recognize(self, rgb_frame, timestamp_ms):
        self.shapes.append(rgb_frame.shape)
        return self.frame

    def release(self):
        pass


class TestVideoEndpoint:
    """Test raw frame ingestion."""

    def encode(self, width, height):
        return base64.b64encode(bytes(width * height * 3)).decode('ascii')

    def test_no_recognizers(self, client):
        response = client.post('/video/frames', json={'width': 2, 'height': 2, 'rgb': self.encode(2, 2)})
        assert response.status_code == 503

    def test_frames_reach_recognizer(self):
        handle = FakeGestureHandle(GestureFrame(gestures=[[('Thumb_Down', 0.95)]]))
        engine = VisitFusionEngine(CONFIG, gesture_recognizer=handle)
        client = TestClient(create_app(engine=engine))
        engine.start_visit(T0)

        results = [
            client.post('/video/frames', json={
                'width': 4, 'height': 2, 'rgb': self.encode(4, 2), 'now_ms': T0 + i * 100,
            }).json()
            for i in range(2)
        ]

        assert handle.shapes == [(2, 4, 3), (2, 4, 3)]
        assert results[0] == {'emissions': []}
        assert results[1]['emissions'][0]['segment']['text'] == 'chest pain'

    def test_wrong_buffer_size(self):
        engine = VisitFusionEngine(CONFIG, gesture_recognizer=FakeGestureHandle(GestureFrame()))
        client = TestClient(create_app(engine=engine))

        response = client.post('/video/frames', json={'width': 4, 'height': 4, 'rgb': self.encode(2, 2)})

        assert response.status_code == 400
