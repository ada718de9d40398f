"""
FastAPI server for the visit capture core.

Provides REST endpoints for visit control, producer ingestion (gesture
frames, pointing frames, transcript chunks, injected segments/entities)
and read-only views for downstream consumers.

Handlers are async so every request runs on the single event loop
thread, matching the core's single-threaded append model.
"""

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from typing import Dict, List, Optional
import uvicorn
import base64
import binascii
import sys
import logging
from pathlib import Path

import numpy as np

# Add parent directory to path to allow imports from both locations
parent_dir = Path(__file__).parent.parent
if str(parent_dir) not in sys.path:
    sys.path.insert(0, str(parent_dir))

from fusion.visit_fusion import VisitFusionEngine
from session.data_models import (
    Entity,
    EntityValidationError,
    Segment,
    SegmentValidationError,
    coerce_ms,
)
from session.store import VisitTransitionError
from utils.config_loader import load_config
from video_pipeline.emission import Emission
from video_pipeline.gesture_detector import gesture_frame_from_dict
from video_pipeline.pointing_detector import face_frame_from_dict

logger = logging.getLogger(__name__)


def _emission_dict(emission: Optional[Emission]) -> Optional[Dict]:
    if emission is None:
        return None
    return {'segment': emission.segment.to_dict(), 'entity': emission.entity.to_dict()}


def _visit_dict(engine: VisitFusionEngine) -> Dict:
    return {'status': engine.visit.status.value}


def _rgb_frame_from_body(body: Dict) -> np.ndarray:
    width, height = int(body['width']), int(body['height'])
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid frame size {width}x{height}")
    buffer = base64.b64decode(body['rgb'], validate=True)
    return np.frombuffer(buffer, dtype=np.uint8).reshape(height, width, 3)


def create_app(engine: Optional[VisitFusionEngine] = None, config: Optional[Dict] = None) -> FastAPI:
    """
    Build the API around one engine.

    Args:
        engine: Engine to expose (built from config if None)
        config: Configuration dict used when building the engine
    """
    if engine is None:
        engine = VisitFusionEngine(config or {})

    app = FastAPI(
        title="Visit Capture API",
        description="Signed + spoken visit capture: segments, entities, turns",
        version="1.0.0"
    )
    app.state.engine = engine

    # Enable CORS for the capture frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://localhost:5173"   # Default Vite port
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def root():
        """API root endpoint."""
        return {
            "message": "Visit Capture API",
            "version": "1.0.0",
            "endpoints": [
                "/visit",
                "/segments",
                "/segments/display",
                "/turns",
                "/entities",
                "/video/frames",
                "/hpi",
                "/health-record",
                "/followups"
            ]
        }

    # --------------------------------------------------------------
    # Visit lifecycle
    # --------------------------------------------------------------

    @app.get("/visit")
    async def get_visit():
        return _visit_dict(engine)

    @app.post("/visit/start")
    async def start_visit():
        try:
            engine.start_visit()
        except VisitTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return _visit_dict(engine)

    @app.post("/visit/stop")
    async def stop_visit():
        try:
            engine.stop_visit()
        except VisitTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return _visit_dict(engine)

    @app.post("/visit/reset")
    async def reset_visit():
        engine.reset_visit()
        return _visit_dict(engine)

    # --------------------------------------------------------------
    # Segments and entities
    # --------------------------------------------------------------

    @app.get("/segments")
    async def get_segments() -> List[Dict]:
        """Raw segments, sorted by t_start."""
        return [s.to_dict() for s in engine.store.segments]

    @app.post("/segments")
    async def add_segment(request: Dict):
        """
        Inject one segment (external producers).

        Returns:
            {"inserted": bool}; duplicates and invariant violations insert nothing
        """
        try:
            segment = Segment.from_dict(request)
        except SegmentValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"inserted": engine.store.add_segment(segment), "id": segment.id}

    @app.get("/segments/display")
    async def get_display_segments(window_ms: Optional[int] = None) -> List[Dict]:
        """Coalesced captions (display only)."""
        return [s.to_dict() for s in engine.display_segments(window_ms)]

    @app.get("/turns")
    async def get_turns(gap_ms: Optional[int] = None) -> List[Dict]:
        return [t.to_dict() for t in engine.turns(gap_ms)]

    @app.get("/entities")
    async def get_entities() -> List[Dict]:
        return [e.to_dict() for e in engine.store.entities]

    @app.post("/entities")
    async def add_entities(request: Dict):
        if 'entities' not in request or not isinstance(request['entities'], list):
            raise HTTPException(status_code=400, detail="Missing 'entities' list in request body")
        try:
            entities = [Entity.from_dict(e) for e in request['entities']]
        except EntityValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"inserted": engine.store.add_entities(entities)}

    # --------------------------------------------------------------
    # Producers
    # --------------------------------------------------------------

    @app.post("/transcript/chunks")
    async def ingest_transcript_chunk(request: Dict):
        """
        Ingest one completed utterance chunk.

        Body:
            events: [{"text", "is_final", "confidence"?}, ...]
            started_at_ms, ended_at_ms: absolute chunk bounds
        """
        missing = [k for k in ('events', 'started_at_ms', 'ended_at_ms') if k not in request]
        if missing:
            raise HTTPException(status_code=400, detail=f"Missing fields in request body: {missing}")
        events = request['events']
        try:
            started_at_ms = coerce_ms(request['started_at_ms'])
            ended_at_ms = coerce_ms(request['ended_at_ms'])
            if started_at_ms is None or ended_at_ms is None or not isinstance(events, list):
                raise ValueError("events must be a list and chunk bounds must be set")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=f"Malformed transcript chunk: {e}")
        segment = engine.ingest_transcript_chunk(events, started_at_ms, ended_at_ms)
        return {"segment": segment.to_dict() if segment is not None else None}

    @app.post("/gestures/frames")
    async def process_gesture_frame(request: Dict):
        try:
            frame = gesture_frame_from_dict(request)
            now_ms = coerce_ms(request.get('now_ms'))
        except (KeyError, TypeError, ValueError) as e:
            raise HTTPException(status_code=400, detail=f"Malformed gesture frame: {e}")
        emission = engine.process_gesture_frame(frame, now_ms)
        return {"emission": _emission_dict(emission)}

    @app.post("/pointing/frames")
    async def process_pointing_frame(request: Dict):
        try:
            hands = [np.asarray(h, dtype=float) for h in request.get('hands') or []]
            face = face_frame_from_dict(request.get('face'))
            now_ms = coerce_ms(request.get('now_ms'))
        except (KeyError, TypeError, ValueError) as e:
            raise HTTPException(status_code=400, detail=f"Malformed pointing frame: {e}")
        emission = engine.process_pointing_frame(hands, face, now_ms)
        return {"emission": _emission_dict(emission)}

    @app.post("/video/frames")
    async def process_video_frame(request: Dict):
        """
        Run both recognizers on one raw frame.

        Body:
            width, height: Frame size in pixels
            rgb: base64 of the packed uint8 RGB buffer (height * width * 3 bytes)
            now_ms: Absolute frame time (optional)
        """
        if engine.gesture_recognizer is None and engine.face_recognizer is None:
            raise HTTPException(status_code=503, detail="No recognizers configured")
        try:
            rgb_frame = _rgb_frame_from_body(request)
            now_ms = coerce_ms(request.get('now_ms'))
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            raise HTTPException(status_code=400, detail=f"Malformed video frame: {e}")
        emissions = engine.process_video_frame(rgb_frame, now_ms)
        return {"emissions": [_emission_dict(e) for e in emissions]}

    # --------------------------------------------------------------
    # Note building
    # --------------------------------------------------------------

    @app.get("/hpi")
    async def get_hpi():
        return {"lines": engine.hpi_lines()}

    @app.get("/health-record")
    async def get_health_record():
        return {"text": engine.store.health_record}

    @app.put("/health-record")
    async def set_health_record(request: Dict):
        if 'text' not in request:
            raise HTTPException(status_code=400, detail="Missing 'text' field in request body")
        engine.store.set_health_record(str(request['text']))
        return {"text": engine.store.health_record}

    @app.post("/health-record/append-from-entities")
    async def append_from_entities():
        lines = engine.append_hpi_to_health_record()
        return {"appended": lines, "text": engine.store.health_record}

    @app.get("/followups")
    async def get_followups():
        return {
            "followups": [f.to_dict() for f in engine.followups],
            "errors": list(engine.followup_errors)
        }

    return app


def start_server(config_path: Optional[str] = None, host: Optional[str] = None, port: Optional[int] = None):
    """
    Start the API server.

    Args:
        config_path: YAML config path (default resolution if None)
        host: Host address (config 'api.host' if None)
        port: Port number (config 'api.port' if None)
    """
    config = load_config(config_path)
    api_config = config.get('api', {})
    host = host or api_config.get('host', '127.0.0.1')
    port = port or api_config.get('port', 8000)

    app = create_app(config=config)
    print(f"Starting Visit Capture API server at http://{host}:{port}")
    print(f"API documentation available at http://{host}:{port}/docs")
    try:
        uvicorn.run(app, host=host, port=port)
    finally:
        app.state.engine.close()


if __name__ == "__main__":
    start_server()
