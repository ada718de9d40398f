#!/usr/bin/env python3
"""
Main orchestration script for the visit capture core.

Replays a recorded visit (JSONL event log, in arrival order) through the
fusion engine and writes the resulting record:
1. Visit lifecycle events (start / stop / reset)
2. Gesture recognizer frames -> named-gesture detector
3. Hand + face frames -> pointing detector
4. Transcript chunks -> spoken segments
5. Read views: coalesced captions, turns, HPI lines

Usage:
    python main.py --events visit.jsonl --config configs/thresholds.yaml --output results/
    python main.py --serve --config configs/thresholds.yaml

Event log lines (absolute epoch ms):
    {"type": "visit", "action": "start", "t_ms": 1700000000000}
    {"type": "gesture", "t_ms": ..., "gestures": [[{"name": "Thumb_Down", "score": 0.93}]]}
    {"type": "pointing", "t_ms": ..., "hands": [[[x, y], ...]], "face": {"bbox_width": w, "keypoints": [[x, y], ...]}}
    {"type": "transcript_chunk", "started_at_ms": ..., "ended_at_ms": ..., "events": [{"text": "...", "is_final": true, "confidence": 0.9}]}
"""

import argparse
import json
import logging
from pathlib import Path
import sys
from typing import Dict, Iterator
from datetime import datetime

import numpy as np

from fusion import VisitFusionEngine
from session.data_models import coerce_ms
from session.store import VisitTransitionError
from utils.config_loader import load_config
from video_pipeline.gesture_detector import gesture_frame_from_dict
from video_pipeline.pointing_detector import face_frame_from_dict

logger = logging.getLogger(__name__)


def configure_logging(config: Dict) -> None:
    """Console + optional file logging, level from config 'logging.level'."""
    log_config = config.get('logging', {})
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_config.get('file'):
        handlers.append(logging.FileHandler(log_config['file']))

    logging.basicConfig(
        level=getattr(logging, str(log_config.get('level', 'INFO')).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def read_events(events_path: Path) -> Iterator[Dict]:
    """Yield events from a JSONL log, skipping blank and malformed lines."""
    with open(events_path, 'r', encoding='utf-8') as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning(f"Skipping malformed event on line {line_no}: {e}")
                continue
            if isinstance(event, dict):
                yield event


def dispatch_event(engine: VisitFusionEngine, event: Dict) -> None:
    """
    Route one logged event to the engine.

    Unknown event types and malformed payloads are skipped with a warning;
    illegal visit transitions are logged and skipped.
    """
    event_type = event.get('type')

    try:
        t_ms = coerce_ms(event.get('t_ms'))
        if event_type == 'gesture':
            frame = gesture_frame_from_dict(event)
        elif event_type == 'pointing':
            hands = [np.asarray(h, dtype=float) for h in event.get('hands') or []]
            face = face_frame_from_dict(event.get('face'))
        elif event_type == 'transcript_chunk':
            chunk_events = event.get('events') or []
            started_at_ms = coerce_ms(event['started_at_ms'])
            ended_at_ms = coerce_ms(event['ended_at_ms'])
            if started_at_ms is None or ended_at_ms is None:
                raise ValueError("chunk bounds must be set")
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Skipping malformed {event_type!r} event: {e!r}")
        return

    if event_type == 'visit':
        action = event.get('action')
        try:
            if action == 'start':
                engine.start_visit(t_ms)
            elif action == 'stop':
                engine.stop_visit()
            elif action == 'reset':
                engine.reset_visit()
            else:
                logger.warning(f"Unknown visit action: {action!r}")
        except VisitTransitionError as e:
            logger.warning(f"Skipped visit event: {e}")

    elif event_type == 'gesture':
        engine.process_gesture_frame(frame, t_ms)

    elif event_type == 'pointing':
        engine.process_pointing_frame(hands, face, t_ms)

    elif event_type == 'transcript_chunk':
        engine.ingest_transcript_chunk(chunk_events, started_at_ms, ended_at_ms)

    else:
        logger.warning(f"Unknown event type: {event_type!r}")


def run_replay(events_path: str, config: Dict, output_dir: str) -> Dict:
    """
    Replay a recorded visit and write the resulting record.

    Args:
        events_path: Path to JSONL event log
        config: Configuration dictionary
        output_dir: Directory for output files

    Returns:
        Snapshot dict that was written
    """
    logger.info("=" * 80)
    logger.info("VISIT CAPTURE - Event Log Replay")
    logger.info("=" * 80)

    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    engine = VisitFusionEngine(config)
    n_events = 0
    try:
        for event in read_events(Path(events_path)):
            dispatch_event(engine, event)
            n_events += 1

        snapshot = engine.snapshot()
    finally:
        engine.close()

    logger.info(
        f"Replayed {n_events} events: {len(snapshot['segments'])} segments, "
        f"{len(snapshot['entities'])} entities, {len(snapshot['turns'])} turns"
    )

    session_id = f"visit_{datetime.now().strftime('%Y%m%d_%H%M%S')}"
    report_path = output_path / f"{session_id}.json"
    with open(report_path, 'w', encoding='utf-8') as f:
        json.dump(snapshot, f, indent=2)
    logger.info(f"✓ Visit record written: {report_path}")

    for line in snapshot['hpi']:
        logger.info(f"HPI {line}")

    return snapshot


def main():
    parser = argparse.ArgumentParser(
        description="Visit capture core: replay a recorded visit or serve the API"
    )
    parser.add_argument('--events', type=str, help='JSONL event log to replay')
    parser.add_argument('--config', type=str, default=None, help='YAML config path')
    parser.add_argument('--output', type=str, default='results', help='Output directory')
    parser.add_argument('--serve', action='store_true', help='Start the HTTP API instead of replaying')
    parser.add_argument('--host', type=str, default=None)
    parser.add_argument('--port', type=int, default=None)
    args = parser.parse_args()

    config = load_config(args.config)
    configure_logging(config)

    if args.serve:
        from utils.api_server import start_server
        start_server(args.config, host=args.host, port=args.port)
        return

    if not args.events:
        parser.error("--events is required unless --serve is given")

    run_replay(args.events, config, args.output)


if __name__ == '__main__':
    main()
