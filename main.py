#!/usr/bin/env python3
"""
ClipNotes v1.0.0: main entry point.

    python main.py serve                      # run the worker pool
    python main.py submit <youtube-url>       # enqueue one video and follow it
    python main.py submit --upload <ref> --public-id <id>
    python main.py status <job-id>
"""

import sys
import json
import time
import shutil
import logging
import argparse
from pathlib import Path
from datetime import datetime

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from clipnotes.core.constants import (
    APP_NAME, APP_VERSION, LOG_DIR, TERMINAL_STATUSES, SUMMARY_LENGTHS, SUMMARY_TONES,
    DEFAULT_LANGUAGE, DEFAULT_LENGTH, DEFAULT_TONE,
)
from clipnotes.core.config import AppConfig
from clipnotes.core.db_sqlite import Database
from clipnotes.core.error_codes import JobError
from clipnotes.core.models_sqlite import SummaryOptions, RemoteVideoJob, UploadedMediaJob
from clipnotes.core.captions_fetch import CaptionsClient
from clipnotes.core.captions_cache import CaptionCache
from clipnotes.core.media_store import build_media_store
from clipnotes.core.llm_client import build_openai_client, OpenAITextGenerator
from clipnotes.core.transcribe_whisper import WhisperTranscriber
from clipnotes.core.job_queue import JobEngine

# ── Logging setup (writes to ~/.clipnotes/logs/ and stderr) ──────────
LOG_DIR.mkdir(parents=True, exist_ok=True)
LOG_FILE = LOG_DIR / "clipnotes.log"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.FileHandler(LOG_FILE, encoding="utf-8"),
        logging.StreamHandler(),
    ],
)
logger = logging.getLogger("clipnotes")


def check_prerequisites():
    """ffmpeg is needed for uploaded video files; warn rather than exit."""
    ffmpeg = shutil.which("ffmpeg")
    if ffmpeg:
        logger.info("ffmpeg found at: %s", ffmpeg)
    else:
        logger.warning("ffmpeg not found; uploaded .mov/.mp4 files will fail to normalize")


def build_engine(config: AppConfig) -> JobEngine:
    db = Database(config.db_path)
    client = build_openai_client()
    store = build_media_store(config)
    captions = CaptionCache(db, CaptionsClient(base_url=config.get('captions_api_base')))
    return JobEngine(
        db, config,
        captions=captions,
        generator=OpenAITextGenerator(client, config.get('chat_model')),
        naming_generator=OpenAITextGenerator(client, config.get('naming_model')),
        transcriber=WhisperTranscriber(client, config.get('transcription_model')),
        store=store,
    )


def cmd_serve(engine: JobEngine, args) -> int:
    engine.start(args.workers)
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        engine.stop()
    return 0


def cmd_submit(engine: JobEngine, args) -> int:
    options = SummaryOptions(language=args.language, length=args.length, tone=args.tone)
    if args.upload:
        payload = UploadedMediaJob(media_ref=args.upload, public_id=args.public_id or "",
                                   options=options, owner=args.owner)
    else:
        payload = RemoteVideoJob(video_url=args.url or "", options=options, owner=args.owner)

    job_id = engine.submit(payload)
    print(job_id)
    if args.no_wait:
        return 0

    engine.start(1)
    try:
        while True:
            view = engine.get_status(job_id)
            print(f"{view.status:<10} {view.progress:>3}%  eta {view.estimated_time_remaining}s",
                  file=sys.stderr)
            if view.status in TERMINAL_STATUSES:
                print(json.dumps(view.to_dict(), indent=2, ensure_ascii=False))
                return 0 if view.error is None else 1
            time.sleep(2)
    finally:
        engine.stop()


def cmd_status(engine: JobEngine, args) -> int:
    print(json.dumps(engine.get_status(args.job_id).to_dict(), indent=2, ensure_ascii=False))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="clipnotes",
                                     description="Summarize videos and uploaded media")
    parser.add_argument("--config", type=Path, help="path to config.json")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the worker pool")
    serve.add_argument("--workers", type=int, default=None)
    serve.set_defaults(func=cmd_serve)

    submit = sub.add_parser("submit", help="submit one job and follow it")
    submit.add_argument("url", nargs="?", help="YouTube URL")
    submit.add_argument("--upload", help="media store reference of an uploaded file")
    submit.add_argument("--public-id", help="storage handle of the uploaded file")
    submit.add_argument("--owner")
    submit.add_argument("--language", default=DEFAULT_LANGUAGE)
    submit.add_argument("--length", default=DEFAULT_LENGTH, choices=SUMMARY_LENGTHS)
    submit.add_argument("--tone", default=DEFAULT_TONE, choices=SUMMARY_TONES)
    submit.add_argument("--no-wait", action="store_true")
    submit.set_defaults(func=cmd_submit)

    status = sub.add_parser("status", help="show a job's status")
    status.add_argument("job_id")
    status.set_defaults(func=cmd_status)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logger.info("=" * 60)
    logger.info("%s v%s starting at %s", APP_NAME, APP_VERSION, datetime.now().isoformat())
    logger.info("Python: %s", sys.executable)
    logger.info("=" * 60)

    config = AppConfig(args.config)
    check_prerequisites()
    try:
        engine = build_engine(config)
        return args.func(engine, args)
    except JobError as e:
        logger.error("%s", e)
        print(f"Error: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
