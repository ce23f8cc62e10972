"""
Job Engine and worker pool.

Owns submission, status views and execution. A fixed pool of worker threads
claims jobs from SQLite under a lease, runs each one through its pipeline,
and on failure refunds quota and deletes temporary media exactly once.
"""

import time
import uuid
import logging
import threading
from pathlib import Path
from typing import Callable, Optional

from clipnotes.core.constants import (
    JobStatus, JobStage, ErrorCode, Platform, UNTITLED, TITLE_CONTEXT_CHARS,
    LANGUAGE_ISO_CODES, SUMMARY_LENGTHS, SUMMARY_TONES,
    PROGRESS_CACHE_LOOKUP, PROGRESS_CAPTIONS_FETCH, PROGRESS_CAPTIONS_STORED,
    PROGRESS_NORMALIZE, PROGRESS_UPLOAD_AUDIO, PROGRESS_TRANSCRIBE,
    PROGRESS_TITLE, PROGRESS_SUMMARIZE_START, PROGRESS_SUMMARIZE_END,
    PROGRESS_SLUG, PROGRESS_PERSIST,
    ETA_REMOTE_START, ETA_REMOTE_FETCH, ETA_REMOTE_SUMMARIZE, ETA_REMOTE_PERSIST,
    ETA_UPLOAD_START, ETA_UPLOAD_NORMALIZED, ETA_UPLOAD_AUDIO,
    ETA_UPLOAD_TRANSCRIBE, ETA_UPLOAD_SUMMARIZE, ETA_UPLOAD_PERSIST,
)
from clipnotes.core.db_sqlite import Database
from clipnotes.core.models_sqlite import (
    Job, JobView, JobPayload, RemoteVideoJob, UploadedMediaJob,
    SummaryOptions, SummaryRecord, Summary,
)
from clipnotes.core.error_codes import (
    JobError, ValidationError, NotFound, ExternalUnavailable, RateLimited,
)
from clipnotes.core.url_parse import validate_youtube_url
from clipnotes.core.normalize import MediaNormalizer
from clipnotes.core.summarizer import ChunkedSummarizer
from clipnotes.core.rate_limit import TokenBudget
from clipnotes.core.slug import SlugAllocator, fallback_name
from clipnotes.core.prompts import title_prompt, title_user_content
from clipnotes.core.cleanup import cleanup_job_artifacts, delete_temp_assets
from clipnotes.core.security_utils import sanitize_public_id, strip_quotes

logger = logging.getLogger(__name__)

_TITLE_MAX_TOKENS = 50
_INTERNAL_ERROR_MESSAGE = "Internal error while processing job"


class LeaseLost(Exception):
    """This worker no longer holds the job; stop without touching it."""


class ProgressReporter:
    """
    Writes stage, progress and ETA for one job execution. Every write also
    extends the lease, and raises LeaseLost once another worker owns the job.
    """

    def __init__(self, db: Database, job_id: str, worker_id: str, lease_sec: float):
        self.db = db
        self.job_id = job_id
        self.worker_id = worker_id
        self.lease_sec = lease_sec
        self.stage: Optional[str] = None
        self.pct = 0
        self.eta = 0
        self.ceiling = 0

    def advance(self, stage: str, pct: int, eta: int, ceiling: int | None = None):
        self.stage = stage
        self.pct = max(self.pct, pct)
        self.eta = eta
        self.ceiling = max(self.pct, ceiling if ceiling is not None else pct)
        self._write()

    def tick(self):
        """Creep forward during long waits, staying below the current stage ceiling."""
        if self.pct < self.ceiling - 1:
            self.pct += 1
        self.eta = max(0, self.eta - 1)
        self._write()

    def _write(self):
        ok = self.db.record_progress(self.job_id, self.worker_id, self.stage,
                                     self.pct, self.eta, self.lease_sec)
        if not ok:
            raise LeaseLost(self.job_id)


class JobEngine:
    """
    Submission and status API plus the worker pool that executes jobs.

    Collaborators are injected: the caption cache, the text generators
    (summaries, and names/titles), the transcriber and the media store.
    """

    def __init__(self, db: Database, config, captions=None, generator=None,
                 naming_generator=None, transcriber=None, store=None,
                 normalizer: MediaNormalizer | None = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.db = db
        self.config = config
        self.captions = captions
        self.generator = generator
        self.naming_generator = naming_generator or generator
        self.transcriber = transcriber
        self.store = store
        self.normalizer = normalizer or (MediaNormalizer(store) if store is not None else None)
        self.slugs = SlugAllocator(db, self.naming_generator)
        self._sleep = sleep
        self._clock = clock
        self._summarizers: dict[str, ChunkedSummarizer] = {}
        self._summarizers_lock = threading.Lock()
        self._threads: list[threading.Thread] = []
        self._stop_event = threading.Event()

    # ── Submission & status ───────────────────────────────────────────

    def submit(self, payload: JobPayload) -> str:
        """Validate and enqueue a job. Returns its id without waiting for execution."""
        video_id = self._validate(payload)
        consume = bool(payload.owner) and payload.consumes_quota
        job = self.db.create_job(payload, video_id=video_id, quota_consumed=consume)
        if isinstance(payload, UploadedMediaJob):
            self.db.add_temp_asset(job.id, payload.media_ref)
        if consume:
            used = self.db.increment_usage(payload.owner)
            logger.info("Owner %s used %d quota unit(s) today", payload.owner, used)
        logger.info("Submitted %s job %s", payload.kind, job.id)
        return job.id

    def _validate(self, payload) -> str | None:
        if not isinstance(payload, (RemoteVideoJob, UploadedMediaJob)):
            raise ValidationError("Unknown job payload")

        options = payload.options
        if not isinstance(options, SummaryOptions):
            raise ValidationError("Missing summary options")
        if not isinstance(options.language, str) or options.normalized_language not in LANGUAGE_ISO_CODES:
            raise ValidationError(f"Unsupported language: {options.language}")
        if options.length not in SUMMARY_LENGTHS:
            raise ValidationError(f"Unsupported summary length: {options.length}")
        if options.tone not in SUMMARY_TONES:
            raise ValidationError(f"Unsupported summary tone: {options.tone}")

        if isinstance(payload, RemoteVideoJob):
            if not isinstance(payload.video_url, str) or not payload.video_url.strip():
                raise ValidationError("Video URL is required")
            return validate_youtube_url(payload.video_url.strip())

        if not isinstance(payload.media_ref, str) or not payload.media_ref.strip():
            raise ValidationError("Media reference is required")
        if not isinstance(payload.public_id, str) or not payload.public_id.strip():
            raise ValidationError("Public id is required")
        return None

    def get_status(self, job_id: str) -> JobView:
        job = self.db.get_job(job_id)
        if job is None:
            raise NotFound(f"Job not found: {job_id}")

        summary = {}
        if job.status == JobStatus.COMPLETED and job.result_id:
            record = self.db.get_result(job.result_id)
            if record is not None:
                summary = {
                    'keypoints': list(record.keypoints),
                    'summary': record.summary_text,
                    'timestamps': list(record.timestamps),
                    'language': record.language,
                    'length': record.summary_length,
                    'tone': record.summary_tone,
                }
        return JobView(
            status=job.status,
            progress=job.progress_pct,
            estimated_time_remaining=job.eta_sec,
            summary=summary,
            error=job.error_message if job.status == JobStatus.FAILED else None,
        )

    def get_result(self, result_id: str) -> SummaryRecord:
        record = self.db.get_result(result_id)
        if record is None:
            raise NotFound(f"Summary not found: {result_id}")
        return record

    def get_result_by_slug(self, slug: str) -> SummaryRecord:
        record = self.db.get_result_by_slug(slug)
        if record is None:
            raise NotFound(f"Shared summary not found: {slug}")
        return record

    def list_results(self, owner: str) -> list[SummaryRecord]:
        return self.db.list_results(owner)

    # ── Worker pool ───────────────────────────────────────────────────

    def start(self, worker_count: int | None = None):
        """Start the worker threads."""
        if self._threads:
            return
        self._stop_event.clear()
        count = worker_count or self.config.worker_count
        for idx in range(count):
            worker_id = f"worker-{idx + 1}-{uuid.uuid4().hex[:8]}"
            thread = threading.Thread(target=self._worker_loop, args=(worker_id,),
                                      name=worker_id, daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("Started %d workers", count)

    def stop(self, timeout: float | None = None):
        """Stop claiming new jobs and wait for running ones to finish."""
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Workers stopped")

    def is_running(self) -> bool:
        return bool(self._threads)

    def _worker_loop(self, worker_id: str):
        while not self._stop_event.is_set():
            try:
                worked = self.process_next(worker_id)
            except Exception as e:
                logger.error("Worker %s loop error: %s", worker_id, e, exc_info=True)
                worked = False
            if not worked:
                self._stop_event.wait(self.config.poll_interval_sec)

    def process_next(self, worker_id: str) -> bool:
        """Claim and run one job. Returns False when nothing was claimable."""
        job = self.db.claim_next_job(worker_id, self.config.lease_seconds)
        if job is None:
            return False
        self._execute(job, worker_id)
        return True

    def _summarizer_for(self, worker_id: str) -> ChunkedSummarizer:
        with self._summarizers_lock:
            summarizer = self._summarizers.get(worker_id)
            if summarizer is None:
                budget = TokenBudget(self.config.get('token_budget_per_minute'),
                                     clock=self._clock)
                summarizer = ChunkedSummarizer(
                    self.generator,
                    budget=budget,
                    single_call_limit=self.config.get('single_call_token_limit'),
                    part_limit=self.config.get('part_token_limit'),
                    max_output_tokens=self.config.get('max_output_tokens'),
                    sleep=self._sleep,
                )
                self._summarizers[worker_id] = summarizer
            return summarizer

    # ── Job execution ─────────────────────────────────────────────────

    def _execute(self, job: Job, worker_id: str):
        workspace = self.config.workspace_root / f"{job.id}-{job.attempts}"
        reporter = ProgressReporter(self.db, job.id, worker_id, self.config.lease_seconds)
        if job.attempts > 1:
            logger.info("Job %s reclaimed by %s (attempt %d)", job.id, worker_id, job.attempts)
        else:
            logger.info("Job %s started on %s", job.id, worker_id)

        try:
            payload = job.get_payload()
            if isinstance(payload, RemoteVideoJob):
                record = self._run_remote(job, payload, reporter, worker_id)
                persist_eta = ETA_REMOTE_PERSIST
            else:
                record = self._run_upload(job, payload, reporter, worker_id, workspace)
                persist_eta = ETA_UPLOAD_PERSIST

            reporter.advance(JobStage.PERSISTING, PROGRESS_PERSIST, persist_eta)
            if not self.db.complete_job(job.id, worker_id, record):
                raise LeaseLost(job.id)
            logger.info("Job %s completed (slug=%s)", job.id, record.slug)
            self._release_assets(job.id)

        except LeaseLost:
            logger.warning("Job %s is no longer held by %s, abandoning", job.id, worker_id)
        except JobError as e:
            self._fail(job.id, worker_id, e.code, e.message)
        except Exception as e:
            logger.error("Unexpected error processing job %s: %s", job.id, e, exc_info=True)
            self._fail(job.id, worker_id, ErrorCode.UNEXPECTED, _INTERNAL_ERROR_MESSAGE)
        finally:
            cleanup_job_artifacts(workspace, self.config.keep_debug_artifacts)

    def _run_remote(self, job: Job, payload: RemoteVideoJob,
                    reporter: ProgressReporter, worker_id: str) -> SummaryRecord:
        options = payload.options
        video_id = job.video_id or validate_youtube_url(payload.video_url)

        # ── Stage 1: Cache lookup / caption fetch ──
        reporter.advance(JobStage.CHECKING_CACHE, PROGRESS_CACHE_LOOKUP, ETA_REMOTE_START)
        lookup = self.captions.get_or_fetch(
            video_id, options.iso_language, job_id=job.id,
            on_fetch=lambda: reporter.advance(JobStage.FETCHING_CAPTIONS,
                                              PROGRESS_CAPTIONS_FETCH, ETA_REMOTE_FETCH),
        )
        entry = lookup.entry
        reporter.advance(JobStage.FETCHING_CAPTIONS, PROGRESS_CAPTIONS_STORED, ETA_REMOTE_FETCH)

        # ── Stage 2: Summarize ──
        summary = self._summarize(entry.raw_captions, options, reporter, worker_id,
                                  ETA_REMOTE_SUMMARIZE)

        # ── Stage 3: Slug ──
        reporter.advance(JobStage.ALLOCATING_SLUG, PROGRESS_SLUG, ETA_REMOTE_PERSIST)
        slug = job.slug
        if not slug:
            if lookup.hit:
                # No stored base means the first job for this video never got
                # as far as naming; start the base from the title instead.
                base = entry.base_name or self.captions.remember_base_name(
                    video_id, fallback_name(entry.title))
                slug = self.slugs.derive(base, lookup.counter, job.id)
            else:
                slug, base = self.slugs.allocate_named(entry.title, options.language, job.id)
                self.captions.remember_base_name(video_id, base)
            self.db.update_job(job.id, slug=slug)

        return self._build_record(
            job, payload, summary, slug,
            source_ref=entry.video_url, platform=Platform.YOUTUBE, title=entry.title,
            thumbnail=entry.thumbnail, duration=entry.duration,
        )

    def _run_upload(self, job: Job, payload: UploadedMediaJob,
                    reporter: ProgressReporter, worker_id: str,
                    workspace: Path) -> SummaryRecord:
        options = payload.options

        # ── Stage 1: Normalize ──
        reporter.advance(JobStage.NORMALIZING_MEDIA, PROGRESS_NORMALIZE, ETA_UPLOAD_START)
        audio_path = self.normalizer.normalize(payload.media_ref, workspace)

        # ── Stage 2: Upload audio ──
        reporter.advance(JobStage.UPLOADING_AUDIO, PROGRESS_UPLOAD_AUDIO, ETA_UPLOAD_NORMALIZED)
        audio_key = f"audio/{sanitize_public_id(payload.public_id)}_audio.mp3"
        self.db.add_temp_asset(job.id, audio_key)
        self.store.upload(audio_path, audio_key)

        # ── Stage 3: Transcribe ──
        reporter.advance(JobStage.TRANSCRIBING, PROGRESS_TRANSCRIBE, ETA_UPLOAD_AUDIO)
        transcript = self.transcriber.transcribe(self.store.read_bytes(audio_key),
                                                 options.iso_language,
                                                 filename=Path(audio_key).name)

        # ── Stage 4: Title ──
        reporter.advance(JobStage.GENERATING_TITLE, PROGRESS_TITLE, ETA_UPLOAD_TRANSCRIBE)
        title = self._generate_title(transcript, options)

        # ── Stage 5: Summarize ──
        summary = self._summarize(transcript, options, reporter, worker_id,
                                  ETA_UPLOAD_SUMMARIZE)

        # ── Stage 6: Slug ──
        reporter.advance(JobStage.ALLOCATING_SLUG, PROGRESS_SLUG, ETA_UPLOAD_PERSIST)
        slug = job.slug
        if not slug:
            slug = self.slugs.allocate(title, options.language, job.id)
            self.db.update_job(job.id, slug=slug)

        return self._build_record(job, payload, summary, slug,
                                  source_ref=payload.media_ref,
                                  platform=Platform.OTHER, title=title)

    def _summarize(self, text: str, options: SummaryOptions,
                   reporter: ProgressReporter, worker_id: str, eta: int) -> Summary:
        reporter.advance(JobStage.SUMMARIZING, PROGRESS_SUMMARIZE_START, eta,
                         ceiling=PROGRESS_SUMMARIZE_END)
        span = PROGRESS_SUMMARIZE_END - PROGRESS_SUMMARIZE_START

        def on_part(done: int, total: int):
            # +1 leaves room for the combine call
            pct = PROGRESS_SUMMARIZE_START + span * done // (total + 1)
            reporter.advance(JobStage.SUMMARIZING, pct, eta, ceiling=PROGRESS_SUMMARIZE_END)

        return self._summarizer_for(worker_id).summarize(
            text, options, on_tick=reporter.tick, on_part=on_part)

    def _generate_title(self, transcript: str, options: SummaryOptions) -> str:
        if not transcript.strip():
            return UNTITLED
        try:
            raw = self.naming_generator.complete(
                title_prompt(options.language),
                title_user_content(transcript, TITLE_CONTEXT_CHARS),
                _TITLE_MAX_TOKENS,
            )
        except (RateLimited, ExternalUnavailable) as e:
            logger.warning("Title generation failed (%s), using placeholder", e.code)
            return UNTITLED
        return strip_quotes(raw) or UNTITLED

    def _build_record(self, job: Job, payload: JobPayload, summary: Summary, slug: str,
                      source_ref: str, platform: str, title: str,
                      thumbnail: str | None = None, duration: str | None = None) -> SummaryRecord:
        options = payload.options
        return SummaryRecord(
            id=str(uuid.uuid4()),
            job_id=job.id,
            source_ref=source_ref,
            platform=platform,
            title=title or UNTITLED,
            summary_text=summary.summary,
            keypoints=list(summary.keypoints),
            timestamps=list(summary.timestamps),
            language=options.normalized_language,
            summary_length=options.normalized_length,
            summary_tone=options.normalized_tone,
            owner=payload.owner,
            slug=slug,
            shareable_link=f"{self.config.get('share_base_url')}/share/{slug}",
            thumbnail=thumbnail,
            duration=duration,
        )

    # ── Compensation ──────────────────────────────────────────────────

    def _fail(self, job_id: str, worker_id: str, code: str, message: str):
        if not self.db.fail_job(job_id, code, message, worker_id=worker_id):
            logger.warning("Job %s already finished or reclaimed, not compensating", job_id)
            return
        logger.warning("Job %s failed [%s]: %s", job_id, code, message)
        self._refund(job_id)
        self._release_assets(job_id)

    def _refund(self, job_id: str):
        day = self.db.mark_quota_refunded(job_id)
        if day is None:
            return
        job = self.db.get_job(job_id)
        if job and job.owner:
            used = self.db.decrement_usage(job.owner, day)
            logger.info("Refunded quota unit for job %s (owner %s now at %d)",
                        job_id, job.owner, used)

    def _release_assets(self, job_id: str):
        job = self.db.get_job(job_id)
        if job is None:
            return
        refs = job.get_temp_assets()
        if delete_temp_assets(self.store, refs):
            logger.info("Deleted %d temporary media asset(s) for job %s", len(refs), job_id)
