#!/usr/bin/env python3
"""
Unit tests for ClipNotes core modules.
Tests cover: URL parsing, security utils, errors, rate-limit parsing, token budget,
chunking, summary parsing/merging, database, caption cache, slugs, config, media store.
"""

import io
import sys
import json
import tempfile
import threading
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from botocore.exceptions import ClientError
from botocore.response import StreamingBody

from clipnotes.core.constants import (
    JobStatus, JobStage, ErrorCode, RETRYABLE_ERRORS, FALLBACK_SLUG_BASE,
)
from clipnotes.core.url_parse import (
    extract_video_id, validate_youtube_url, canonical_video_url, media_extension,
)
from clipnotes.core.security_utils import sanitize_public_id, strip_quotes
from clipnotes.core.error_codes import (
    JobError, ValidationError, ExternalUnavailable, ModelError, RateLimited,
    ParseError, SlugExhausted, NotFound,
)
from clipnotes.core.rate_limit import (
    RateLimitSignal, parse_duration, parse_rate_limit_signal, TokenBudget, sleep_with_ticks,
)
from clipnotes.core.chunking_text import (
    estimate_tokens, needs_chunking, split_by_lines, split_in_half,
)
from clipnotes.core.merge import (
    parse_summary_json, dedupe_keypoints, timestamp_position, spread_timestamps,
    combine_payload,
)
from clipnotes.core.models_sqlite import (
    SummaryOptions, RemoteVideoJob, UploadedMediaJob, CaptionEntry, Summary,
    SummaryRecord, JobView, payload_to_json, payload_from_json,
)
from clipnotes.core.captions_fetch import format_seconds_to_minutes
from clipnotes.core.captions_cache import CaptionCache
from clipnotes.core.slug import SlugAllocator, slugify, fallback_name, two_word_name
from clipnotes.core.normalize import check_supported
from clipnotes.core.media_store import LocalMediaStore, S3MediaStore, build_media_store
from clipnotes.core.config import AppConfig


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeNamer:
    """Naming model that always suggests the same name."""

    def __init__(self, name="Quantum Leap"):
        self.name = name
        self.calls = 0
        self._lock = threading.Lock()

    def complete(self, system_prompt, user_content, max_tokens):
        with self._lock:
            self.calls += 1
        return self.name


class FakeCaptionsProvider:
    def __init__(self):
        self.caption_calls = 0
        self.info_calls = 0

    def fetch_captions(self, video_id, language):
        self.caption_calls += 1
        return f"1\n00:00:01,000 --> 00:00:04,000\ncaptions for {video_id} in {language}\n"

    def fetch_video_info(self, video_id):
        self.info_calls += 1
        return {'title': f"Title {video_id}", 'thumbnail': "https://img/1.jpg",
                'duration_seconds': 185}


class TestURLParsing(unittest.TestCase):
    """Test YouTube URL parsing and validation."""

    def test_standard_url(self):
        self.assertEqual(
            extract_video_id("https://www.youtube.com/watch?v=dQw4w9WgXcQ"),
            "dQw4w9WgXcQ",
        )

    def test_short_url(self):
        self.assertEqual(extract_video_id("https://youtu.be/dQw4w9WgXcQ"), "dQw4w9WgXcQ")

    def test_shorts_url(self):
        self.assertEqual(
            extract_video_id("https://www.youtube.com/shorts/dQw4w9WgXcQ"),
            "dQw4w9WgXcQ",
        )

    def test_url_with_params(self):
        self.assertEqual(
            extract_video_id("https://www.youtube.com/watch?v=dQw4w9WgXcQ&t=120"),
            "dQw4w9WgXcQ",
        )

    def test_invalid_url(self):
        self.assertIsNone(extract_video_id("https://www.google.com"))
        self.assertIsNone(extract_video_id("not a url"))
        self.assertIsNone(extract_video_id(""))

    def test_validate_raises(self):
        with self.assertRaises(ValidationError) as ctx:
            validate_youtube_url("https://vimeo.com/12345")
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID_URL)

    def test_canonical_url(self):
        self.assertEqual(canonical_video_url("dQw4w9WgXcQ"),
                         "https://www.youtube.com/watch?v=dQw4w9WgXcQ")

    def test_media_extension(self):
        self.assertEqual(media_extension("videos/Talk.MP4"), ".mp4")
        self.assertEqual(media_extension("https://cdn.example.com/a/b.mov?sig=1"), ".mov")
        self.assertEqual(media_extension("videos/noext"), "")


class TestSecurityUtils(unittest.TestCase):
    def test_sanitize_public_id(self):
        self.assertEqual(sanitize_public_id("my file/..x"), "my_file___x")
        self.assertEqual(sanitize_public_id("abc-123_x"), "abc-123_x")
        self.assertEqual(sanitize_public_id(""), "upload")

    def test_strip_quotes(self):
        self.assertEqual(strip_quotes('"Quantum Leap"'), "Quantum Leap")
        self.assertEqual(strip_quotes("'single'"), "single")
        self.assertEqual(strip_quotes('  plain  '), "plain")


class TestErrorCodes(unittest.TestCase):
    def test_default_codes(self):
        self.assertEqual(ValidationError("x").code, ErrorCode.VALIDATION)
        self.assertEqual(ModelError("x").code, ErrorCode.MODEL)
        self.assertEqual(SlugExhausted("x").code, ErrorCode.SLUG_EXHAUSTED)
        self.assertEqual(NotFound("x").code, ErrorCode.NOT_FOUND)

    def test_hierarchy(self):
        self.assertIsInstance(ModelError("x"), ExternalUnavailable)
        self.assertIsInstance(ParseError("x"), JobError)

    def test_message_format(self):
        err = JobError("boom", code=ErrorCode.UNEXPECTED)
        self.assertEqual(str(err), "[ERR_UNEXPECTED] boom")
        self.assertEqual(err.message, "boom")

    def test_retryable(self):
        self.assertTrue(ParseError("bad json").retryable)
        self.assertFalse(ValidationError("bad input").retryable)
        self.assertFalse(ParseError("bad json", retryable=False).retryable)
        self.assertTrue(RateLimited("slow down").retryable)
        self.assertFalse(ExternalUnavailable("down").retryable)
        self.assertEqual(RETRYABLE_ERRORS, {ErrorCode.RATE_LIMITED, ErrorCode.PARSE})

    def test_rate_limited_carries_signal(self):
        signal = RateLimitSignal(retry_after=3.0)
        self.assertIs(RateLimited("x", signal=signal).signal, signal)


class TestRateLimitParsing(unittest.TestCase):
    def test_parse_duration(self):
        self.assertEqual(parse_duration("1m30s"), 90.0)
        self.assertEqual(parse_duration("6m0s"), 360.0)
        self.assertAlmostEqual(parse_duration("450ms"), 0.45)
        self.assertEqual(parse_duration("2.5s"), 2.5)
        self.assertEqual(parse_duration("12"), 12.0)
        self.assertEqual(parse_duration(7), 7.0)
        self.assertIsNone(parse_duration("soon"))
        self.assertIsNone(parse_duration(None))

    def test_message_retry_and_remaining(self):
        msg = ("Rate limit reached for gpt-4o on tokens per min (TPM): Limit 30000, "
               "Used 25000, Requested 8000. Please try again in 6.5s.")
        signal = parse_rate_limit_signal(msg)
        self.assertEqual(signal.retry_after, 6.5)
        self.assertFalse(signal.request_too_large)
        self.assertEqual(signal.remaining_budget_hint, 5000)

    def test_request_too_large(self):
        msg = "Request too large for gpt-4o: Limit 30000, Requested 45000."
        self.assertTrue(parse_rate_limit_signal(msg).request_too_large)

    def test_requested_over_limit_is_too_large(self):
        msg = "Limit 30000, Used 0, Requested 45000. Please try again in 1m2s."
        signal = parse_rate_limit_signal(msg)
        self.assertTrue(signal.request_too_large)
        self.assertEqual(signal.retry_after, 62.0)

    def test_headers_take_precedence(self):
        signal = parse_rate_limit_signal(
            "Please try again in 20s",
            {'retry-after-ms': '1500', 'x-ratelimit-remaining-tokens': '1200'},
        )
        self.assertEqual(signal.retry_after, 1.5)
        self.assertEqual(signal.remaining_budget_hint, 1200)

    def test_reset_header_compound(self):
        signal = parse_rate_limit_signal("", {'x-ratelimit-reset-tokens': '1m30s'})
        self.assertEqual(signal.retry_after, 90.0)

    def test_default_retry_after(self):
        signal = parse_rate_limit_signal("rate limited")
        self.assertEqual(signal.retry_after, 10.0)
        self.assertIsNone(signal.remaining_budget_hint)


class TestTokenBudget(unittest.TestCase):
    def test_wait_and_window_reset(self):
        clock = FakeClock()
        budget = TokenBudget(limit=100, window_sec=60, clock=clock)
        self.assertEqual(budget.wait_needed(50), 0.0)
        budget.spend(80)
        clock.now = 10
        self.assertEqual(budget.wait_needed(50), 50.0)
        clock.now = 61
        self.assertEqual(budget.wait_needed(50), 0.0)
        self.assertEqual(budget.remaining, 100)

    def test_apply_hint_only_lowers(self):
        budget = TokenBudget(limit=100, clock=FakeClock())
        budget.apply_hint(20)
        self.assertEqual(budget.remaining, 20)
        budget.apply_hint(90)
        self.assertEqual(budget.remaining, 20)
        budget.apply_hint(None)
        self.assertEqual(budget.remaining, 20)

    def test_sleep_with_ticks(self):
        sleeps, ticks = [], []
        sleep_with_ticks(2.5, on_tick=lambda: ticks.append(1), sleep=sleeps.append)
        self.assertEqual(sleeps, [1.0, 1.0, 0.5])
        self.assertEqual(len(ticks), 3)


class TestChunking(unittest.TestCase):
    def test_estimate_tokens(self):
        self.assertEqual(estimate_tokens(""), 0)
        self.assertEqual(estimate_tokens("abcd" * 10), 10)
        self.assertEqual(estimate_tokens("abcde"), 2)

    def test_needs_chunking(self):
        self.assertFalse(needs_chunking("x" * 400, threshold=100))
        self.assertTrue(needs_chunking("x" * 404, threshold=100))

    def test_split_by_lines_preserves_text(self):
        text = "\n".join("x" * 39 for _ in range(100))
        parts = split_by_lines(text, ceiling=100)
        self.assertEqual(len(parts), 10)
        self.assertEqual("\n".join(parts), text)
        for part in parts:
            self.assertLessEqual(estimate_tokens(part), 100)

    def test_long_line_is_never_cut(self):
        long_line = "y" * 1000
        text = "short one\n" + long_line + "\nshort two"
        parts = split_by_lines(text, ceiling=50)
        self.assertIn(long_line, parts)
        self.assertEqual("\n".join(parts), text)

    def test_split_in_half(self):
        text = "aaaa\nbbbb\ncccc\ndddd"
        halves = split_in_half(text)
        self.assertEqual(halves, ["aaaa\nbbbb", "cccc\ndddd"])
        self.assertEqual(split_in_half("single line"), ["single line"])


class TestSummaryParsing(unittest.TestCase):
    def test_plain_json(self):
        s = parse_summary_json('{"keypoints": ["a"], "summary": "S", "timestamps": ["00:10 - x"]}')
        self.assertEqual(s.summary, "S")
        self.assertEqual(s.keypoints, ["a"])
        self.assertEqual(s.timestamps, ["00:10 - x"])

    def test_code_fence(self):
        raw = '```json\n{"summary": "Fenced", "keypoints": [], "timestamps": []}\n```'
        self.assertEqual(parse_summary_json(raw).summary, "Fenced")

    def test_chatter_around_object(self):
        s = parse_summary_json('Here you go: {"summary": "S"} hope it helps')
        self.assertEqual(s.summary, "S")
        self.assertEqual(s.keypoints, [])

    def test_contract_violations(self):
        for raw in ("", "no json at all", '{"keypoints": []}',
                    '{"summary": "S", "keypoints": "not a list"}', '["a list"]'):
            with self.assertRaises(ParseError):
                parse_summary_json(raw)

    def test_dedupe_keypoints(self):
        self.assertEqual(dedupe_keypoints(["A point", "a  point", "B", " b "]),
                         ["A point", "B"])

    def test_timestamp_position(self):
        self.assertEqual(timestamp_position("01:30 - Intro"), 90)
        self.assertEqual(timestamp_position("1:02:03 - Later"), 3723)
        self.assertIsNone(timestamp_position("Intro"))

    def test_spread_timestamps_covers_ends(self):
        markers = [f"0{i}:00 - part {i}" for i in range(10)]
        picked = spread_timestamps(list(reversed(markers)), limit=5)
        self.assertEqual(len(picked), 5)
        self.assertEqual(picked[0], "00:00 - part 0")
        self.assertEqual(picked[-1], "09:00 - part 9")
        positions = [timestamp_position(m) for m in picked]
        self.assertEqual(positions, sorted(positions))

    def test_spread_timestamps_short_list_untouched(self):
        self.assertEqual(spread_timestamps(["00:10 - a", "00:05 - b"]),
                         ["00:05 - b", "00:10 - a"])

    def test_combine_payload_labels_parts(self):
        payload = json.loads(combine_payload([
            Summary("first", ["k1"], ["00:00 - a"]),
            Summary("second", ["k1", "k2"], ["05:00 - b"]),
        ]))
        self.assertEqual(payload['summaries'], ["Part 1: first", "Part 2: second"])
        self.assertEqual(payload['keypoints'], ["k1", "k2"])
        self.assertEqual(payload['timestamps'], ["00:00 - a", "05:00 - b"])


class TestModels(unittest.TestCase):
    def test_options_normalization(self):
        opts = SummaryOptions(language="Spanish", length="Long", tone="Friendly")
        self.assertEqual(opts.iso_language, "es")
        self.assertEqual(opts.normalized_length, "long")
        self.assertEqual(opts.normalized_tone, "casual")
        self.assertEqual(SummaryOptions(tone="Professional").normalized_tone, "formal")

    def test_language_is_trimmed_and_lowercased(self):
        opts = SummaryOptions(language="  English ")
        self.assertEqual(opts.normalized_language, "english")
        self.assertEqual(opts.iso_language, "en")
        self.assertEqual(SummaryOptions(language="SPANISH").iso_language, "es")

    def test_payload_json_roundtrip_keeps_kind(self):
        upload = UploadedMediaJob(media_ref="videos/a.mp4", public_id="a", owner="u1")
        restored = payload_from_json(payload_to_json(upload))
        self.assertIsInstance(restored, UploadedMediaJob)
        self.assertEqual(restored, upload)
        remote = payload_from_json(payload_to_json(RemoteVideoJob("https://youtu.be/dQw4w9WgXcQ")))
        self.assertIsInstance(remote, RemoteVideoJob)
        self.assertTrue(remote.consumes_quota)

    def test_job_view_shape(self):
        self.assertEqual(JobView("running", 40, 100).to_dict(), {
            'status': "running", 'progress': 40, 'estimatedTimeRemaining': 100, 'summary': {},
        })
        self.assertEqual(JobView("failed", 10, 0, error="bad").to_dict()['error'], "bad")

    def test_format_duration(self):
        self.assertEqual(format_seconds_to_minutes(125), "2:05")
        self.assertEqual(format_seconds_to_minutes("59"), "0:59")
        self.assertEqual(format_seconds_to_minutes(None), "0:00")


def _record(job_id, slug, owner="u1"):
    return SummaryRecord(
        id=f"res-{job_id}", job_id=job_id, source_ref="https://youtu.be/x",
        platform="youtube", title="T", summary_text="S", keypoints=["k"],
        timestamps=["00:00 - a"], language="English", summary_length="medium",
        summary_tone="formal", owner=owner, slug=slug,
        shareable_link=f"http://localhost:3000/share/{slug}",
    )


class TestDatabase(unittest.TestCase):
    """Test SQLite database operations."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self.tmp.name) / "app.db"
        from clipnotes.core.db_sqlite import Database
        self.db = Database(self.db_path)
        self.payload = RemoteVideoJob("https://youtu.be/dQw4w9WgXcQ", owner="u1")

    def tearDown(self):
        self.db.close()
        self.tmp.cleanup()

    def test_create_job(self):
        job = self.db.create_job(self.payload, "dQw4w9WgXcQ")
        fetched = self.db.get_job(job.id)
        self.assertEqual(fetched.status, JobStatus.PENDING)
        self.assertEqual(fetched.video_id, "dQw4w9WgXcQ")
        self.assertEqual(fetched.owner, "u1")
        self.assertEqual(fetched.get_payload(), self.payload)

    def test_claim_is_exclusive(self):
        job = self.db.create_job(self.payload)
        claimed = self.db.claim_next_job("w1", 300, now=1000.0)
        self.assertEqual(claimed.id, job.id)
        self.assertEqual(claimed.status, JobStatus.RUNNING)
        self.assertEqual(claimed.locked_by, "w1")
        self.assertIsNone(self.db.claim_next_job("w2", 300, now=1100.0))

    def test_expired_lease_is_reclaimed(self):
        job = self.db.create_job(self.payload)
        self.db.claim_next_job("w1", 300, now=1000.0)
        reclaimed = self.db.claim_next_job("w2", 300, now=1400.0)
        self.assertEqual(reclaimed.id, job.id)
        self.assertEqual(reclaimed.locked_by, "w2")
        self.assertEqual(reclaimed.attempts, 2)
        # The original worker lost the job
        self.assertFalse(self.db.record_progress(job.id, "w1", JobStage.SUMMARIZING, 60, 10, 300))
        self.assertTrue(self.db.record_progress(job.id, "w2", JobStage.SUMMARIZING, 60, 10, 300))

    def test_progress_never_goes_backwards(self):
        job = self.db.create_job(self.payload)
        self.db.claim_next_job("w1", 300)
        self.db.record_progress(job.id, "w1", JobStage.FETCHING_CAPTIONS, 40, 100, 300)
        self.db.record_progress(job.id, "w1", JobStage.CHECKING_CACHE, 20, 100, 300)
        self.assertEqual(self.db.get_job(job.id).progress_pct, 40)

    def test_complete_job_is_idempotent(self):
        job = self.db.create_job(self.payload)
        self.db.claim_next_job("w1", 300)
        self.assertTrue(self.db.complete_job(job.id, "w1", _record(job.id, "a-b")))
        self.assertFalse(self.db.complete_job(job.id, "w1", _record(job.id, "a-b")))
        fetched = self.db.get_job(job.id)
        self.assertEqual(fetched.status, JobStatus.COMPLETED)
        self.assertEqual(fetched.progress_pct, 100)
        self.assertEqual(self.db.get_result(fetched.result_id).slug, "a-b")
        self.assertEqual(self.db.get_result_by_slug("a-b").job_id, job.id)

    def test_fail_only_from_active_states(self):
        job = self.db.create_job(self.payload)
        self.assertTrue(self.db.fail_job(job.id, ErrorCode.PARSE, "bad output"))
        self.assertFalse(self.db.fail_job(job.id, ErrorCode.PARSE, "bad output"))
        fetched = self.db.get_job(job.id)
        self.assertEqual(fetched.status, JobStatus.FAILED)
        self.assertEqual(fetched.error_message, "bad output")

    def test_quota_refund_flag_flips_once(self):
        job = self.db.create_job(self.payload, quota_consumed=True)
        day = self.db.mark_quota_refunded(job.id)
        self.assertIsNotNone(day)
        self.assertIsNone(self.db.mark_quota_refunded(job.id))
        free = self.db.create_job(self.payload, quota_consumed=False)
        self.assertIsNone(self.db.mark_quota_refunded(free.id))

    def test_usage_never_negative(self):
        self.assertEqual(self.db.increment_usage("u1", "2026-01-01"), 1)
        self.assertEqual(self.db.decrement_usage("u1", "2026-01-01"), 0)
        self.assertEqual(self.db.decrement_usage("u1", "2026-01-01"), 0)

    def test_temp_assets_deduplicated(self):
        job = self.db.create_job(self.payload)
        self.db.add_temp_asset(job.id, "videos/a.mp4")
        self.db.add_temp_asset(job.id, "videos/a.mp4")
        self.db.add_temp_asset(job.id, "audio/a_audio.mp3")
        self.assertEqual(self.db.get_job(job.id).get_temp_assets(),
                         ["videos/a.mp4", "audio/a_audio.mp3"])

    def test_caption_insert_and_claims(self):
        entry = CaptionEntry(video_id="vid00000001", video_url="u", title="T",
                             raw_captions="c", language="en")
        self.assertTrue(self.db.insert_caption_if_absent(entry, job_id="job-1"))
        self.assertFalse(self.db.insert_caption_if_absent(entry, job_id="job-x"))
        self.assertEqual(self.db.claim_caption_reuse("vid00000001", "job-2"), 2)
        self.assertEqual(self.db.claim_caption_reuse("vid00000001", "job-2"), 2)
        self.assertEqual(self.db.claim_caption_reuse("vid00000001", "job-3"), 3)
        self.assertEqual(self.db.claim_caption_reuse("vid00000001", "job-1"), 1)
        self.assertEqual(self.db.get_caption("vid00000001").derive_counter, 3)

    def test_caption_base_name_set_once(self):
        entry = CaptionEntry(video_id="vid00000001", video_url="u", title="T",
                             raw_captions="c", language="en")
        self.db.insert_caption_if_absent(entry)
        self.assertEqual(self.db.set_caption_base_name("vid00000001", "first-name"), "first-name")
        self.assertEqual(self.db.set_caption_base_name("vid00000001", "other-name"), "first-name")

    def test_reserve_slug(self):
        self.assertTrue(self.db.reserve_slug("a-b", "j1"))
        self.assertFalse(self.db.reserve_slug("a-b", "j2"))
        self.assertTrue(self.db.reserve_slug("a-b", "j1"))

    def test_list_results_by_owner(self):
        for i, owner in enumerate(["u1", "u2", "u1"]):
            job = self.db.create_job(RemoteVideoJob("https://youtu.be/dQw4w9WgXcQ", owner=owner))
            self.db.claim_next_job("w1", 300)
            self.db.complete_job(job.id, "w1", _record(job.id, f"slug-{i}", owner=owner))
        slugs = [r.slug for r in self.db.list_results("u1")]
        self.assertEqual(slugs, ["slug-2", "slug-0"])

    def test_append_chat(self):
        job = self.db.create_job(self.payload)
        self.db.claim_next_job("w1", 300)
        self.db.complete_job(job.id, "w1", _record(job.id, "a-b"))
        result_id = self.db.get_job(job.id).result_id
        self.assertTrue(self.db.append_chat(result_id, "user", "hi"))
        self.assertFalse(self.db.append_chat("missing", "user", "hi"))
        chats = self.db.get_result(result_id).chats
        self.assertEqual([(c['speaker'], c['text']) for c in chats], [("user", "hi")])


class TestCaptionCache(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        from clipnotes.core.db_sqlite import Database
        self.db = Database(Path(self.tmp.name) / "app.db")
        self.provider = FakeCaptionsProvider()
        self.cache = CaptionCache(self.db, self.provider)

    def tearDown(self):
        self.db.close()
        self.tmp.cleanup()

    def test_second_lookup_reuses_entry(self):
        first = self.cache.get_or_fetch("dQw4w9WgXcQ", "en", job_id="j1")
        second = self.cache.get_or_fetch("dQw4w9WgXcQ", "en", job_id="j2")
        self.assertEqual(self.provider.caption_calls, 1)
        self.assertEqual(first.entry.raw_captions, second.entry.raw_captions)
        self.assertFalse(first.hit)
        self.assertEqual(first.counter, 1)
        self.assertTrue(second.hit)
        self.assertEqual(second.counter, 2)
        self.assertEqual(first.entry.duration, "3:05")
        self.assertEqual(first.entry.video_url, "https://www.youtube.com/watch?v=dQw4w9WgXcQ")

    def test_cached_language_wins(self):
        self.cache.get_or_fetch("dQw4w9WgXcQ", "en", job_id="j1")
        later = self.cache.get_or_fetch("dQw4w9WgXcQ", "es", job_id="j2")
        self.assertEqual(later.entry.language, "en")
        self.assertIn("in en", later.entry.raw_captions)

    def test_on_fetch_only_on_miss(self):
        fetches = []
        self.cache.get_or_fetch("dQw4w9WgXcQ", "en", on_fetch=lambda: fetches.append(1))
        self.cache.get_or_fetch("dQw4w9WgXcQ", "en", on_fetch=lambda: fetches.append(1))
        self.assertEqual(len(fetches), 1)


class TestSlugs(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        from clipnotes.core.db_sqlite import Database
        self.db = Database(Path(self.tmp.name) / "app.db")

    def tearDown(self):
        self.db.close()
        self.tmp.cleanup()

    def test_slugify(self):
        self.assertEqual(slugify("Deep Learning: Basics!"), "deep-learning-basics")
        self.assertEqual(slugify('"Quantum-Leap"'), "quantum-leap")
        self.assertEqual(slugify("!!!"), "")
        self.assertLessEqual(len(slugify("word " * 40)), 60)

    def test_fallback_name(self):
        self.assertEqual(fallback_name("Intro to Rust programming"), "intro-to")
        self.assertEqual(fallback_name("Hi"), FALLBACK_SLUG_BASE)

    def test_allocate_uses_model_name(self):
        allocator = SlugAllocator(self.db, FakeNamer('"Quantum Leap"'))
        self.assertEqual(allocator.allocate("Physics talk", "English", "j1"), "quantum-leap")

    def test_collision_appends_suffix(self):
        self.db.reserve_slug("quantum-leap", "other-job")
        namer = FakeNamer()
        allocator = SlugAllocator(self.db, namer)
        self.assertEqual(allocator.allocate("Physics talk", "English", "j1"), "quantum-leap-2")
        self.assertEqual(namer.calls, 2)

    def test_exhaustion_is_bounded(self):
        self.db.reserve_slug("taken-name", "other-job")
        for n in range(2, 11):
            self.db.reserve_slug(f"taken-name-{n}", "other-job")
        namer = FakeNamer("taken name")
        allocator = SlugAllocator(self.db, namer)
        with self.assertRaises(SlugExhausted):
            allocator.allocate("Anything", "English", "j1")
        self.assertEqual(namer.calls, 10)

    def test_naming_failure_falls_back_to_title(self):
        class Broken:
            def complete(self, *args):
                raise ModelError("down")
        allocator = SlugAllocator(self.db, Broken())
        self.assertEqual(allocator.allocate("Intro to Rust", "English", "j1"), "intro-to")

    def test_two_word_name(self):
        self.assertEqual(two_word_name("Sure! Here's one: Deep Dive"), "deep-dive")
        self.assertEqual(two_word_name('"Quantum Leap Forward"'), "quantum-leap")
        self.assertEqual(two_word_name("Cosmos"), "cosmos")
        self.assertEqual(two_word_name(""), "")

    def test_chatty_reply_is_cut_to_two_words(self):
        allocator = SlugAllocator(self.db, FakeNamer("Here is a name: Rust Intro Basics"))
        self.assertEqual(allocator.allocate("Physics talk", "English", "j1"), "rust-intro")

    def test_allocate_named_returns_unsuffixed_base(self):
        self.db.reserve_slug("quantum-leap", "other-job")
        allocator = SlugAllocator(self.db, FakeNamer())
        self.assertEqual(allocator.allocate_named("Physics talk", "English", "j1"),
                         ("quantum-leap-2", "quantum-leap"))
        # deriving from the base never nests suffixes
        self.assertEqual(allocator.derive("quantum-leap", 2, "j2"), "quantum-leap-3")

    def test_derive(self):
        allocator = SlugAllocator(self.db, FakeNamer())
        self.assertEqual(allocator.derive("quantum-leap", 1, "j1"), "quantum-leap")
        self.assertEqual(allocator.derive("quantum-leap", 3, "j2"), "quantum-leap-3")
        self.db.reserve_slug("quantum-leap-4", "other-job")
        self.assertEqual(allocator.derive("quantum-leap", 4, "j3"), "quantum-leap-5")

    def test_concurrent_allocations_are_distinct(self):
        namer = FakeNamer("same name")
        allocator = SlugAllocator(self.db, namer)
        results, errors = [], []

        def run(i):
            try:
                results.append(allocator.allocate("Same title", "English", f"job-{i}"))
            except SlugExhausted as e:
                errors.append(e)

        threads = [threading.Thread(target=run, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(errors, [])
        self.assertEqual(len(results), 8)
        self.assertEqual(len(set(results)), 8)


class TestConfig(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "config.json"

    def tearDown(self):
        self.tmp.cleanup()

    def test_defaults(self):
        config = AppConfig(self.path)
        self.assertEqual(config.worker_count, 5)
        self.assertEqual(config.lease_seconds, 300)
        self.assertEqual(config.get('chat_model'), "gpt-4o")
        self.assertEqual(config.get('token_budget_per_minute'), 30000)

    def test_clamping_and_coercion(self):
        config = AppConfig(self.path, overrides={
            'worker_count': 100,
            'lease_seconds': "abc",
            'share_base_url': "https://clipnotes.example/",
        })
        self.assertEqual(config.worker_count, 32)
        self.assertEqual(config.lease_seconds, 300)
        self.assertEqual(config.get('share_base_url'), "https://clipnotes.example")

    def test_save_and_reload(self):
        config = AppConfig(self.path)
        config.set('worker_count', 3)
        self.assertEqual(AppConfig(self.path).worker_count, 3)

    def test_corrupt_file_uses_defaults(self):
        self.path.write_text("{not json")
        self.assertEqual(AppConfig(self.path).worker_count, 5)


    def test_media_backend_validation(self):
        self.assertEqual(AppConfig(self.path).get('media_backend'), "local")
        config = AppConfig(self.path, overrides={'media_backend': "s3", 's3_bucket': "clips"})
        self.assertEqual(config.get('media_backend'), "s3")
        self.assertEqual(config.get('s3_bucket'), "clips")
        config = AppConfig(self.path, overrides={'media_backend': "ftp"})
        self.assertEqual(config.get('media_backend'), "local")


class TestMediaStore(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = LocalMediaStore(Path(self.tmp.name) / "media")

    def tearDown(self):
        self.tmp.cleanup()

    def test_upload_fetch_delete(self):
        key = self.store.upload([b"abc", b"def"], "videos/clip.mp4")
        self.assertEqual(key, "videos/clip.mp4")
        self.assertTrue(self.store.exists(key))
        self.assertEqual(self.store.read_bytes(key), b"abcdef")
        self.store.delete(key)
        self.assertFalse(self.store.exists(key))
        self.store.delete(key)  # already gone

    def test_missing_asset(self):
        with self.assertRaises(NotFound):
            self.store.read_bytes("videos/missing.mp4")

    def test_refuses_paths_outside_root(self):
        with self.assertRaises(NotFound):
            self.store.upload([b"x"], "../escape.mp3")
        self.store.delete("../escape.mp3")

    def test_unsupported_extension(self):
        with self.assertRaises(ValidationError) as ctx:
            check_supported("videos/notes.txt")
        self.assertEqual(ctx.exception.code, ErrorCode.UNSUPPORTED_MEDIA)
        self.assertEqual(ctx.exception.message,
                         "Unsupported file format. Expected .mov, .mp4, .mp3, .wav, or .m4a")
        self.assertEqual(check_supported("audio/a.MP3"), ".mp3")


class FakeS3Client:
    """In-memory stand-in for a boto3 S3 client."""

    def __init__(self):
        self.objects = {}
        self.deleted = []

    def _missing(self, op, code="NoSuchKey"):
        return ClientError({'Error': {'Code': code, 'Message': "missing"}}, op)

    def head_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise self._missing('HeadObject', code="404")
        return {'ContentLength': len(self.objects[(Bucket, Key)])}

    def get_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise self._missing('GetObject')
        data = self.objects[(Bucket, Key)]
        return {'Body': StreamingBody(io.BytesIO(data), len(data))}

    def put_object(self, Bucket, Key, Body):
        self.objects[(Bucket, Key)] = Body

    def upload_file(self, Filename, Bucket, Key):
        self.objects[(Bucket, Key)] = Path(Filename).read_bytes()

    def delete_object(self, Bucket, Key):
        self.deleted.append(Key)
        self.objects.pop((Bucket, Key), None)


class TestS3MediaStore(unittest.TestCase):
    def setUp(self):
        self.client = FakeS3Client()
        self.store = S3MediaStore("clips", client=self.client, prefix="/media/")

    def test_upload_fetch_delete(self):
        key = self.store.upload([b"abc", b"def"], "videos/clip.mp4")
        self.assertEqual(key, "videos/clip.mp4")
        self.assertIn(("clips", "media/videos/clip.mp4"), self.client.objects)
        self.assertTrue(self.store.exists(key))
        self.assertEqual(self.store.read_bytes(key), b"abcdef")
        self.store.delete(key)
        self.assertFalse(self.store.exists(key))
        self.assertEqual(self.client.deleted, ["media/videos/clip.mp4"])

    def test_upload_local_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            src = Path(tmp) / "talk.mp3"
            src.write_bytes(b"id3")
            self.store.upload(src, "audio/talk.mp3")
        self.assertEqual(self.store.read_bytes("audio/talk.mp3"), b"id3")

    def test_missing_object(self):
        self.assertFalse(self.store.exists("videos/missing.mp4"))
        with self.assertRaises(NotFound):
            self.store.read_bytes("videos/missing.mp4")

    def test_other_client_errors_are_unavailable(self):
        class Denied(FakeS3Client):
            def head_object(self, Bucket, Key):
                raise ClientError({'Error': {'Code': "AccessDenied", 'Message': "no"}},
                                  'HeadObject')
        store = S3MediaStore("clips", client=Denied())
        with self.assertRaises(ExternalUnavailable):
            store.exists("videos/clip.mp4")

    def test_invalid_and_remote_refs(self):
        with self.assertRaises(NotFound):
            self.store.upload([b"x"], "../escape.mp3")
        self.store.delete("../escape.mp3")
        self.store.delete("https://cdn.example/clip.mp4")
        self.assertEqual(self.client.deleted, [])
        self.assertTrue(self.store.exists("https://cdn.example/clip.mp4"))


class TestBuildMediaStore(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.base = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def _config(self, **overrides):
        overrides.setdefault('media_root', str(self.base / "media"))
        return AppConfig(self.base / "config.json", overrides=overrides)

    def test_local_by_default(self):
        self.assertIsInstance(build_media_store(self._config()), LocalMediaStore)

    def test_s3_backend(self):
        client = FakeS3Client()
        store = build_media_store(
            self._config(media_backend="s3", s3_bucket="clips", s3_prefix="uploads"),
            s3_client=client)
        self.assertIsInstance(store, S3MediaStore)
        self.assertIs(store.client, client)
        self.assertEqual(store.bucket, "clips")
        self.assertEqual(store.prefix, "uploads")

    def test_s3_without_bucket(self):
        with self.assertRaises(ExternalUnavailable):
            build_media_store(self._config(media_backend="s3"), s3_client=FakeS3Client())


if __name__ == "__main__":
    unittest.main()
