"""
Shared constants for ClipNotes.
Single source of truth, imported by every other module.
"""

import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "ClipNotes"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

APP_SUPPORT_DIR = HOME / ".clipnotes"
APP_CACHE_DIR = APP_SUPPORT_DIR / "cache"
JOBS_CACHE_DIR = APP_CACHE_DIR / "jobs"
DEFAULT_MEDIA_ROOT = APP_SUPPORT_DIR / "media"
LOG_DIR = APP_SUPPORT_DIR / "logs"
DB_PATH = APP_SUPPORT_DIR / "app.db"
CONFIG_PATH = APP_SUPPORT_DIR / "config.json"

# ── Job status values ─────────────────────────────────────────────────
class JobStatus:
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)

# ── Job kinds ─────────────────────────────────────────────────────────
class JobKind:
    REMOTE_VIDEO = "remote-video"
    UPLOADED_MEDIA = "uploaded-media"

# ── Job stage values (ordered) ────────────────────────────────────────
class JobStage:
    CHECKING_CACHE = "CHECKING_CACHE"
    FETCHING_CAPTIONS = "FETCHING_CAPTIONS"
    NORMALIZING_MEDIA = "NORMALIZING_MEDIA"
    UPLOADING_AUDIO = "UPLOADING_AUDIO"
    TRANSCRIBING = "TRANSCRIBING"
    GENERATING_TITLE = "GENERATING_TITLE"
    SUMMARIZING = "SUMMARIZING"
    ALLOCATING_SLUG = "ALLOCATING_SLUG"
    PERSISTING = "PERSISTING"

# ── Platform tags for persisted results ──────────────────────────────
class Platform:
    YOUTUBE = "youtube"
    OTHER = "other"

# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Non-retryable
    VALIDATION = "ERR_VALIDATION"
    INVALID_URL = "ERR_INVALID_URL"
    UNSUPPORTED_MEDIA = "ERR_UNSUPPORTED_MEDIA"
    NOT_FOUND = "ERR_NOT_FOUND"
    FFMPEG_NORMALIZE = "ERR_FFMPEG_NORMALIZE"
    TRANSCRIPTION_EMPTY = "ERR_TRANSCRIPTION_EMPTY"
    SLUG_EXHAUSTED = "ERR_SLUG_EXHAUSTED"
    MODEL = "ERR_MODEL_FAILED"
    EXTERNAL_UNAVAILABLE = "ERR_EXTERNAL_UNAVAILABLE"

    # Retryable (absorbed inside the summarizer until attempts run out)
    RATE_LIMITED = "ERR_RATE_LIMITED"
    PARSE = "ERR_MODEL_OUTPUT_PARSE"

    UNEXPECTED = "ERR_UNEXPECTED"

RETRYABLE_ERRORS = {
    ErrorCode.RATE_LIMITED,
    ErrorCode.PARSE,
}

# ── Request vocabularies ──────────────────────────────────────────────
LANGUAGE_ISO_CODES = {
    'english': 'en',
    'spanish': 'es',
    'french': 'fr',
    'german': 'de',
    'italian': 'it',
    'portuguese': 'pt',
    'russian': 'ru',
    'chinese': 'zh',
    'japanese': 'ja',
    'korean': 'ko',
}

SUMMARY_LENGTHS = ("Short", "Medium", "Long")
SUMMARY_TONES = ("Formal", "Casual", "Professional", "Friendly", "Technical", "Neutral")

# Normalized vocabularies stored on results
TONE_MAP = {
    'Formal': 'formal',
    'Casual': 'casual',
    'Professional': 'formal',
    'Friendly': 'casual',
    'Technical': 'technical',
    'Neutral': 'casual',
}
LENGTH_MAP = {
    'Short': 'short',
    'Medium': 'medium',
    'Long': 'long',
}

DEFAULT_LANGUAGE = "English"
DEFAULT_LENGTH = "Medium"
DEFAULT_TONE = "Formal"

# ── Uploaded media ────────────────────────────────────────────────────
VIDEO_EXTENSIONS = (".mov", ".mp4")
AUDIO_EXTENSIONS = (".mp3", ".wav", ".m4a")

NORM_CHANNELS = 1
NORM_SAMPLE_RATE = 16000
NORM_BITRATE = "128k"
NORM_FORMAT = "mp3"

# ── Summarization / rate budget ───────────────────────────────────────
CHARS_PER_TOKEN = 4
TOKEN_BUDGET_PER_MINUTE = 30000
BUDGET_WINDOW_SEC = 60
SINGLE_CALL_TOKEN_LIMIT = 20000
PART_TOKEN_LIMIT = 10000
MIN_PART_TOKEN_LIMIT = 500
MAX_OUTPUT_TOKENS = 4096
MAX_MODEL_ATTEMPTS = 3
MAX_SPLIT_DEPTH = 3
DEFAULT_RETRY_AFTER_SEC = 10.0
MAX_TIMESTAMPS = 5
TITLE_CONTEXT_CHARS = 1000
UNTITLED = "Untitled Video"

# ── Slugs ─────────────────────────────────────────────────────────────
MAX_SLUG_ATTEMPTS = 10
MAX_SLUG_LEN = 60
FALLBACK_SLUG_BASE = "shared-summary"

# ── Progress mapping ─────────────────────────────────────────────────
PROGRESS_CACHE_LOOKUP = 10
PROGRESS_CAPTIONS_FETCH = 20
PROGRESS_CAPTIONS_STORED = 40
PROGRESS_NORMALIZE = 10
PROGRESS_UPLOAD_AUDIO = 20
PROGRESS_TRANSCRIBE = 40
PROGRESS_TITLE = 55
PROGRESS_SUMMARIZE_START = 60
PROGRESS_SUMMARIZE_END = 80
PROGRESS_SLUG = 80
PROGRESS_PERSIST = 90

# Advisory seconds remaining at each checkpoint
ETA_REMOTE_START = 120
ETA_REMOTE_FETCH = 100
ETA_REMOTE_SUMMARIZE = 40
ETA_REMOTE_PERSIST = 20
ETA_UPLOAD_START = 300
ETA_UPLOAD_NORMALIZED = 250
ETA_UPLOAD_AUDIO = 200
ETA_UPLOAD_TRANSCRIBE = 150
ETA_UPLOAD_SUMMARIZE = 100
ETA_UPLOAD_PERSIST = 50

# ── Worker pool ───────────────────────────────────────────────────────
DEFAULT_WORKER_COUNT = 5
DEFAULT_LEASE_SEC = 300
DEFAULT_POLL_INTERVAL_SEC = 2.0
WAIT_TICK_SEC = 1.0

# ── External providers ────────────────────────────────────────────────
CAPTIONS_API_BASE = "https://youtube-captions-transcript-subtitles-video-combiner.p.rapidapi.com"
SHARE_BASE_URL = "http://localhost:3000"
CHAT_MODEL = "gpt-4o"
NAMING_MODEL = "gpt-4"
TRANSCRIPTION_MODEL = "whisper-1"

# ── Misc ──────────────────────────────────────────────────────────────
YOUTUBE_HOSTS = ("youtube.com", "www.youtube.com", "m.youtube.com", "music.youtube.com")
YOUTUBE_SHORT_HOST = "youtu.be"
YOUTUBE_PATH_PREFIXES = ("embed", "v", "shorts", "live")

UNSAFE_PUBLIC_ID_CHARS = r'[^a-zA-Z0-9_-]'
