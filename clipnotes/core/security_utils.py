"""
Security utilities for ClipNotes.
- Storage key sanitization
- Safe subprocess execution (argument arrays only)
- API key lookup (environment only, never logged)
"""

import os
import re
import subprocess
import logging

from clipnotes.core.constants import UNSAFE_PUBLIC_ID_CHARS

logger = logging.getLogger(__name__)


# ── Storage key safety ────────────────────────────────────────────────

def sanitize_public_id(public_id: str) -> str:
    """Replace anything outside [A-Za-z0-9_-] so the id is safe inside a store key."""
    safe = re.sub(UNSAFE_PUBLIC_ID_CHARS, '_', public_id or "")
    return safe or "upload"


def strip_quotes(text: str) -> str:
    """Drop one pair of wrapping quotes that models like to add."""
    text = (text or "").strip()
    text = re.sub(r'^"(.*)"$', r'\1', text, flags=re.DOTALL)
    return re.sub(r"^'(.*)'$", r'\1', text, flags=re.DOTALL)


# ── Subprocess safety ─────────────────────────────────────────────────

def run_subprocess(args: list[str], **kwargs) -> subprocess.CompletedProcess:
    """
    Execute a subprocess using argument arrays only.
    shell=True is explicitly forbidden.
    """
    if not isinstance(args, (list, tuple)):
        raise TypeError("Subprocess args must be a list/tuple, not a string")

    # Force shell=False: remove any caller-supplied value, then set it once
    kwargs.pop('shell', None)

    logger.debug("Running subprocess: %s", ' '.join(str(a) for a in args))
    return subprocess.run(args, shell=False, **kwargs)


def run_subprocess_capture(args: list[str], timeout: int = 300, **kwargs) -> subprocess.CompletedProcess:
    """Run subprocess and capture stdout/stderr."""
    return run_subprocess(
        args,
        capture_output=True,
        text=True,
        timeout=timeout,
        **kwargs,
    )


# ── Secrets ───────────────────────────────────────────────────────────

def get_secret(name: str) -> str | None:
    """Read an API key from the environment. Empty values count as missing."""
    value = os.environ.get(name, "").strip()
    return value or None
