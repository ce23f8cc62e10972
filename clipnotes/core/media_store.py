"""
Media object store.

References are store keys ("videos/123-talk.mp4", "audio/123-talk_audio.mp3").
http(s) references are fetched over the network and are read-only from our side.

- S3MediaStore: S3-compatible bucket (AWS, MinIO, R2) through boto3.
- LocalMediaStore: directory under media_root, for development and tests.
- build_media_store(): picks one from config['media_backend'].
"""

import logging
import shutil
from pathlib import Path
from typing import Iterable, Iterator

import boto3
import requests
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from clipnotes.core.error_codes import ExternalUnavailable, NotFound
from clipnotes.core.security_utils import get_secret

logger = logging.getLogger(__name__)

_CHUNK_BYTES = 1024 * 1024
_TIMEOUT_SEC = 300
_MISSING_CODES = ("404", "NoSuchKey", "NotFound")


def _is_remote(ref: str) -> bool:
    return ref.startswith("http://") or ref.startswith("https://")


class MediaStore:
    """Shared fetch helpers; subclasses implement the key-addressed operations."""

    def __init__(self, session: requests.Session | None = None):
        self.session = session or requests.Session()

    def exists(self, ref: str) -> bool:
        raise NotImplementedError

    def fetch(self, ref: str) -> Iterator[bytes]:
        """Stream an asset in chunks."""
        raise NotImplementedError

    def upload(self, data: Iterable[bytes] | Path, key: str) -> str:
        """Store bytes (or a local file) under key and return its reference."""
        raise NotImplementedError

    def delete(self, ref: str):
        """Delete an asset. Missing assets and remote refs are a no-op."""
        raise NotImplementedError

    def _fetch_remote(self, url: str) -> Iterator[bytes]:
        try:
            with self.session.get(url, stream=True, timeout=_TIMEOUT_SEC) as resp:
                if resp.status_code == 404:
                    raise NotFound(f"Media asset not found: {url}")
                if resp.status_code != 200:
                    raise ExternalUnavailable(f"Failed to fetch media: HTTP {resp.status_code}")
                for chunk in resp.iter_content(chunk_size=_CHUNK_BYTES):
                    if chunk:
                        yield chunk
        except requests.exceptions.RequestException as e:
            raise ExternalUnavailable(f"Failed to fetch media: {type(e).__name__}")

    def fetch_to_file(self, ref: str, dest: Path) -> Path:
        dest.parent.mkdir(parents=True, exist_ok=True)
        with open(dest, 'wb') as f:
            for chunk in self.fetch(ref):
                f.write(chunk)
        return dest

    def read_bytes(self, ref: str) -> bytes:
        return b"".join(self.fetch(ref))


# ── S3-compatible bucket ──────────────────────────────────────────────

class S3MediaStore(MediaStore):
    """Media kept as objects in one bucket, optionally under a key prefix."""

    def __init__(self, bucket: str, client=None, endpoint_url: str | None = None,
                 region: str | None = None, prefix: str = "",
                 session: requests.Session | None = None):
        super().__init__(session)
        self.bucket = bucket
        self.prefix = (prefix or "").strip('/')
        self.client = client or boto3.client(
            's3',
            endpoint_url=endpoint_url or None,
            region_name=region or None,
            aws_access_key_id=get_secret("S3_ACCESS_KEY"),
            aws_secret_access_key=get_secret("S3_SECRET_KEY"),
            config=Config(signature_version='s3v4'),
        )

    def _key(self, ref: str) -> str:
        key = ref.lstrip('/')
        if not key or '..' in key.split('/'):
            raise NotFound(f"Invalid media reference: {ref}")
        return f"{self.prefix}/{key}" if self.prefix else key

    def exists(self, ref: str) -> bool:
        if _is_remote(ref):
            return True
        try:
            self.client.head_object(Bucket=self.bucket, Key=self._key(ref))
            return True
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in _MISSING_CODES:
                return False
            raise ExternalUnavailable(f"S3 lookup failed: {e}")
        except BotoCoreError as e:
            raise ExternalUnavailable(f"S3 lookup failed: {type(e).__name__}")

    def fetch(self, ref: str) -> Iterator[bytes]:
        if _is_remote(ref):
            yield from self._fetch_remote(ref)
            return
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=self._key(ref))
            for chunk in obj['Body'].iter_chunks(_CHUNK_BYTES):
                if chunk:
                    yield chunk
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in _MISSING_CODES:
                raise NotFound(f"Media asset not found: {ref}")
            raise ExternalUnavailable(f"S3 download failed: {e}")
        except BotoCoreError as e:
            raise ExternalUnavailable(f"S3 download failed: {type(e).__name__}")

    def upload(self, data: Iterable[bytes] | Path, key: str) -> str:
        object_key = self._key(key)
        try:
            if isinstance(data, Path):
                self.client.upload_file(str(data), self.bucket, object_key)
            else:
                self.client.put_object(Bucket=self.bucket, Key=object_key,
                                       Body=b"".join(data))
        except (ClientError, BotoCoreError) as e:
            raise ExternalUnavailable(f"S3 upload failed: {e}")
        logger.info("Uploaded media asset to s3://%s/%s", self.bucket, object_key)
        return key

    def delete(self, ref: str):
        if _is_remote(ref):
            logger.debug("Not deleting remote media reference: %s", ref)
            return
        try:
            object_key = self._key(ref)
        except NotFound:
            logger.warning("Refusing to delete invalid reference: %s", ref)
            return
        # delete_object on a missing key succeeds
        try:
            self.client.delete_object(Bucket=self.bucket, Key=object_key)
        except (ClientError, BotoCoreError) as e:
            raise ExternalUnavailable(f"S3 delete failed: {e}")
        logger.debug("Deleted media asset: %s", ref)


# ── Local directory ───────────────────────────────────────────────────

class LocalMediaStore(MediaStore):
    """Filesystem-backed store rooted at media_root."""

    def __init__(self, root: Path, session: requests.Session | None = None):
        super().__init__(session)
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, ref: str) -> Path:
        candidate = (self.root / ref.lstrip('/')).resolve()
        root = self.root.resolve()
        if root != candidate and root not in candidate.parents:
            raise NotFound(f"Media reference outside store: {ref}")
        return candidate

    def exists(self, ref: str) -> bool:
        if _is_remote(ref):
            return True
        return self._path(ref).is_file()

    def fetch(self, ref: str) -> Iterator[bytes]:
        if _is_remote(ref):
            yield from self._fetch_remote(ref)
            return
        path = self._path(ref)
        if not path.is_file():
            raise NotFound(f"Media asset not found: {ref}")
        with open(path, 'rb') as f:
            while True:
                chunk = f.read(_CHUNK_BYTES)
                if not chunk:
                    break
                yield chunk

    def upload(self, data: Iterable[bytes] | Path, key: str) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(data, Path):
            shutil.copyfile(data, path)
        else:
            with open(path, 'wb') as f:
                for chunk in data:
                    f.write(chunk)
        logger.info("Uploaded media asset: %s", key)
        return key

    def delete(self, ref: str):
        if _is_remote(ref):
            logger.debug("Not deleting remote media reference: %s", ref)
            return
        try:
            path = self._path(ref)
        except NotFound:
            logger.warning("Refusing to delete reference outside store: %s", ref)
            return
        try:
            path.unlink()
            logger.debug("Deleted media asset: %s", ref)
        except FileNotFoundError:
            pass


def build_media_store(config, s3_client=None) -> MediaStore:
    """Media store for config['media_backend'] ('s3' or 'local')."""
    if config.get('media_backend') == 's3':
        bucket = config.get('s3_bucket')
        if not bucket:
            raise ExternalUnavailable("S3 bucket not configured (s3_bucket)")
        logger.info("Using S3 media store: bucket=%s", bucket)
        return S3MediaStore(bucket, client=s3_client,
                            endpoint_url=config.get('s3_endpoint'),
                            region=config.get('s3_region'),
                            prefix=config.get('s3_prefix') or "")
    logger.info("Using local media store: %s", config.media_root)
    return LocalMediaStore(config.media_root)
