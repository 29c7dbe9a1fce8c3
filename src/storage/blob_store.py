import logging
from pathlib import Path
from typing import AsyncIterator, Optional, Protocol

import aioboto3
import aiofiles

from src.config import Settings

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
MEDIA_PREFIXES = ("images", "audio")


class UnsupportedMediaReference(ValueError):
    pass


class BlobStore(Protocol):
    def fetch_asset(self, ref: str) -> AsyncIterator[bytes]: ...


class LocalBlobStore:
    """
    Media kept on local disk. References look like ``/images/<uid>/<entry>/<file>``
    or ``/audio/...`` and resolve under ``media_root``.
    """

    def __init__(self, media_root: str | Path, chunk_size: int = CHUNK_SIZE):
        self.media_root = Path(media_root)
        self.chunk_size = chunk_size

    def resolve(self, ref: str) -> Path:
        prefix, _, rel = ref.lstrip("/").partition("/")
        if prefix not in MEDIA_PREFIXES or not rel:
            raise UnsupportedMediaReference(f"unsupported media URL: {ref}")

        base = (self.media_root / prefix).resolve()
        path = (base / rel).resolve()
        if base not in path.parents:
            raise UnsupportedMediaReference(f"media URL escapes the media root: {ref}")
        return path

    async def fetch_asset(self, ref: str) -> AsyncIterator[bytes]:
        path = self.resolve(ref)
        async with aiofiles.open(path, "rb") as f:
            while True:
                chunk = await f.read(self.chunk_size)
                if not chunk:
                    break
                yield chunk


class S3BlobStore:
    """Media kept in an S3 bucket, keyed by the reference without its leading slash."""

    def __init__(
        self,
        bucket: str,
        session: Optional[aioboto3.Session] = None,
        client_kwargs: Optional[dict] = None,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.bucket = bucket
        self.session = session or aioboto3.Session()
        self.client_kwargs = client_kwargs or {}
        self.chunk_size = chunk_size

    async def fetch_asset(self, ref: str) -> AsyncIterator[bytes]:
        key = ref.lstrip("/")
        async with self.session.client("s3", **self.client_kwargs) as s3:
            obj = await s3.get_object(Bucket=self.bucket, Key=key)
            async with obj["Body"] as stream:
                while True:
                    chunk = await stream.read(self.chunk_size)
                    if not chunk:
                        break
                    yield chunk


def s3_client_kwargs(settings: Settings) -> dict:
    kwargs = {
        "aws_access_key_id": settings.AWS_ACCESS_KEY_ID,
        "aws_secret_access_key": settings.AWS_SECRET_ACCESS_KEY,
        "region_name": settings.AWS_REGION,
        "endpoint_url": settings.AWS_ENDPOINT_URL,
    }
    return {k: v for k, v in kwargs.items() if v}


def build_blob_store(settings: Settings) -> BlobStore:
    if settings.MEDIA_BACKEND == "s3":
        if not settings.S3_BUCKET_NAME:
            raise RuntimeError("S3_BUCKET_NAME must be set when MEDIA_BACKEND=s3")
        logger.info(f"Using S3 media bucket: {settings.S3_BUCKET_NAME}")
        return S3BlobStore(settings.S3_BUCKET_NAME, client_kwargs=s3_client_kwargs(settings))

    logger.info(f"Using local media root: {settings.MEDIA_ROOT}")
    return LocalBlobStore(settings.MEDIA_ROOT)
