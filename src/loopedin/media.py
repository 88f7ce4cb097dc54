from __future__ import annotations

import asyncio
import json
import logging
import mimetypes
import secrets
import time
from dataclasses import dataclass
from typing import Protocol

import boto3
import httpx
from botocore.exceptions import ClientError

from .config import Settings, get_settings

logger = logging.getLogger(__name__)

MAX_MEDIA_ITEMS = 10


@dataclass(frozen=True)
class MediaItem:
    url: str
    content_type: str


class MediaStore(Protocol):
    def initialize(self) -> None: ...

    def put(self, key: str, data: bytes, content_type: str) -> str:
        """Store bytes under key and return the public URL."""
        ...


class S3MediaStore:
    """
    Public-read media bucket on S3.

    Nothing touches the network until initialize() or put() is called;
    initialize() is safe to call more than once.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        if not settings.s3_bucket_name:
            raise ValueError("S3_BUCKET_NAME must be configured for media storage")

        self.bucket_name = settings.s3_bucket_name
        self.region = settings.aws_region
        self.public_base_url = (
            settings.s3_public_base_url
            or f"https://{self.bucket_name}.s3.{self.region}.amazonaws.com"
        ).rstrip("/")
        self.s3_client = boto3.client(
            "s3",
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            region_name=settings.aws_region,
        )
        self._initialized = False

    def initialize(self) -> None:
        if self._initialized:
            return

        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
        except ClientError:
            logger.info("Creating media bucket %s", self.bucket_name)
            if self.region == "us-east-1":
                self.s3_client.create_bucket(Bucket=self.bucket_name)
            else:
                self.s3_client.create_bucket(
                    Bucket=self.bucket_name,
                    CreateBucketConfiguration={"LocationConstraint": self.region},
                )

        # The bucket may already be public, or public policies may be blocked
        # at the account level; uploads still work either way.
        try:
            self.s3_client.put_bucket_policy(
                Bucket=self.bucket_name, Policy=json.dumps(self._public_read_policy())
            )
        except ClientError as e:
            logger.warning("Could not apply public-read policy to %s: %s", self.bucket_name, e)

        self._initialized = True

    def _public_read_policy(self) -> dict[str, object]:
        return {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Sid": "PublicReadMedia",
                    "Effect": "Allow",
                    "Principal": "*",
                    "Action": "s3:GetObject",
                    "Resource": f"arn:aws:s3:::{self.bucket_name}/*",
                }
            ],
        }

    def put(self, key: str, data: bytes, content_type: str) -> str:
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except ClientError as e:
            logger.error("Failed to upload media to S3: %s", e)
            raise
        return f"{self.public_base_url}/{key}"


def media_key(content_type: str, now: float | None = None) -> str:
    """Timestamp + random key, e.g. media/1718000000000-k3j9x2ab.jpg"""
    millis = int((now if now is not None else time.time()) * 1000)
    extension = mimetypes.guess_extension(content_type.split(";")[0].strip()) or ""
    return f"media/{millis}-{secrets.token_hex(4)}{extension}"


class MediaIngestor:
    """
    Copy gateway-hosted media into our own store.

    Items are fetched concurrently. A failing item is logged and dropped; the
    surviving public URLs keep the input order.
    """

    def __init__(
        self,
        store: MediaStore,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self._transport = transport

    def _auth(self) -> httpx.BasicAuth | None:
        sid = self.settings.twilio_account_sid
        token = self.settings.twilio_auth_token
        if sid and token:
            return httpx.BasicAuth(sid, token)
        return None

    async def _fetch(self, client: httpx.AsyncClient, item: MediaItem) -> bytes:
        response = await client.get(item.url)
        response.raise_for_status()
        return response.content

    async def _ingest_one(self, client: httpx.AsyncClient, item: MediaItem) -> str:
        data = await self._fetch(client, item)
        key = media_key(item.content_type)
        # boto3 is blocking; keep it off the event loop
        return await asyncio.to_thread(self.store.put, key, data, item.content_type)

    async def ingest(self, items: list[MediaItem]) -> list[str]:
        if not items:
            return []

        async with httpx.AsyncClient(
            auth=self._auth(),
            follow_redirects=True,  # Twilio media URLs redirect to a CDN
            timeout=self.settings.media_fetch_timeout_seconds,
            transport=self._transport,
        ) as client:
            results = await asyncio.gather(
                *(self._ingest_one(client, item) for item in items),
                return_exceptions=True,
            )

        urls: list[str] = []
        for item, result in zip(items, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning("Failed to ingest media %s (%s): %r", item.url, item.content_type, result)
                continue
            urls.append(result)

        logger.info("Ingested %d of %d media items", len(urls), len(items))
        return urls


_ingestor: MediaIngestor | None = None


def get_media_ingestor() -> MediaIngestor | None:
    """
    Lazily create the process-wide ingestor backed by S3.

    Returns None when no bucket is configured; inbound media is then dropped.
    """
    global _ingestor
    if _ingestor is None:
        if not get_settings().s3_bucket_name:
            return None
        _ingestor = MediaIngestor(S3MediaStore())
    return _ingestor
