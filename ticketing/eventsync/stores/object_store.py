"""
S3 object store adapter for EventSync.

Each event owns a prefix in the bucket:
    s3://<bucket>/<prefix>/<event_id>/metadata.json   deterministic metadata document
    s3://<bucket>/<prefix>/<event_id>/banner          banner image (optional)

Every object carries its SHA-256 content hash in user metadata
(x-amz-meta-content-hash: "sha256:..."), recorded at upload time. Reads
return the raw bytes together with that recorded hash so the verifier can
detect corrupted content.

Invariants:
    - Objects are immutable once written: an event that already has a
      metadata document is reported as already_existed, never overwritten
    - The same record always produces the same metadata bytes and hash
    - NoSuchKey is "not found", never an error

How to change safely:
    - Metadata document changes must keep encode_metadata_document stable
    - Test against MinIO before changing key layout
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

from aiobotocore.session import get_session
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    ReadTimeoutError,
)

from ..errors import StoreError, StoreRejected, StoreTimeout, StoreUnavailable
from ..model import (
    ContentRef,
    EventRecord,
    ObjectStoreRef,
    StoreKind,
    StoreReceipt,
    StoreRecord,
    compute_content_hash,
    decode_metadata_document,
    encode_metadata_document,
)
from .base import HealthState, HealthStatus, elapsed_ms

if TYPE_CHECKING:
    from ..config import ObjectStoreConfig

logger = logging.getLogger(__name__)

HASH_METADATA_KEY = "content-hash"
_NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404"}


class S3ObjectStore:
    """Object store StoreAdapter over S3 (or any S3-compatible service).

    Attributes:
        config: ObjectStoreConfig instance

    Example:
        >>> store = S3ObjectStore(ObjectStoreConfig(bucket="eventsync-media"))
        >>> await store.connect()
        >>> receipt = await store.write(record)
        >>> receipt.object_store_ref.metadata.hash
        'sha256:...'
    """

    kind = StoreKind.OBJECT_STORE

    def __init__(self, config: ObjectStoreConfig, client: Any = None) -> None:
        """Initialize the adapter.

        Args:
            config: ObjectStoreConfig instance
            client: Pre-built S3 client (tests inject a fake)
        """
        self.config = config
        self._s3_client = client
        self._s3_ctx = None
        self._owns_client = client is None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Initialize S3 client."""
        if self._s3_client is None:
            session = get_session()

            client_kwargs = {
                "region_name": self.config.region,
            }

            if self.config.endpoint_url:
                client_kwargs["endpoint_url"] = self.config.endpoint_url

            if self.config.access_key_id:
                client_kwargs["aws_access_key_id"] = self.config.access_key_id
                client_kwargs["aws_secret_access_key"] = self.config.secret_access_key

            self._s3_ctx = session.create_client("s3", **client_kwargs)
            self._s3_client = await self._s3_ctx.__aenter__()

        self._connected = True
        logger.info("Object store client ready", extra={"bucket": self.config.bucket})

    async def close(self) -> None:
        """Close S3 client."""
        if self._s3_ctx is not None and self._owns_client:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_ctx = None
            self._s3_client = None
        self._connected = False

    def _key(self, event_id: str, name: str) -> str:
        return f"{self.config.prefix}/{event_id}/{name}"

    def _url(self, key: str) -> str:
        if self.config.public_base_url:
            return f"{self.config.public_base_url.rstrip('/')}/{key}"
        return f"s3://{self.config.bucket}/{key}"

    async def write(self, record: EventRecord) -> StoreReceipt:
        missing = record.missing_for(self.kind)
        if missing:
            raise StoreRejected(f"Missing required fields: {missing}", self.kind, "write")

        metadata_key = self._key(record.event_id, "metadata.json")
        existing = await self._get(metadata_key, "write")
        if existing is not None:
            content, stored_hash = existing
            return StoreReceipt(
                kind=self.kind,
                event_id=record.event_id,
                object_store_ref=self._ref_for(metadata_key, content, stored_hash),
                already_existed=True,
            )

        image_ref = None
        if record.banner:
            image_key = self._key(record.event_id, "banner")
            image_hash = compute_content_hash(record.banner.content)
            await self._put(image_key, record.banner.content, image_hash, record.banner.content_type)
            image_ref = ContentRef(hash=image_hash, url=self._url(image_key))

        content = encode_metadata_document(record, image_ref)
        content_hash = compute_content_hash(content)
        await self._put(metadata_key, content, content_hash, "application/json")

        logger.info(
            "Uploaded event metadata",
            extra={
                "event_id": record.event_id,
                "key": metadata_key,
                "hash": content_hash,
                "has_banner": image_ref is not None,
            },
        )
        return StoreReceipt(
            kind=self.kind,
            event_id=record.event_id,
            object_store_ref=ObjectStoreRef(
                metadata=ContentRef(hash=content_hash, url=self._url(metadata_key)),
                image=image_ref,
            ),
        )

    async def read(self, event_id: str) -> StoreRecord | None:
        metadata_key = self._key(event_id, "metadata.json")
        found = await self._get(metadata_key, "read")
        if found is None:
            return None

        content, stored_hash = found
        try:
            values, _ = decode_metadata_document(content)
        except ValueError:
            logger.warning("Unreadable metadata document", extra={"key": metadata_key})
            values = {}
        values["object_store_ref"] = self._ref_for(metadata_key, content, stored_hash)
        return StoreRecord(
            kind=self.kind,
            event_id=event_id,
            fields=values,
            content=content,
            content_hash=stored_hash,
        )

    async def health_check(self) -> HealthStatus:
        started = time.monotonic()
        try:
            self._require_connected("health")
            await self._s3_client.head_bucket(Bucket=self.config.bucket)
        except (ClientError, BotoCoreError, StoreError) as e:
            return HealthStatus(
                store=self.kind,
                status=HealthState.UNHEALTHY,
                response_time_ms=elapsed_ms(started),
                error=str(e),
            )
        return HealthStatus(
            store=self.kind,
            status=HealthState.HEALTHY,
            response_time_ms=elapsed_ms(started),
            details={"bucket": self.config.bucket},
        )

    def _ref_for(self, metadata_key: str, content: bytes, stored_hash: str) -> ObjectStoreRef:
        try:
            _, image = decode_metadata_document(content)
        except ValueError:
            image = None
        return ObjectStoreRef(
            metadata=ContentRef(hash=stored_hash, url=self._url(metadata_key)),
            image=image,
        )

    async def _put(self, key: str, body: bytes, content_hash: str, content_type: str) -> None:
        self._require_connected("write")
        try:
            await self._s3_client.put_object(
                Bucket=self.config.bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
                Metadata={HASH_METADATA_KEY: content_hash},
            )
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, "write")

    async def _get(self, key: str, operation: str) -> tuple[bytes, str] | None:
        """Fetch object bytes and recorded hash, None if the key does not exist."""
        self._require_connected(operation)
        try:
            response = await self._s3_client.get_object(Bucket=self.config.bucket, Key=key)
            async with response["Body"] as stream:
                content = await stream.read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _NOT_FOUND_CODES:
                return None
            raise self._translate(e, operation)
        except BotoCoreError as e:
            raise self._translate(e, operation)

        metadata = response.get("Metadata", {})
        # Objects uploaded without a hash are verified against themselves
        stored_hash = metadata.get(HASH_METADATA_KEY) or compute_content_hash(content)
        return content, stored_hash

    def _translate(self, error: Exception, operation: str) -> StoreError:
        if isinstance(error, (ConnectTimeoutError, ReadTimeoutError)):
            return StoreTimeout(str(error), self.kind, operation)
        if isinstance(error, ClientError):
            status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 500)
            if 400 <= status < 500:
                return StoreRejected(str(error), self.kind, operation)
        return StoreUnavailable(str(error), self.kind, operation)

    def _require_connected(self, operation: str) -> None:
        if self._s3_client is None or not self._connected:
            raise StoreUnavailable("Not connected", self.kind, operation)
