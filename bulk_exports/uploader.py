"""Streaming multipart upload to S3-compatible object storage."""

import asyncio
import logging
from typing import Any, AsyncIterable, Dict, List, NamedTuple, Optional

from botocore.exceptions import BotoCoreError, ClientError

from bulk_exports.errors import UploadFailed

TRANSPORT_ERRORS = (BotoCoreError, ClientError, OSError, asyncio.TimeoutError)


class UploadedObject(NamedTuple):
    """A committed object."""

    key: str
    size: int
    etag: Optional[str]


class MultipartUpload:
    """
    One in-progress multipart upload.

    Parts are numbered in the order they are handed in. Nothing is visible
    to readers until ``complete()``; ``abort()`` discards every part.
    """

    def __init__(
        self,
        s3_client: Any,
        bucket: str,
        key: str,
        upload_id: str,
        logger: logging.Logger,
    ):
        self.s3_client = s3_client
        self.bucket = bucket
        self.key = key
        self.upload_id = upload_id
        self.logger = logger
        self.size = 0
        self._parts: List[Dict[str, Any]] = []
        self._finished = False

    @property
    def part_count(self) -> int:
        return len(self._parts)

    async def upload_part(self, data: bytes) -> None:
        if self._finished:
            raise UploadFailed(f"Upload {self.upload_id} for {self.key} is already finished")
        part_number = len(self._parts) + 1
        response = await self._call(
            "upload_part",
            Bucket=self.bucket,
            Key=self.key,
            UploadId=self.upload_id,
            PartNumber=part_number,
            Body=data,
        )
        self._parts.append({"ETag": response["ETag"], "PartNumber": part_number})
        self.size += len(data)
        self.logger.debug(f"Uploaded part {part_number} ({len(data)} bytes) of {self.key}")

    async def complete(self) -> UploadedObject:
        """Commit the uploaded parts as one object."""
        if not self._parts:
            # A multipart upload needs at least one part, even for empty output
            await self.upload_part(b"")
        response = await self._call(
            "complete_multipart_upload",
            Bucket=self.bucket,
            Key=self.key,
            UploadId=self.upload_id,
            MultipartUpload={"Parts": self._parts},
        )
        self._finished = True
        self.logger.info(
            f"Completed upload of {self.key}: {self.size} bytes in {len(self._parts)} parts"
        )
        return UploadedObject(self.key, self.size, response.get("ETag"))

    async def abort(self) -> None:
        """Discard the upload. Failures are logged, not raised."""
        if self._finished:
            return
        self._finished = True
        try:
            await self.s3_client.abort_multipart_upload(
                Bucket=self.bucket, Key=self.key, UploadId=self.upload_id
            )
            self.logger.info(f"Aborted upload {self.upload_id} for {self.key}")
        except TRANSPORT_ERRORS as e:
            self.logger.error(
                f"Failed to abort upload {self.upload_id} for {self.key}: {e}",
                exc_info=True,
            )

    async def _call(self, operation: str, **kwargs) -> Dict[str, Any]:
        try:
            return await getattr(self.s3_client, operation)(**kwargs)
        except TRANSPORT_ERRORS as e:
            raise UploadFailed(f"S3 {operation} failed for {self.key}: {e}") from e


class StreamingUploader:
    """Starts multipart uploads into one bucket."""

    def __init__(self, s3_client: Any, bucket: str, logger: Optional[logging.Logger] = None):
        """
        Args:
            s3_client: Async S3 client (aioboto3)
            bucket: Destination bucket
            logger: Logger instance
        """
        self.s3_client = s3_client
        self.bucket = bucket
        self.logger = logger or logging.getLogger(__name__)

    async def begin(self, key: str, content_type: str) -> MultipartUpload:
        """Create a multipart upload for ``key``."""
        try:
            response = await self.s3_client.create_multipart_upload(
                Bucket=self.bucket, Key=key, ContentType=content_type
            )
        except TRANSPORT_ERRORS as e:
            raise UploadFailed(f"S3 create_multipart_upload failed for {key}: {e}") from e
        self.logger.debug(f"Started upload {response['UploadId']} for {key}")
        return MultipartUpload(
            self.s3_client, self.bucket, key, response["UploadId"], self.logger
        )

    async def upload_stream(
        self,
        key: str,
        chunks: AsyncIterable[bytes],
        content_type: str,
        part_size: int,
    ) -> UploadedObject:
        """
        Upload an async byte stream, cutting it into ``part_size`` parts.

        At most one part is buffered at a time. The upload is aborted if the
        stream or any storage call fails.
        """
        upload = await self.begin(key, content_type)
        buffer = bytearray()
        try:
            async for chunk in chunks:
                buffer.extend(chunk)
                while len(buffer) >= part_size:
                    await upload.upload_part(bytes(buffer[:part_size]))
                    del buffer[:part_size]
            if buffer or not upload.part_count:
                await upload.upload_part(bytes(buffer))
            return await upload.complete()
        except BaseException:
            await asyncio.shield(upload.abort())
            raise
