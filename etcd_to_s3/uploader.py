"""S3 upload of backup archives."""

from __future__ import annotations

import io
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Iterator

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    NoCredentialsError,
    PartialCredentialsError,
)

from etcd_to_s3.config import S3Config
from etcd_to_s3.errors import PublishError

MiB = 1024 * 1024
GiB = 1024 * 1024 * 1024
MAX_PART_SIZE = 5 * GiB
MIN_PART_SIZE = 5 * MiB

_BUCKET_MISSING_CODES = {"NoSuchBucket", "404", "NotFound"}
_AUTH_CODES = {
    "AccessDenied",
    "403",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "ExpiredToken",
    "InvalidToken",
}


class UploadError(RuntimeError):
    """Raised when a multipart upload fails and has been aborted."""


@dataclass(frozen=True)
class UploadResult:
    key: str
    size: int
    etag: str | None


class S3Uploader:
    def __init__(
        self,
        client,
        bucket: str,
        storage_class: str = "",
        sse: str = "",
        part_size: int = 64 * MiB,
        multipart_threshold: int = 64 * MiB,
    ) -> None:
        self.client = client
        self.bucket = bucket
        self.storage_class = storage_class
        self.sse = sse
        self.part_size = part_size
        self.multipart_threshold = multipart_threshold

    def upload_file(self, key: str, path: Path) -> UploadResult:
        with path.open("rb") as handle:
            return self.upload_stream(key, handle)

    def upload_stream(self, key: str, stream: BinaryIO) -> UploadResult:
        threshold = max(self.multipart_threshold, MIN_PART_SIZE)
        initial = self._read_until(stream, threshold + 1)
        if len(initial) <= threshold:
            return self._put_object(key, initial)
        return self._multipart_upload_stream(key, stream, initial)

    def _put_object(self, key: str, data: bytes) -> UploadResult:
        response = self.client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=io.BytesIO(data),
            **self._object_args(),
        )
        return UploadResult(key=key, size=len(data), etag=response.get("ETag"))

    def _multipart_upload_stream(
        self, key: str, stream: BinaryIO, initial: bytes
    ) -> UploadResult:
        part_size = min(max(self.part_size, MIN_PART_SIZE), MAX_PART_SIZE)
        response = self.client.create_multipart_upload(
            Bucket=self.bucket,
            Key=key,
            **self._object_args(),
        )
        upload_id = response["UploadId"]
        parts: dict[int, str] = {}
        total_size = 0
        try:
            for part_number, part_data in enumerate(
                self._iter_parts(stream, initial, part_size), start=1
            ):
                part = self.client.upload_part(
                    Bucket=self.bucket,
                    Key=key,
                    UploadId=upload_id,
                    PartNumber=part_number,
                    Body=part_data,
                )
                parts[part_number] = part["ETag"]
                total_size += len(part_data)
        except (ClientError, BotoCoreError, OSError) as exc:
            self.client.abort_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
            )
            raise UploadError(f"multipart upload of {key} failed: {exc}") from exc
        self.client.complete_multipart_upload(
            Bucket=self.bucket,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={"Parts": self._ordered_parts(parts)},
        )
        return UploadResult(key=key, size=total_size, etag=None)

    def _object_args(self) -> dict[str, str]:
        args: dict[str, str] = {}
        if self.storage_class:
            args["StorageClass"] = self.storage_class
        if self.sse:
            args["ServerSideEncryption"] = self.sse
        return args

    def _read_until(self, stream: BinaryIO, target: int) -> bytes:
        buffer = bytearray()
        while len(buffer) < target:
            data = stream.read(target - len(buffer))
            if not data:
                break
            buffer.extend(data)
        return bytes(buffer)

    def _iter_parts(
        self, stream: BinaryIO, initial: bytes, part_size: int
    ) -> Iterator[bytes]:
        buffer = bytearray(initial)
        while True:
            while len(buffer) < part_size:
                data = stream.read(part_size - len(buffer))
                if not data:
                    break
                buffer.extend(data)
            if not buffer:
                break
            part = bytes(buffer[:part_size])
            del buffer[:part_size]
            yield part

    def _ordered_parts(self, parts: dict[int, str]) -> list[dict[str, object]]:
        return [
            {"ETag": etag, "PartNumber": part_number}
            for part_number, etag in sorted(parts.items())
        ]


def make_s3_client(target: S3Config, timeout: float):
    """Create an S3 client for ``target`` that never retries on its own."""
    options: dict[str, Any] = {
        "connect_timeout": timeout,
        "read_timeout": timeout,
        "retries": {"total_max_attempts": 1, "mode": "standard"},
    }
    if target.endpoint_url is not None:
        options["s3"] = {"addressing_style": "path"}
    return boto3.client(
        "s3",
        endpoint_url=target.endpoint_url,
        region_name=target.region,
        aws_access_key_id=target.access_key_id,
        aws_secret_access_key=target.secret_access_key,
        config=BotoConfig(**options),
    )


def publish_archive(client, archive_path: Path, target: S3Config) -> UploadResult:
    """Upload ``archive_path`` under its file name and return the result."""
    key = archive_path.name
    try:
        _ensure_bucket(client, target)
        uploader = S3Uploader(
            client,
            bucket=target.bucket,
            storage_class=target.storage_class,
            sse=target.sse,
            part_size=target.part_size_bytes,
            multipart_threshold=target.part_size_bytes,
        )
        return uploader.upload_file(key, archive_path)
    except UploadError as exc:
        cause = exc.__cause__
        raise PublishError(_classify(cause) if cause else "upload", exc) from exc
    except (ClientError, BotoCoreError) as exc:
        raise PublishError(_classify(exc), exc) from exc
    except OSError as exc:
        raise PublishError("upload", exc) from exc


def _ensure_bucket(client, target: S3Config) -> None:
    try:
        client.head_bucket(Bucket=target.bucket)
    except ClientError as exc:
        if _classify(exc) != "bucket-not-found" or not target.create_bucket:
            raise
    else:
        return
    args: dict[str, Any] = {"Bucket": target.bucket}
    if target.region != "us-east-1":
        args["CreateBucketConfiguration"] = {"LocationConstraint": target.region}
    client.create_bucket(**args)


def _classify(exc: BaseException) -> str:
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return "auth"
    if isinstance(exc, ClientError):
        code = str(exc.response.get("Error", {}).get("Code", ""))
        if code in _BUCKET_MISSING_CODES:
            return "bucket-not-found"
        if code in _AUTH_CODES:
            return "auth"
        return "upload"
    if isinstance(exc, BotoCoreError):
        return "network"
    return "upload"
