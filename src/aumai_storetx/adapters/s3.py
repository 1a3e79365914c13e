"""S3 object adapter (boto3)."""

from __future__ import annotations

import logging
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from aumai_storetx.adapters.base import ObjectAdapter
from aumai_storetx.errors import NotFoundError, PermissionDeniedError, StorageError
from aumai_storetx.models import ErrorCode, ResourceHandle, ResourceKind

__all__ = ["S3ObjectAdapter"]

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})
_DENIED_CODES = frozenset({"403", "AccessDenied"})
_EXISTS_CODES = frozenset({"412", "PreconditionFailed", "ConditionalRequestConflict"})


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class S3ObjectAdapter(ObjectAdapter):
    """Object adapter over a boto3 S3 client.

    Puts are conditional (``IfNoneMatch="*"``) so an existing key is never
    overwritten; a compensation delete must only ever remove what this
    transaction uploaded.

    Args:
        client: A ``boto3.client("s3")`` instance.
    """

    def __init__(self, client: Any) -> None:
        self._client = client

    def put(
        self, data: bytes, key: str, bucket: str, content_type: str | None = None
    ) -> ResourceHandle:
        params: dict[str, Any] = {"Bucket": bucket, "Key": key, "Body": data, "IfNoneMatch": "*"}
        if content_type:
            params["ContentType"] = content_type
        try:
            self._client.put_object(**params)
        except ClientError as exc:
            code = _error_code(exc)
            if code in _EXISTS_CODES:
                raise StorageError(f"Object {bucket}/{key} already exists") from exc
            if code in _DENIED_CODES:
                raise StorageError(
                    f"Permission denied writing {bucket}/{key}", code=ErrorCode.PERMISSION_ERROR
                ) from exc
            raise StorageError(f"Failed to write {bucket}/{key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Failed to write {bucket}/{key}: {exc}") from exc
        logger.debug("Stored object s3://%s/%s (%d bytes)", bucket, key, len(data))
        return ResourceHandle(resource=ResourceKind.object, container=bucket, identifier=key)

    def get(self, key: str, bucket: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
            return response["Body"].read()
        except ClientError as exc:
            code = _error_code(exc)
            if code in _NOT_FOUND_CODES:
                raise NotFoundError(f"Object {bucket}/{key} not found") from exc
            if code in _DENIED_CODES:
                raise PermissionDeniedError(f"Permission denied reading {bucket}/{key}") from exc
            raise StorageError(f"Failed to read {bucket}/{key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Failed to read {bucket}/{key}: {exc}") from exc

    def exists(self, key: str, bucket: str) -> bool:
        try:
            self._client.head_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                return False
            raise StorageError(f"Failed to stat {bucket}/{key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Failed to stat {bucket}/{key}: {exc}") from exc
        return True

    def delete(self, key: str, bucket: str) -> bool:
        # S3 deletes succeed for missing keys; stat first so the miss is logged.
        if not self.exists(key, bucket):
            logger.warning("Object s3://%s/%s not found; nothing to delete", bucket, key)
            return False
        try:
            self._client.delete_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Failed to delete {bucket}/{key}: {exc}") from exc
        logger.debug("Deleted object s3://%s/%s", bucket, key)
        return True
