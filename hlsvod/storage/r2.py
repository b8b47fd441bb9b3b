"""Cloudflare R2 (S3-compatible) storage backend built on boto3."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import BackendError, InvalidInputError, InvalidNameError, InvalidRangeError, NotFoundError
from .base import DEFAULT_CHUNK_SIZE, Body, ObjectMetadata, ObjectReader, guess_content_type

logger = logging.getLogger(__name__)

MAX_PRESIGN_EXPIRY = 7 * 24 * 3600  # 604800 秒
DEFAULT_CACHE_CONTROL = "public, max-age=3600"
_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
_DELETE_BATCH = 1000


def _is_not_found(error: ClientError) -> bool:
    code = str(error.response.get("Error", {}).get("Code", ""))
    status = str(error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", ""))
    return code in _NOT_FOUND_CODES or status == "404"


def _total_from_content_range(content_range: Optional[str]) -> Optional[int]:
    # "bytes 0-499/1000"
    if not content_range or "/" not in content_range:
        return None
    total = content_range.rsplit("/", 1)[1].strip()
    return int(total) if total.isdigit() else None


class R2StorageBackend:
    """Objects are keys in a single bucket; names are opaque keys."""

    name = "r2"

    def __init__(
        self,
        client: Any,
        bucket: str,
        *,
        endpoint: str = "",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_presign_expiry: int = MAX_PRESIGN_EXPIRY,
        cache_control: str = DEFAULT_CACHE_CONTROL,
    ):
        if not bucket:
            raise BackendError("R2 bucket name is not configured")
        self.client = client
        self.bucket = bucket
        self.endpoint = endpoint
        self.chunk_size = chunk_size
        self.max_presign_expiry = max_presign_expiry
        self.cache_control = cache_control

    @classmethod
    def from_config(cls, section: Dict[str, Any]) -> "R2StorageBackend":
        """Build a client from the "r2" config section."""
        endpoint = section.get("endpoint") or ""
        if not endpoint and section.get("account_id"):
            endpoint = f"https://{section['account_id']}.r2.cloudflarestorage.com"

        client = boto3.client(
            "s3",
            endpoint_url=endpoint or None,
            aws_access_key_id=section.get("access_key_id") or None,
            aws_secret_access_key=section.get("secret_access_key") or None,
            region_name=section.get("region") or "auto",
            config=BotoConfig(signature_version="s3v4", retries={"max_attempts": 3, "mode": "standard"}),
        )
        return cls(
            client,
            section.get("bucket") or "",
            endpoint=endpoint,
            max_presign_expiry=int(section.get("max_presign_expiry") or MAX_PRESIGN_EXPIRY),
        )

    def __repr__(self) -> str:
        return f"R2StorageBackend(bucket={self.bucket!r})"

    def _check_key(self, name: str) -> str:
        if not isinstance(name, str) or not name or "\x00" in name:
            raise InvalidNameError(f"Invalid object key: {name!r}")
        return name

    def _translate(self, error: Exception, name: str, action: str) -> Exception:
        if isinstance(error, ClientError):
            if _is_not_found(error):
                return NotFoundError(f"Object '{name}' not found in R2")
            code = error.response.get("Error", {}).get("Code", "")
            if code == "InvalidRange":
                return InvalidRangeError(0, f"Invalid range for '{name}'")
        logger.error(f"R2 {action} failed for {name}: {error}")
        return BackendError(f"R2 {action} failed for '{name}': {error}")

    def _metadata(self, name: str, response: Dict[str, Any], size: int) -> ObjectMetadata:
        return ObjectMetadata(
            name=name,
            size=size,
            content_type=response.get("ContentType") or guess_content_type(name),
            last_modified=response.get("LastModified"),
            etag=response.get("ETag") or "",
        )

    # ------------------------------------------------------------------ reads

    def stat(self, name: str) -> ObjectMetadata:
        key = self._check_key(name)
        try:
            # HeadObject 不传输正文
            response = self.client.head_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, name, "head") from e
        return self._metadata(key, response, int(response.get("ContentLength", 0)))

    def exists(self, name: str) -> bool:
        try:
            self.stat(name)
            return True
        except NotFoundError:
            return False

    def _reader(self, name: str, response: Dict[str, Any], total: int, length: int, start: int) -> ObjectReader:
        body = response["Body"]
        return ObjectReader(
            self._metadata(name, response, total),
            body.iter_chunks(self.chunk_size),
            length,
            close=body.close,
            start=start,
        )

    def open_range(self, name: str, start: int, end: int) -> ObjectReader:
        key = self._check_key(name)
        if start < 0 or end < start:
            raise InvalidRangeError(0)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key, Range=f"bytes={start}-{end}")
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, name, "ranged get") from e

        length = end - start + 1
        returned = int(response.get("ContentLength", -1))
        total = _total_from_content_range(response.get("ContentRange"))
        if returned != length or total is None:
            # 对象在 stat 之后可能被改写，不能把不完整的范围当作成功
            response["Body"].close()
            raise BackendError(
                f"R2 returned {returned} bytes ({response.get('ContentRange')}) for '{name}' "
                f"range {start}-{end}, expected {length}"
            )
        return self._reader(key, response, total, length, start)

    def open_full(self, name: str) -> ObjectReader:
        key = self._check_key(name)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, name, "get") from e
        size = int(response.get("ContentLength", 0))
        return self._reader(key, response, size, size, 0)

    # ----------------------------------------------------------------- writes

    def put(self, name: str, data: Body, content_type: Optional[str] = None) -> str:
        key = self._check_key(name)
        try:
            response = self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type or guess_content_type(key),
                CacheControl=self.cache_control,
            )
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, name, "put") from e
        logger.info(f"Successfully uploaded {key} to R2")
        return response.get("ETag", "")

    def upload_file(self, local_path: str, name: str, content_type: Optional[str] = None):
        """Upload a local file with boto3's managed (multipart-capable) transfer."""
        key = self._check_key(name)
        extra_args = {
            "ContentType": content_type or guess_content_type(key),
            "CacheControl": self.cache_control,
        }
        try:
            self.client.upload_file(local_path, self.bucket, key, ExtraArgs=extra_args)
        except (ClientError, BotoCoreError, OSError) as e:
            raise self._translate(e, name, "upload") from e

    def download_file(self, name: str, local_path: str):
        key = self._check_key(name)
        os.makedirs(os.path.dirname(os.path.abspath(local_path)), exist_ok=True)
        try:
            self.client.download_file(self.bucket, key, local_path)
        except (ClientError, BotoCoreError, OSError) as e:
            raise self._translate(e, name, "download") from e

    def list(self, prefix: str = "", max_keys: Optional[int] = None) -> List[ObjectMetadata]:
        results: List[ObjectMetadata] = []
        paginator = self.client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix or ""):
                for item in page.get("Contents", []) or []:
                    key = item["Key"]
                    results.append(ObjectMetadata(
                        name=key,
                        size=int(item.get("Size", 0)),
                        content_type=guess_content_type(key),
                        last_modified=item.get("LastModified"),
                        etag=item.get("ETag", ""),
                    ))
                    if max_keys is not None and len(results) >= max_keys:
                        return results
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, prefix, "list") from e
        return results

    def list_dirs(self, prefix: str = "") -> List[str]:
        """一层 CommonPrefixes，不会遍历前缀下的对象"""
        if prefix and not prefix.endswith("/"):
            prefix += "/"
        names: List[str] = []
        paginator = self.client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix, Delimiter="/"):
                for item in page.get("CommonPrefixes", []) or []:
                    names.append(item["Prefix"][len(prefix):].rstrip("/"))
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, prefix, "list") from e
        return names

    def delete_prefix(self, prefix: str) -> int:
        if not prefix:
            raise InvalidNameError("Refusing to delete the whole bucket")
        keys = [item.name for item in self.list(prefix)]
        for i in range(0, len(keys), _DELETE_BATCH):
            batch = keys[i:i + _DELETE_BATCH]
            try:
                response = self.client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
                )
            except (ClientError, BotoCoreError) as e:
                raise self._translate(e, prefix, "delete") from e
            errors = response.get("Errors") or []
            if errors:
                raise BackendError(f"R2 failed to delete {len(errors)} objects under '{prefix}': {errors[0]}")
        if keys:
            logger.info(f"Deleted {len(keys)} objects under {prefix} from R2")
        return len(keys)

    # --------------------------------------------------------------- presign

    def presigned_url(self, name: str, expires_in: int = 3600) -> str:
        key = self._check_key(name)
        if expires_in <= 0 or expires_in > self.max_presign_expiry:
            raise InvalidInputError(
                f"Maximum expiration time is {self.max_presign_expiry} seconds",
                details={"maxExpiresIn": self.max_presign_expiry},
            )
        try:
            url = self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, name, "presign") from e
        logger.info(f"Generated presigned URL for {key}, expires in {expires_in}s")
        return url
