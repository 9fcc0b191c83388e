from __future__ import annotations

import json
from pathlib import Path
from threading import Lock
from typing import Any, Dict

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError


class S3StorageClient:
    """Object storage for final videos and snapshots.

    Falls back to a process-local dict when no bucket credentials are configured,
    which is what the test suite and local development run against.
    """

    def __init__(
        self,
        bucket: str,
        access_key: str | None,
        secret_key: str | None,
        endpoint_url: str | None = None,
        region_name: str | None = None,
        public_url: str | None = None,
        addressing_style: str | None = None,
    ) -> None:
        self.bucket = (bucket or "").strip()
        self.access_key = (access_key or "").strip()
        self.secret_key = (secret_key or "").strip()
        self.endpoint_url = (endpoint_url or "").rstrip("/") or None
        self.region_name = (region_name or "").strip() or None
        self.public_url_base = (public_url or "").rstrip("/")
        self._memory: Dict[str, bytes] = {}
        self._memory_lock = Lock()
        self._client = None
        if self.is_configured():
            session = boto3.session.Session(
                aws_access_key_id=self.access_key,
                aws_secret_access_key=self.secret_key,
                region_name=self.region_name,
            )
            config = BotoConfig(s3={"addressing_style": (addressing_style or "virtual").lower()})
            self._client = session.client("s3", endpoint_url=self.endpoint_url, config=config)

    def is_configured(self) -> bool:
        return bool(self.bucket and self.access_key and self.secret_key)

    def upload_json(self, path: str, payload: dict[str, Any]) -> str:
        body = json.dumps(payload, ensure_ascii=False, indent=2)
        return self.upload_bytes(path, body.encode("utf-8"), content_type="application/json")

    def upload_bytes(
        self,
        path: str,
        content: bytes,
        content_type: str = "application/octet-stream",
    ) -> str:
        key = self._normalize_path(path)
        if self._client is None:
            with self._memory_lock:
                self._memory[key] = content
            return self.public_url(key)
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=content,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:  # pragma: no cover - AWS error surface
            raise ValueError(f"S3 upload failed: {exc}") from exc
        return self.public_url(key)

    def upload_file(self, path: str, local_path: str | Path, content_type: str = "video/mp4") -> str:
        key = self._normalize_path(path)
        if self._client is None:
            return self.upload_bytes(key, Path(local_path).read_bytes(), content_type=content_type)
        try:
            self._client.upload_file(
                str(local_path),
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type},
            )
        except (BotoCoreError, ClientError) as exc:  # pragma: no cover
            raise ValueError(f"S3 upload failed: {exc}") from exc
        return self.public_url(key)

    def download_bytes(self, path: str) -> bytes:
        key = self._normalize_path(path)
        if self._client is None:
            with self._memory_lock:
                if key not in self._memory:
                    raise ValueError("object not found in memory storage")
                return self._memory[key]
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            body = response.get("Body")
            if body is None:
                return b""
            return body.read()
        except (BotoCoreError, ClientError) as exc:  # pragma: no cover
            raise ValueError(f"S3 download failed: {exc}") from exc

    def exists(self, path: str) -> bool:
        key = self._normalize_path(path)
        if self._client is None:
            with self._memory_lock:
                return key in self._memory
        try:
            self._client.head_object(Bucket=self.bucket, Key=key)
        except ClientError:
            return False
        except BotoCoreError as exc:  # pragma: no cover
            raise ValueError(f"S3 head failed: {exc}") from exc
        return True

    def delete(self, path: str) -> None:
        key = self._normalize_path(path)
        if self._client is None:
            with self._memory_lock:
                self._memory.pop(key, None)
            return
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:  # pragma: no cover
            raise ValueError(f"S3 delete failed: {exc}") from exc

    def public_url(self, path: str) -> str:
        clean = self._normalize_path(path)
        if self.public_url_base:
            return f"{self.public_url_base}/{clean}"
        if self.endpoint_url:
            return f"{self.endpoint_url}/{self.bucket}/{clean}"
        return f"/{self.bucket}/{clean}"

    def _normalize_path(self, path: str | None) -> str:
        if not path:
            return ""
        return "/".join(part for part in path.strip().split("/") if part)
