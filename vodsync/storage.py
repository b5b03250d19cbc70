"""Durable key-value backends for job pointers that must survive restarts."""

from __future__ import annotations

import json
import os
import tempfile
import threading
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional, Protocol

import boto3
from botocore.client import BaseClient
from botocore.exceptions import ClientError

from .settings import settings


class KeyValueStore(Protocol):
    """Interface for the small string values the job controller persists."""

    def get(self, key: str) -> Optional[str]:
        """Return the stored value for ``key`` or ``None``."""

    def set(self, key: str, value: str) -> None:
        """Persist ``value`` under ``key``."""

    def delete(self, key: str) -> None:
        """Remove ``key``; missing keys are ignored."""


class MemoryKeyValueStore:
    """Process-local store; state is lost on restart."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self.data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = str(value)

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class LocalKeyValueStore:
    """All keys in one JSON document, rewritten atomically on every change."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path).resolve()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, str]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw or "{}")
        except json.JSONDecodeError:
            return {}
        return {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}

    def _dump(self, data: Dict[str, str]) -> None:
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".kv-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, sort_keys=True)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = str(value)
            self._dump(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._dump(data)


class S3KeyValueStore:
    """One S3 object per key under the configured prefix."""

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        *,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        region_name: Optional[str] = None,
        client: Optional[BaseClient] = None,
    ) -> None:
        if not bucket:
            raise ValueError("S3 bucket name is required for S3KeyValueStore")
        self.bucket = bucket
        self.prefix = prefix.strip("/").strip("\\")
        self._client: BaseClient = client or boto3.client(
            "s3",
            region_name=region_name,
            aws_access_key_id=aws_access_key_id,
            aws_secret_access_key=aws_secret_access_key,
        )

    def _object_key(self, key: str) -> str:
        normalized = f"state/{key}"
        if self.prefix:
            return f"{self.prefix}/{normalized}"
        return normalized

    def get(self, key: str) -> Optional[str]:
        try:
            obj = self._client.get_object(Bucket=self.bucket, Key=self._object_key(key))
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in {"NoSuchKey", "404"}:
                return None
            raise
        return obj["Body"].read().decode("utf-8")

    def set(self, key: str, value: str) -> None:
        self._client.put_object(
            Bucket=self.bucket,
            Key=self._object_key(key),
            Body=str(value).encode("utf-8"),
            ContentType="text/plain",
        )

    def delete(self, key: str) -> None:
        self._client.delete_object(Bucket=self.bucket, Key=self._object_key(key))


@lru_cache()
def get_kv_store() -> KeyValueStore:
    """Instantiate the configured durable backend."""

    backend = settings.durable_backend.lower()
    if backend == "memory":
        return MemoryKeyValueStore()
    if backend == "local":
        return LocalKeyValueStore(settings.durable_path)
    if backend == "s3":
        return S3KeyValueStore(
            bucket=settings.s3_bucket or "",
            prefix=settings.s3_prefix,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            region_name=settings.aws_region,
        )
    raise RuntimeError(f"Unsupported durable backend: {settings.durable_backend}")


class DurableJobState:
    """The three durable pointers kept per job class.

    ``<class>JobId`` and ``<class>JobMatchId`` name the job in flight;
    ``<class>CompletedMatchId`` names the last match whose result is ready.
    """

    def __init__(self, store: KeyValueStore, job_class: str) -> None:
        self.store = store
        self.job_class = job_class
        self.job_id_key = f"{job_class}JobId"
        self.match_id_key = f"{job_class}JobMatchId"
        self.completed_key = f"{job_class}CompletedMatchId"

    @property
    def active_job_id(self) -> Optional[str]:
        return self.store.get(self.job_id_key)

    @property
    def active_match_id(self) -> Optional[str]:
        return self.store.get(self.match_id_key)

    @property
    def completed_match_id(self) -> Optional[str]:
        return self.store.get(self.completed_key)

    def save_active(self, job_id: str, match_id: str) -> None:
        self.store.set(self.job_id_key, job_id)
        self.store.set(self.match_id_key, match_id)

    def clear_active(self) -> None:
        self.store.delete(self.job_id_key)
        self.store.delete(self.match_id_key)

    def mark_completed(self, match_id: str) -> None:
        self.clear_active()
        self.store.set(self.completed_key, match_id)

    def clear_completed(self) -> None:
        self.store.delete(self.completed_key)

    def clear_all(self) -> None:
        self.clear_active()
        self.clear_completed()
