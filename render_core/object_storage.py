from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from render_core.errors import render_error

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def _clean_segment(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return cleaned or "object"


def build_render_key(*, quote_id: str, ts_ms: int) -> str:
    return f"renders/render-{_clean_segment(quote_id)}-{int(ts_ms)}.png"


@dataclass(frozen=True)
class ObjectStorageConfig:
    backend: str
    bucket: str
    root: str
    prefix: str
    endpoint: str
    region: str
    access_key: str
    secret_key: str
    force_path_style: bool
    public_base_url: str

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ObjectStorageConfig":
        env = os.environ if environ is None else environ
        return cls(
            backend=env.get("RENDER_OBJECT_STORAGE_BACKEND", "local").strip().lower() or "local",
            bucket=env.get("OBJECT_STORAGE_BUCKET", "renders").strip() or "renders",
            root=env.get("OBJECT_STORAGE_ROOT", "/tmp/render-object-storage").strip() or "/tmp/render-object-storage",
            prefix=env.get("OBJECT_STORAGE_PREFIX", "").strip(),
            endpoint=env.get("OBJECT_STORAGE_ENDPOINT", "").strip(),
            region=env.get("OBJECT_STORAGE_REGION", "").strip(),
            access_key=env.get("OBJECT_STORAGE_ACCESS_KEY", "").strip(),
            secret_key=env.get("OBJECT_STORAGE_SECRET_KEY", "").strip(),
            force_path_style=env.get("OBJECT_STORAGE_FORCE_PATH_STYLE", "true").strip().lower()
            not in {"0", "false", "no", "off"},
            public_base_url=env.get("OBJECT_STORAGE_PUBLIC_BASE_URL", "").strip().rstrip("/"),
        )


class ObjectStorageBackend:
    backend_name = "base"

    def put_object(self, *, key: str, content_bytes: bytes, content_type: str | None = None) -> str:
        """Store bytes under ``key`` and return a publicly fetchable URL."""
        raise NotImplementedError

    def get_object(self, *, key: str) -> bytes:
        raise NotImplementedError


class DisabledObjectStorage(ObjectStorageBackend):
    backend_name = "disabled"

    def put_object(self, *, key: str, content_bytes: bytes, content_type: str | None = None) -> str:
        raise render_error("OBJECT_STORAGE_NOT_CONFIGURED")

    def get_object(self, *, key: str) -> bytes:
        raise render_error("OBJECT_STORAGE_NOT_CONFIGURED")


class LocalObjectStorage(ObjectStorageBackend):
    backend_name = "local"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        self._bucket = config.bucket
        self._root = Path(config.root)
        self._prefix = config.prefix.strip("/")
        self._public_base_url = config.public_base_url
        self._root.mkdir(parents=True, exist_ok=True)

    def put_object(self, *, key: str, content_bytes: bytes, content_type: str | None = None) -> str:
        full_key = self._full_key(key)
        path = self._path_for_key(full_key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content_bytes)
            self._write_meta(
                path,
                {"content_type": content_type or "application/octet-stream", "created_at": _now_iso()},
            )
        except OSError as exc:
            raise render_error("UPLOAD_FAILED", f"local object write failed: {exc}") from exc
        return self._url_for_key(full_key)

    def get_object(self, *, key: str) -> bytes:
        path = self._path_for_key(self._full_key(key))
        if not path.exists():
            raise FileNotFoundError(key)
        return path.read_bytes()

    def reset(self) -> None:
        if not self._root.exists():
            return
        for path in sorted(self._root.rglob("*"), reverse=True):
            if path.is_file():
                path.unlink()
            elif path.is_dir():
                path.rmdir()

    def _full_key(self, key: str) -> str:
        key = key.lstrip("/")
        if self._prefix and not key.startswith(f"{self._prefix}/"):
            return f"{self._prefix}/{key}"
        return key

    def _url_for_key(self, key: str) -> str:
        if self._public_base_url:
            return f"{self._public_base_url}/{key}"
        return f"object://{self.backend_name}/{self._bucket}/{key}"

    def _path_for_key(self, key: str) -> Path:
        return self._root / self._bucket / key

    def _write_meta(self, path: Path, meta: dict[str, Any]) -> None:
        meta_path = Path(f"{path}.meta.json")
        meta_path.write_text(json.dumps(meta, ensure_ascii=True, sort_keys=True), encoding="utf-8")


class S3ObjectStorage(ObjectStorageBackend):
    backend_name = "s3"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        try:
            import boto3  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("boto3 is required for s3 object storage backend") from exc
        self._bucket = config.bucket
        self._prefix = config.prefix.strip("/")
        self._region = config.region
        self._endpoint = config.endpoint.rstrip("/")
        self._public_base_url = config.public_base_url
        session = boto3.session.Session(
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_key or None,
            region_name=config.region or None,
        )
        self._client = session.client(
            "s3",
            endpoint_url=config.endpoint or None,
            config=boto3.session.Config(s3={"addressing_style": "path" if config.force_path_style else "auto"}),
        )

    def put_object(self, *, key: str, content_bytes: bytes, content_type: str | None = None) -> str:
        full_key = self._full_key(key)
        try:
            self._client.put_object(
                Bucket=self._bucket,
                Key=full_key,
                Body=content_bytes,
                ContentType=content_type or "application/octet-stream",
            )
        except Exception as exc:
            logger.warning("s3 upload failed bucket=%s key=%s error=%s", self._bucket, full_key, type(exc).__name__)
            raise render_error("UPLOAD_FAILED", f"upload failed: {exc}") from exc
        return self._url_for_key(full_key)

    def get_object(self, *, key: str) -> bytes:
        response = self._client.get_object(Bucket=self._bucket, Key=self._full_key(key))
        return response["Body"].read()

    def _full_key(self, key: str) -> str:
        key = key.lstrip("/")
        if self._prefix:
            return f"{self._prefix}/{key}"
        return key

    def _url_for_key(self, key: str) -> str:
        if self._public_base_url:
            return f"{self._public_base_url}/{key}"
        if self._endpoint:
            return f"{self._endpoint}/{self._bucket}/{key}"
        region = self._region or "us-east-1"
        return f"https://{self._bucket}.s3.{region}.amazonaws.com/{key}"


def create_object_storage_from_env(environ: Mapping[str, str] | None = None) -> ObjectStorageBackend:
    config = ObjectStorageConfig.from_env(environ)
    if config.backend == "s3":
        return S3ObjectStorage(config=config)
    if config.backend in {"disabled", "none"}:
        return DisabledObjectStorage()
    if config.backend != "local":
        raise RuntimeError(f"unsupported object storage backend: {config.backend}")
    return LocalObjectStorage(config=config)
