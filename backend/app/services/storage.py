from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import ClientError

from app.core.config import Settings, settings as default_settings

STORAGE_ENV_VAR = "SIGNFLOW_STORAGE"


class BlobStore(Protocol):
    def get(self, key: str) -> bytes:
        ...

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        ...

    def delete(self, key: str) -> None:
        ...


def _clean_key(key: str) -> str:
    cleaned = (key or "").replace("\\", "/").strip("/")
    if not cleaned or any(part in ("", ".", "..") for part in cleaned.split("/")):
        raise ValueError(f"Invalid storage key {key!r}")
    return cleaned


@dataclass
class LocalStorage:
    base_dir: Path

    def __post_init__(self) -> None:
        self.base_dir = Path(self.base_dir).expanduser().resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.base_dir / _clean_key(key)

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            raise FileNotFoundError(f"Blob {key!r} not found in local storage")
        return path.read_bytes()

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:  # noqa: ARG002
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # write-then-rename keeps readers from seeing half-written files
        tmp_path = path.with_name(f".{path.name}.tmp")
        tmp_path.write_bytes(data)
        tmp_path.replace(path)
        return _clean_key(key)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


@dataclass
class S3Storage:
    bucket: str
    client: Any

    def get(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=_clean_key(key))
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise FileNotFoundError(f"Blob {key!r} not found in bucket {self.bucket}") from exc
            raise
        body = response.get("Body")
        return body.read() if body else b""

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        cleaned = _clean_key(key)
        self.client.put_object(Bucket=self.bucket, Key=cleaned, Body=data, ContentType=content_type)
        return cleaned

    def delete(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=_clean_key(key))


def get_storage(config: Settings | None = None) -> BlobStore:
    config = config or default_settings

    # An explicit local path always wins (tests and local development)
    env_override = os.getenv(STORAGE_ENV_VAR)
    if env_override:
        return LocalStorage(base_dir=Path(env_override))

    if config.s3_endpoint_url and config.s3_access_key and config.s3_secret_key and config.s3_bucket_documents:
        client = boto3.client(
            "s3",
            endpoint_url=config.s3_endpoint_url,
            aws_access_key_id=config.s3_access_key,
            aws_secret_access_key=config.s3_secret_key,
            config=BotoConfig(signature_version="s3v4"),
            region_name=config.s3_region,
        )
        return S3Storage(bucket=config.s3_bucket_documents, client=client)

    return LocalStorage(base_dir=Path(config.signflow_storage))
