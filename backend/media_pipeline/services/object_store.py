import asyncio
import os
from dataclasses import dataclass
from typing import Optional

import boto3
from botocore.config import Config

from media_pipeline.core.config import Settings


@dataclass
class UploadResult:
    url: str
    path: str
    size: int


class ObjectStore:
    """Blob storage addressed by deterministic `{kind}/{job_id}/{filename}` paths."""

    def generate_path(self, kind: str, job_id: str, filename: str) -> str:
        return f"{kind}/{job_id}/{filename}"

    def generate_filename(self, label: str, extension: str) -> str:
        return f"{label}.{extension.lstrip('.')}"

    async def upload(self, data: bytes, path: str, content_type: Optional[str] = None) -> UploadResult:
        await asyncio.to_thread(self._put, path, data, content_type)
        return UploadResult(url=self.get_url(path), path=path, size=len(data))

    async def delete(self, path: str) -> None:
        await asyncio.to_thread(self._delete, path)

    def _put(self, path: str, data: bytes, content_type: Optional[str]) -> None:
        raise NotImplementedError

    def _delete(self, path: str) -> None:
        raise NotImplementedError

    def get_url(self, path: str) -> str:
        raise NotImplementedError


class R2ObjectStore(ObjectStore):
    def __init__(
        self,
        bucket: str,
        endpoint: str,
        access_key_id: str,
        secret_access_key: str,
        public_url: Optional[str] = None,
        presigned_ttl: int = 3600,
    ):
        self.bucket = bucket
        self.public_url = public_url
        self.presigned_ttl = presigned_ttl
        self.client = boto3.client(
            "s3",
            endpoint_url=endpoint,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name="auto",
            config=Config(signature_version="s3v4"),
        )

    def _put(self, path: str, data: bytes, content_type: Optional[str]) -> None:
        extra = {"ContentType": content_type} if content_type else {}
        self.client.put_object(Bucket=self.bucket, Key=path, Body=data, **extra)

    def _delete(self, path: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=path)

    def get_url(self, path: str) -> str:
        if self.public_url:
            return f"{self.public_url.rstrip('/')}/{path.lstrip('/')}"
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": path},
            ExpiresIn=self.presigned_ttl,
        )


class LocalObjectStore(ObjectStore):
    """Writes under `root`; files are served by the API at `base_url`."""

    def __init__(self, root: str, base_url: str = "/media"):
        self.root = root
        self.base_url = base_url

    def _local_path(self, path: str) -> str:
        return os.path.join(self.root, *path.split("/"))

    def _put(self, path: str, data: bytes, content_type: Optional[str]) -> None:
        destination = self._local_path(path)
        os.makedirs(os.path.dirname(destination), exist_ok=True)
        with open(destination, "wb") as f:
            f.write(data)

    def _delete(self, path: str) -> None:
        destination = self._local_path(path)
        if os.path.exists(destination):
            os.remove(destination)

    def get_url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"


def get_object_store(settings: Settings) -> ObjectStore:
    if settings.r2_enabled:
        return R2ObjectStore(
            bucket=settings.r2_bucket,
            endpoint=settings.r2_endpoint,
            access_key_id=settings.r2_access_key_id,
            secret_access_key=settings.r2_secret_access_key,
            public_url=settings.r2_public_url,
            presigned_ttl=settings.presigned_url_ttl,
        )
    return LocalObjectStore(settings.media_dir)
