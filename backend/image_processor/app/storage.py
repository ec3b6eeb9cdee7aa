from minio import Minio
from minio.credentials import ChainedProvider, EnvAWSProvider, IamAwsProvider
from minio.error import S3Error
import structlog
from backend.image_processor.app.config import Settings
import asyncio
import functools
import io
from typing import Dict, Iterable
from urllib.parse import quote, unquote

logger = structlog.get_logger(__name__)

USER_METADATA_PREFIX = "x-amz-meta-"


def create_client(settings: Settings) -> Minio:
    """Build the S3 client from explicit keys, falling back to the AWS credential chain"""
    if settings.aws_access_key_id and settings.aws_secret_access_key:
        return Minio(
            settings.s3_endpoint,
            access_key=settings.aws_access_key_id,
            secret_key=settings.aws_secret_access_key,
            region=settings.aws_region,
            secure=settings.s3_secure
        )
    return Minio(
        settings.s3_endpoint,
        region=settings.aws_region,
        secure=settings.s3_secure,
        credentials=ChainedProvider([EnvAWSProvider(), IamAwsProvider()])
    )


def encode_metadata(metadata: Dict[str, str]) -> Dict[str, str]:
    """Percent-encode metadata values; object headers only carry US-ASCII"""
    return {name: quote(value, safe="") for name, value in metadata.items()}


def user_metadata(headers) -> Dict[str, str]:
    """Extract user-defined metadata from object headers, dropping the x-amz-meta- prefix"""
    metadata = {}
    for name, value in headers.items():
        lowered = name.lower()
        if lowered.startswith(USER_METADATA_PREFIX):
            metadata[lowered[len(USER_METADATA_PREFIX):]] = unquote(value)
    return metadata


async def _in_thread(func, *args, **kwargs):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


class ObjectStorage:
    """Object operations used by the processing pipeline; every failure is raised"""

    def __init__(self, client: Minio):
        self.client = client

    async def get_metadata(self, bucket_name: str, key: str) -> Dict[str, str]:
        try:
            stat = await _in_thread(self.client.stat_object, bucket_name, key)
            return user_metadata(stat.metadata or {})
        except S3Error as e:
            logger.error("Failed to stat object", bucket=bucket_name, key=key, error=str(e))
            raise

    def _read_object(self, bucket_name: str, key: str) -> bytes:
        response = None
        try:
            response = self.client.get_object(bucket_name, key)
            return response.read()
        finally:
            if response is not None:
                response.close()
                response.release_conn()

    async def get_file(self, bucket_name: str, key: str) -> bytes:
        try:
            return await _in_thread(self._read_object, bucket_name, key)
        except S3Error as e:
            logger.error("Failed to retrieve file", bucket=bucket_name, key=key, error=str(e))
            raise

    async def store_file(self, bucket_name: str, key: str, contents: bytes,
                         content_type: str, metadata: Dict[str, str]) -> str:
        try:
            await _in_thread(
                self.client.put_object,
                bucket_name=bucket_name,
                object_name=key,
                data=io.BytesIO(contents),
                length=len(contents),
                content_type=content_type,
                metadata=encode_metadata(metadata)
            )
            logger.info("File stored successfully", bucket=bucket_name, key=key, size=len(contents))
            return key
        except S3Error as e:
            logger.error("Failed to store file", bucket=bucket_name, key=key, error=str(e))
            raise

    async def delete_file(self, bucket_name: str, key: str):
        try:
            await _in_thread(self.client.remove_object, bucket_name, key)
            logger.info("File deleted successfully", bucket=bucket_name, key=key)
        except S3Error as e:
            logger.error("Failed to delete file", bucket=bucket_name, key=key, error=str(e))
            raise

    def listen(self, bucket_name: str, prefix: str, events: Iterable[str]):
        """Subscribe to bucket notifications (MinIO server extension)"""
        return self.client.listen_bucket_notification(bucket_name, prefix=prefix, events=tuple(events))
