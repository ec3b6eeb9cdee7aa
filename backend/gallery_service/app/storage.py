from minio import Minio
from minio.credentials import ChainedProvider, EnvAWSProvider, IamAwsProvider
from minio.error import S3Error
from fastapi.concurrency import run_in_threadpool
import structlog
from backend.gallery_service.app.config import Settings
import io
from typing import Dict
from urllib.parse import quote

logger = structlog.get_logger(__name__)


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


class ObjectStorage:
    """Writes originals into the gallery bucket"""

    def __init__(self, client: Minio, bucket_name: str):
        self.client = client
        self.bucket_name = bucket_name

    def check_connection(self) -> bool:
        """Check the bucket is reachable"""
        try:
            if not self.client.bucket_exists(self.bucket_name):
                raise Exception(f"Bucket {self.bucket_name} does not exist")
            return True
        except S3Error as e:
            logger.error("Object storage connection failed", error=str(e))
            raise

    async def store_file(self, key: str, contents: bytes, content_type: str, metadata: Dict[str, str]) -> str:
        """Store file with its descriptive metadata and return the object key"""
        try:
            await run_in_threadpool(
                self.client.put_object,
                bucket_name=self.bucket_name,
                object_name=key,
                data=io.BytesIO(contents),
                length=len(contents),
                content_type=content_type,
                metadata=encode_metadata(metadata)
            )
            logger.info("File stored successfully", bucket=self.bucket_name, key=key, size=len(contents))
            return key

        except S3Error as e:
            logger.error("Failed to store file", key=key, error=str(e))
            raise
