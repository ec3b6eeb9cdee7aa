import asyncio
import io
import json
import os
import time
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote_plus

from PIL import Image as PILImage
from pydantic import BaseModel
from sqlalchemy.orm import sessionmaker
import structlog

from backend.image_processor.app.database import Image as ImageModel
from backend.image_processor.app.metrics import ProcessorMetrics
from backend.image_processor.app.storage import ObjectStorage

logger = structlog.get_logger(__name__)

UPLOAD_PREFIX = "uploads/"
RESIZED_PREFIX = "resized/"
MAX_WIDTH = 1920
JPEG_QUALITY = 85
DEFAULT_REGION = "us-east-1"
METADATA_FIELDS = ("title", "description", "category", "location", "photographer")


class ProcessingOutcome(BaseModel):
    """
    Result of handling one object-created record.

    A failed outcome keeps whatever the pipeline had already produced so an
    operator can clean up by hand: ``resized_key`` is set when the resized copy
    was written, ``image_id`` when the row was inserted. The original upload is
    only removed for ``processed`` outcomes.
    """
    status: str  # processed | skipped | failed
    bucket: str
    source_key: str
    failed_step: Optional[str] = None
    error: Optional[str] = None
    resized_key: Optional[str] = None
    resized_url: Optional[str] = None
    image_id: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.status != "failed"

    def response_body(self) -> Any:
        if self.status == "skipped":
            return "Skipped: Not an original upload."
        if self.status == "failed":
            return {"message": "Error processing image.", "error": self.error}
        return {
            "message": "Image processed, added to gallery, and original deleted.",
            "newUrl": self.resized_url,
            "newImageId": self.image_id,
        }

    def to_lambda_response(self) -> Dict[str, Any]:
        body = self.response_body()
        return {
            "statusCode": 200 if self.succeeded else 500,
            "body": body if isinstance(body, str) else json.dumps(body),
        }


def parse_record(record: Dict[str, Any], default_region: Optional[str] = None) -> Tuple[str, str, str]:
    """Pull bucket, decoded key and region out of an S3 event record"""
    s3 = record["s3"]
    bucket = s3["bucket"]["name"]
    key = unquote_plus(s3["object"]["key"])
    region = record.get("awsRegion") or default_region or DEFAULT_REGION
    return bucket, key, region


def resized_key_for(source_key: str) -> str:
    """uploads/<name>.<ext> -> resized/<name>.jpg"""
    base_filename = os.path.splitext(os.path.basename(source_key))[0]
    return f"{RESIZED_PREFIX}{base_filename}.jpg"


def build_public_url(bucket: str, key: str, region: str, public_base_url: Optional[str] = None) -> str:
    if public_base_url:
        return f"{public_base_url.rstrip('/')}/{bucket}/{key}"
    return f"https://{bucket}.s3.{region}.amazonaws.com/{key}"


def resize_image(contents: bytes, max_width: int = MAX_WIDTH, quality: int = JPEG_QUALITY) -> bytes:
    """Scale down to max_width keeping aspect ratio and re-encode as JPEG"""
    with PILImage.open(io.BytesIO(contents)) as image:
        image.load()

        if image.width > max_width:
            height = max(1, round(image.height * max_width / image.width))
            image = image.resize((max_width, height), PILImage.LANCZOS)

        # JPEG has no alpha channel or palette
        if image.mode != "RGB":
            image = image.convert("RGB")

        output = io.BytesIO()
        image.save(output, format="JPEG", quality=quality)
        return output.getvalue()


class ImageProcessor:
    """Turns an original under uploads/ into a gallery entry"""

    def __init__(self, object_storage: ObjectStorage, session_factory: sessionmaker,
                 metrics: Optional[ProcessorMetrics] = None,
                 default_region: Optional[str] = None,
                 public_base_url: Optional[str] = None):
        self.storage = object_storage
        self.session_factory = session_factory
        self.metrics = metrics or ProcessorMetrics()
        self.default_region = default_region
        self.public_base_url = public_base_url

    async def handle_event(self, event: Dict[str, Any]) -> List[ProcessingOutcome]:
        """Process every record of an object-created event in order"""
        outcomes = []
        for record in event.get("Records", []):
            outcomes.append(await self.process_record(record))
        return outcomes

    async def process_record(self, record: Dict[str, Any]) -> ProcessingOutcome:
        try:
            bucket, key, region = parse_record(record, self.default_region)
        except (KeyError, TypeError) as e:
            logger.error("Malformed event record", error=str(e))
            return ProcessingOutcome(status="failed", bucket="", source_key="",
                                     failed_step="parse", error=f"Malformed event record: {e}")
        return await self.process(bucket, key, region)

    async def process(self, bucket: str, key: str, region: str = DEFAULT_REGION) -> ProcessingOutcome:
        start_time = time.time()
        outcome = await self._run(bucket, key, region)
        self.metrics.record_outcome(outcome.status, time.time() - start_time, outcome.failed_step)
        return outcome

    async def _run(self, bucket: str, key: str, region: str) -> ProcessingOutcome:
        # Resized copies land in the same bucket and fire the trigger again
        if not key.startswith(UPLOAD_PREFIX):
            logger.info("Object is not in uploads/, skipping", bucket=bucket, key=key)
            return ProcessingOutcome(status="skipped", bucket=bucket, source_key=key)

        outcome = ProcessingOutcome(status="failed", bucket=bucket, source_key=key)
        log = logger.bind(bucket=bucket, key=key)

        try:
            metadata = await self.storage.get_metadata(bucket, key)
            original = await self.storage.get_file(bucket, key)
            log.info("Original fetched", size=len(original), metadata=metadata)
        except Exception as e:
            return self._fail(outcome, "fetch", e)

        loop = asyncio.get_running_loop()
        try:
            resized = await loop.run_in_executor(None, resize_image, original)
            self.metrics.record_resized_size(len(resized))
            log.info("Image resized", original_size=len(original), resized_size=len(resized))
        except Exception as e:
            return self._fail(outcome, "resize", e)

        dest_key = resized_key_for(key)
        try:
            await self.storage.store_file(bucket, dest_key, resized, "image/jpeg", metadata)
            outcome.resized_key = dest_key
            outcome.resized_url = build_public_url(bucket, dest_key, region, self.public_base_url)
            log.info("Resized image stored", resized_key=dest_key, url=outcome.resized_url)
        except Exception as e:
            return self._fail(outcome, "store", e)

        try:
            outcome.image_id = await loop.run_in_executor(
                None, self._insert_record, metadata, outcome.resized_url, dest_key
            )
            log.info("Database insert successful", image_id=outcome.image_id)
        except Exception as e:
            return self._fail(outcome, "insert", e)

        try:
            await self.storage.delete_file(bucket, key)
        except Exception as e:
            return self._fail(outcome, "delete", e)

        outcome.status = "processed"
        log.info("Image processed, added to gallery, and original deleted", image_id=outcome.image_id)
        return outcome

    def _insert_record(self, metadata: Dict[str, str], url: str, key: str) -> int:
        # The session returns its connection to the pool on every exit path
        with self.session_factory() as db:
            image = ImageModel(
                **{field: metadata.get(field, "") for field in METADATA_FIELDS},
                s3_url=url,
                s3_key=key
            )
            db.add(image)
            db.commit()
            return image.id

    def _fail(self, outcome: ProcessingOutcome, step: str, error: Exception) -> ProcessingOutcome:
        outcome.failed_step = step
        outcome.error = str(error)
        logger.error(
            "Image processing failed, original upload will NOT be deleted" if step != "delete"
            else "Failed to delete original upload",
            bucket=outcome.bucket,
            key=outcome.source_key,
            step=step,
            resized_key=outcome.resized_key,
            image_id=outcome.image_id,
            error=str(error)
        )
        return outcome
