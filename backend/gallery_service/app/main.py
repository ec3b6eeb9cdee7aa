from fastapi import FastAPI, File, Form, UploadFile, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from contextlib import asynccontextmanager
import structlog
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
import logging
import os
import secrets
import time
from typing import List, Optional

from backend.gallery_service.app.config import settings
from backend.gallery_service.app.database import (
    get_db, create_db_engine, create_session_factory, init_db, check_connection
)
from backend.gallery_service.app import schemas, crud, storage

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

UPLOAD_PREFIX = "uploads/"

# Prometheus metrics
UPLOAD_COUNT = Counter('gallery_uploads_total', 'Total uploads', ['status'])
UPLOAD_DURATION = Histogram('gallery_upload_duration_seconds', 'Upload processing duration')
FILE_SIZE_HISTOGRAM = Histogram('gallery_upload_file_size_bytes', 'Upload file sizes')
GALLERY_REQUESTS = Counter('gallery_list_requests_total', 'Gallery listing requests', ['status'])


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    logger.info("Starting Gallery Service", version=settings.api_version)

    engine = create_db_engine(settings)
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)
    app.state.storage = storage.ObjectStorage(storage.create_client(settings), settings.aws_bucket_name)

    try:
        init_db(engine)
        check_connection(engine)
        logger.info("Connected to database successfully", host=settings.db_host)
    except Exception as e:
        # The service still starts; /health reports the failure
        logger.error("Failed to connect to database", error=str(e))

    logger.info(
        "Gallery Service configured",
        port=settings.port,
        database_host=settings.db_host,
        bucket=settings.aws_bucket_name,
        upload_prefix=UPLOAD_PREFIX
    )

    yield

    logger.info("Shutting down Gallery Service")
    engine.dispose()


app = FastAPI(
    title=settings.api_title,
    description="Photo upload and gallery listing for WildLens",
    version=settings.api_version,
    lifespan=lifespan
)


def get_storage(request: Request) -> storage.ObjectStorage:
    return request.app.state.storage


def generate_upload_key(filename: str) -> str:
    """Build a collision-resistant key under the uploads/ prefix"""
    extension = os.path.splitext(filename)[1]
    return f"{UPLOAD_PREFIX}{int(time.time() * 1000)}-{secrets.token_hex(16)}{extension}"


def error_response(message: str, status_code: int, error: Optional[str] = None) -> JSONResponse:
    body = schemas.UploadResponse(success=False, message=message, error=error)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


@app.get("/")
async def root():
    return {"message": settings.api_title, "version": settings.api_version}


@app.get("/health")
async def health_check(request: Request):
    try:
        await run_in_threadpool(check_connection, request.app.state.engine)
        await run_in_threadpool(request.app.state.storage.check_connection)
        return {"status": "healthy", "database": "connected", "storage": "connected"}
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        raise HTTPException(status_code=503, detail="Service unhealthy")


@app.get("/metrics")
async def metrics():
    if not settings.metrics_enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/api/gallery", response_model=List[schemas.Image])
async def list_gallery(db: Session = Depends(get_db)):
    """Fetch every processed image, newest first"""
    logger.info("Gallery requested")
    try:
        images = await run_in_threadpool(crud.get_images, db)
    except SQLAlchemyError as e:
        GALLERY_REQUESTS.labels(status="error").inc()
        logger.error("Error fetching gallery", error=str(e))
        return error_response("Failed to fetch gallery.", 500)

    GALLERY_REQUESTS.labels(status="success").inc()
    return images


@app.post("/upload", response_model=schemas.UploadResponse, response_model_exclude_none=True)
async def upload_image(
    imageFile: Optional[UploadFile] = File(None),
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    location: Optional[str] = Form(None),
    photographer: Optional[str] = Form(None),
    object_storage: storage.ObjectStorage = Depends(get_storage)
):
    """
    Store the original under uploads/; resizing and cataloguing happen
    asynchronously in the image processor.
    """
    logger.info("Upload request received")
    start_time = time.time()

    if imageFile is None or not imageFile.filename:
        UPLOAD_COUNT.labels(status="invalid").inc()
        return error_response("No image file provided.", 400)

    try:
        contents = await imageFile.read()
        FILE_SIZE_HISTOGRAM.observe(len(contents))

        metadata = schemas.ImageMetadata.from_form(
            title=title,
            description=description,
            category=category,
            location=location,
            photographer=photographer
        )
        key = generate_upload_key(imageFile.filename)

        logger.info("Uploading original", bucket=object_storage.bucket_name, key=key)
        await object_storage.store_file(
            key,
            contents,
            imageFile.content_type or "application/octet-stream",
            metadata.as_object_metadata()
        )

        UPLOAD_COUNT.labels(status="success").inc()
        return schemas.UploadResponse(
            success=True,
            message="File uploaded. Processing will be done by the image processor."
        )

    except Exception as e:
        UPLOAD_COUNT.labels(status="error").inc()
        logger.error("Upload failed", error=str(e))
        return error_response("S3 Upload process failed.", 500, error=str(e))
    finally:
        UPLOAD_DURATION.observe(time.time() - start_time)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=getattr(logging, settings.log_level.upper()))
    uvicorn.run(app, host=settings.api_host, port=settings.port)
