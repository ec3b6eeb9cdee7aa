import os
import tempfile

# Settings are read at import time by both services
_test_db_dir = tempfile.mkdtemp(prefix="wildlens-tests-")
os.environ.setdefault("DB_HOST", "localhost")
os.environ.setdefault("DB_USER", "wildlens")
os.environ.setdefault("DB_PASSWORD", "wildlens")
os.environ.setdefault("DB_NAME", "wildlens")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_test_db_dir, 'wildlens.db')}")
os.environ.setdefault("AWS_REGION", "eu-west-2")
os.environ.setdefault("AWS_BUCKET_NAME", "wildlens-test")
os.environ.setdefault("AWS_ACCESS_KEY_ID", "test-access-key")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test-secret-key")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import io
from typing import Dict, Optional, Set

import pytest
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend.image_processor.app.database import Base as ProcessorBase
from backend.image_processor.app.image_processor import ImageProcessor
from backend.image_processor.app.metrics import ProcessorMetrics

BUCKET = "wildlens-test"


class InMemoryObjectStore:
    """Stand-in for the S3 bucket, with per-operation failure injection"""

    def __init__(self):
        self.objects: Dict[tuple, dict] = {}
        self.calls = []
        self.fail_on: Set[str] = set()

    def _record(self, operation: str, bucket: str, key: str):
        self.calls.append((operation, bucket, key))
        if operation in self.fail_on:
            raise ConnectionError(f"{operation} failed for {key}")

    def exists(self, bucket: str, key: str) -> bool:
        return (bucket, key) in self.objects

    def keys(self, bucket: str = BUCKET):
        return sorted(key for (b, key) in self.objects if b == bucket)

    def put(self, bucket: str, key: str, contents: bytes, content_type: str = "image/jpeg",
            metadata: Optional[Dict[str, str]] = None):
        self.objects[(bucket, key)] = {
            "data": contents,
            "content_type": content_type,
            "metadata": dict(metadata or {}),
        }

    async def get_metadata(self, bucket_name: str, key: str) -> Dict[str, str]:
        self._record("get_metadata", bucket_name, key)
        return dict(self.objects[(bucket_name, key)]["metadata"])

    async def get_file(self, bucket_name: str, key: str) -> bytes:
        self._record("get_file", bucket_name, key)
        return self.objects[(bucket_name, key)]["data"]

    async def store_file(self, bucket_name: str, key: str, contents: bytes,
                         content_type: str, metadata: Dict[str, str]) -> str:
        self._record("store_file", bucket_name, key)
        self.put(bucket_name, key, contents, content_type, metadata)
        return key

    async def delete_file(self, bucket_name: str, key: str):
        self._record("delete_file", bucket_name, key)
        del self.objects[(bucket_name, key)]

    def writes(self):
        return [call for call in self.calls if call[0] in ("store_file", "delete_file")]


class UploadBucket:
    """Gallery-service view of one bucket in the in-memory store"""

    def __init__(self, store: InMemoryObjectStore, bucket_name: str = BUCKET):
        self.store = store
        self.bucket_name = bucket_name

    def check_connection(self) -> bool:
        return True

    async def store_file(self, key: str, contents: bytes, content_type: str, metadata: Dict[str, str]) -> str:
        return await self.store.store_file(self.bucket_name, key, contents, content_type, metadata)


def make_image_bytes(width: int, height: int, mode: str = "RGB", format: str = "JPEG") -> bytes:
    color = (34, 139, 34, 255) if mode == "RGBA" else "forestgreen"
    img = Image.new(mode, (width, height), color=color)
    img_bytes = io.BytesIO()
    img.save(img_bytes, format=format)
    return img_bytes.getvalue()


@pytest.fixture
def object_store():
    return InMemoryObjectStore()


@pytest.fixture
def upload_bucket(object_store):
    return UploadBucket(object_store)


@pytest.fixture
def image_factory():
    return make_image_bytes


@pytest.fixture
def db_engine():
    """In-memory SQLite shared by every session of one test"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    ProcessorBase.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def processor(object_store, session_factory):
    return ImageProcessor(
        object_store,
        session_factory,
        metrics=ProcessorMetrics(),
        default_region="eu-west-2"
    )


@pytest.fixture
def fox_metadata():
    return {
        "title": "Fox",
        "description": "",
        "category": "Mammal",
        "location": "Unknown",
        "photographer": "Anonymous",
    }


@pytest.fixture
def large_test_image():
    """3000x2000 JPEG, wider than the gallery maximum"""
    return make_image_bytes(3000, 2000)


@pytest.fixture
def small_test_image():
    return make_image_bytes(800, 600)


@pytest.fixture
def transparent_test_image():
    return make_image_bytes(2400, 1000, mode="RGBA", format="PNG")


@pytest.fixture
def s3_event():
    """Build an object-created event in the S3 notification format"""
    def _event(key: str, bucket: str = BUCKET, region: Optional[str] = "eu-west-2"):
        record = {
            "eventName": "ObjectCreated:Put",
            "s3": {
                "bucket": {"name": bucket},
                "object": {"key": key},
            },
        }
        if region is not None:
            record["awsRegion"] = region
        return {"Records": [record]}

    return _event


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test"
    )
    config.addinivalue_line(
        "markers", "unit: mark test as unit test"
    )
