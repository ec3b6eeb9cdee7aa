import asyncio
import threading
from unittest.mock import MagicMock

import pytest

from backend.image_processor.app.storage import ObjectStorage, encode_metadata, user_metadata
from backend.gallery_service.app.storage import ObjectStorage as UploadStorage

BUCKET = "wildlens-test"


class TestProcessorStorage:

    @pytest.fixture(autouse=True)
    def setup(self):
        self.client = MagicMock()
        self.storage = ObjectStorage(self.client)

    def test_user_metadata_strips_prefix(self):
        headers = {
            "Content-Type": "image/jpeg",
            "X-Amz-Meta-Title": "Fox",
            "x-amz-meta-category": "Mammal",
            "ETag": "abc"
        }

        assert user_metadata(headers) == {"title": "Fox", "category": "Mammal"}

    def test_get_metadata(self):
        self.client.stat_object.return_value = MagicMock(metadata={"X-Amz-Meta-Location": "Unknown"})

        assert asyncio.run(self.storage.get_metadata(BUCKET, "uploads/a.jpg")) == {"location": "Unknown"}
        self.client.stat_object.assert_called_once_with(BUCKET, "uploads/a.jpg")

    def test_get_file_releases_connection(self):
        response = self.client.get_object.return_value
        response.read.return_value = b"jpeg bytes"

        assert asyncio.run(self.storage.get_file(BUCKET, "uploads/a.jpg")) == b"jpeg bytes"
        response.close.assert_called_once()
        response.release_conn.assert_called_once()

    def test_get_file_releases_connection_on_read_error(self):
        response = self.client.get_object.return_value
        response.read.side_effect = ConnectionError("reset by peer")

        with pytest.raises(ConnectionError):
            asyncio.run(self.storage.get_file(BUCKET, "uploads/a.jpg"))
        response.release_conn.assert_called_once()

    def test_store_file_sends_metadata(self):
        asyncio.run(self.storage.store_file(BUCKET, "resized/a.jpg", b"data", "image/jpeg", {"title": "Fox"}))

        kwargs = self.client.put_object.call_args.kwargs
        assert kwargs["bucket_name"] == BUCKET
        assert kwargs["object_name"] == "resized/a.jpg"
        assert kwargs["length"] == 4
        assert kwargs["content_type"] == "image/jpeg"
        assert kwargs["metadata"] == {"title": "Fox"}

    def test_user_metadata_decodes_values(self):
        headers = {"X-Amz-Meta-Location": "Z%C3%BCrich", "X-Amz-Meta-Title": "Fox%20%26%20Cubs"}

        assert user_metadata(headers) == {"location": "Zürich", "title": "Fox & Cubs"}

    def test_store_file_encodes_non_ascii_metadata(self):
        metadata = {"location": "Zürich", "photographer": "Zoë Ōtsuka", "description": "50% cloud"}

        asyncio.run(self.storage.store_file(BUCKET, "resized/a.jpg", b"data", "image/jpeg", metadata))

        sent = self.client.put_object.call_args.kwargs["metadata"]
        assert all(value.isascii() for value in sent.values())
        assert sent["location"] == "Z%C3%BCrich"
        assert user_metadata({f"x-amz-meta-{k}": v for k, v in sent.items()}) == metadata

    def test_encode_metadata_leaves_plain_values(self):
        assert encode_metadata({"title": "Fox", "category": "Mammal"}) == {"title": "Fox", "category": "Mammal"}

    def test_client_calls_run_off_the_event_loop_thread(self):
        threads = []
        self.client.put_object.side_effect = lambda **kwargs: threads.append(threading.get_ident())
        self.client.remove_object.side_effect = lambda *args: threads.append(threading.get_ident())

        async def run():
            await self.storage.store_file(BUCKET, "resized/a.jpg", b"data", "image/jpeg", {})
            await self.storage.delete_file(BUCKET, "uploads/a.jpg")
            return threading.get_ident()

        loop_thread = asyncio.run(run())

        assert len(threads) == 2
        assert loop_thread not in threads

    def test_delete_file(self):
        asyncio.run(self.storage.delete_file(BUCKET, "uploads/a.jpg"))

        self.client.remove_object.assert_called_once_with(BUCKET, "uploads/a.jpg")

    def test_delete_failure_propagates(self):
        self.client.remove_object.side_effect = ConnectionError("unreachable")

        with pytest.raises(ConnectionError):
            asyncio.run(self.storage.delete_file(BUCKET, "uploads/a.jpg"))


class TestUploadStorage:

    def test_store_file_uses_configured_bucket(self):
        client = MagicMock()
        storage = UploadStorage(client, BUCKET)

        key = asyncio.run(storage.store_file("uploads/1-ab.jpg", b"data", "image/jpeg", {"title": "Fox"}))

        assert key == "uploads/1-ab.jpg"
        kwargs = client.put_object.call_args.kwargs
        assert kwargs["bucket_name"] == BUCKET
        assert kwargs["metadata"] == {"title": "Fox"}

    def test_missing_bucket_fails_health_check(self):
        client = MagicMock()
        client.bucket_exists.return_value = False

        with pytest.raises(Exception, match="does not exist"):
            UploadStorage(client, BUCKET).check_connection()

    def test_store_file_encodes_non_ascii_metadata(self):
        client = MagicMock()
        storage = UploadStorage(client, BUCKET)

        asyncio.run(storage.store_file("uploads/1-ab.jpg", b"data", "image/jpeg", {"location": "Zürich"}))

        assert client.put_object.call_args.kwargs["metadata"] == {"location": "Z%C3%BCrich"}

    def test_put_object_runs_off_the_event_loop_thread(self):
        client = MagicMock()
        threads = []
        client.put_object.side_effect = lambda **kwargs: threads.append(threading.get_ident())

        async def run():
            await UploadStorage(client, BUCKET).store_file("uploads/1-ab.jpg", b"data", "image/jpeg", {})
            return threading.get_ident()

        loop_thread = asyncio.run(run())

        assert len(threads) == 1
        assert threads[0] != loop_thread
