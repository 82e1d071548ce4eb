from unittest.mock import MagicMock

import pytest
from botocore.exceptions import EndpointConnectionError

from recipeforge.errors import PersistenceError
from recipeforge.services.storage import LocalStorage, image_key
from recipeforge.storage.s3_compat import S3CompatStore


def test_image_key_is_deterministic():
    assert image_key("abc") == image_key("abc") == "recipes/abc/image.png"


def test_local_upload_and_delete(tmp_path):
    storage = LocalStorage(root=tmp_path)
    key = image_key("r1")

    url = storage.upload_image(b"png-bytes", key)

    assert url == "/media/recipes/r1/image.png"
    assert (tmp_path / key).read_bytes() == b"png-bytes"

    storage.delete_image(key)
    assert not (tmp_path / key).exists()
    # Deleting a missing image is fine
    storage.delete_image(key)


def test_local_rejects_path_traversal(tmp_path):
    storage = LocalStorage(root=tmp_path)
    with pytest.raises(ValueError):
        storage.upload_image(b"x", "../escape.png")


def _s3_store():
    store = S3CompatStore(
        endpoint_url="http://localhost:9000",
        region_name="us-east-1",
        access_key_id="test",
        secret_access_key="test",
        bucket="recipes",
        public_base_url="https://cdn.test/",
    )
    store.s3 = MagicMock()
    return store


def test_s3_upload_returns_public_url():
    store = _s3_store()

    url = store.upload_image(b"png", image_key("r1"))

    assert url == "https://cdn.test/recipes/r1/image.png"
    kwargs = store.s3.put_object.call_args.kwargs
    assert kwargs["Bucket"] == "recipes"
    assert kwargs["Key"] == "recipes/r1/image.png"
    assert kwargs["ContentType"] == "image/png"


def test_s3_errors_become_persistence_errors():
    store = _s3_store()
    store.s3.delete_object.side_effect = EndpointConnectionError(endpoint_url="http://localhost:9000")

    with pytest.raises(PersistenceError):
        store.delete_image(image_key("r1"))
