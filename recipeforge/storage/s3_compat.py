import io
import logging
from dataclasses import dataclass

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import PersistenceError
from ..settings import settings

logger = logging.getLogger("recipeforge.storage")


@dataclass
class PutResult:
    key: str
    public_url: str


class S3CompatStore:
    def __init__(
        self,
        endpoint_url: str,
        region_name: str,
        access_key_id: str,
        secret_access_key: str,
        bucket: str,
        public_base_url: str,
    ):
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")
        self.s3 = boto3.client(
            service_name="s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name=region_name,
        )

    def put_bytes(self, *, key: str, content_type: str, data: bytes) -> PutResult:
        self.s3.put_object(Bucket=self.bucket, Key=key, Body=io.BytesIO(data), ContentType=content_type)
        return PutResult(key=key, public_url=f"{self.public_base_url}/{key}")

    def upload_image(self, data: bytes, key: str) -> str:
        try:
            result = self.put_bytes(key=key, content_type="image/png", data=data)
        except (BotoCoreError, ClientError) as e:
            raise PersistenceError(f"failed to upload image to object store: {e}") from e
        logger.info(f"Uploaded {len(data)} bytes to s3://{self.bucket}/{key}")
        return result.public_url

    def delete_image(self, key: str) -> None:
        # S3 delete is idempotent: a missing key is not an error
        try:
            self.s3.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise PersistenceError(f"failed to delete image from object store: {e}") from e


def get_store() -> S3CompatStore:
    return S3CompatStore(
        endpoint_url=settings.object_store_endpoint,
        region_name=settings.object_store_region,
        access_key_id=settings.object_store_access_key_id,
        secret_access_key=settings.object_store_secret_access_key,
        bucket=settings.object_store_bucket,
        public_base_url=settings.object_public_base_url,
    )
