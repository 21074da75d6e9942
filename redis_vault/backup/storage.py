"""
Storage backends for backup dumps.

Supports:
- S3Storage: Amazon S3 and S3-compatible stores (MinIO, Ceph RGW, ...)
- GCSStorage: Google Cloud Storage

Both implement the StorageBackend contract: upload (overwrite if exists),
list (all objects under a prefix, following pagination) and delete
(idempotent). Backend errors are wrapped in StorageError.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError
from google.api_core.exceptions import GoogleAPIError, NotFound
from google.auth.exceptions import GoogleAuthError
from google.cloud import storage as gcs_storage

from redis_vault.config import StorageTarget


logger = logging.getLogger(__name__)

# Dumps above this size are sent with a multipart upload
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024


class StorageError(Exception):
    """Raised when a storage operation fails. Carries the backend name."""

    def __init__(self, message: str, backend: Optional[str] = None):
        super().__init__(message)
        self.backend = backend


@dataclass(frozen=True)
class BackupRecord:
    """One backup object already stored remotely."""
    key: str
    timestamp: datetime
    size: int


def _to_utc_seconds(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0)


class StorageBackend(ABC):
    """Common contract for object store backends."""

    name = 'storage'

    def __init__(self, bucket_name: str):
        self.bucket_name = bucket_name

    @abstractmethod
    def upload(self, key: str, data: bytes):
        """Store data under key, replacing any existing object."""

    @abstractmethod
    def list(self, prefix: str) -> List[BackupRecord]:
        """Return every object whose key starts with prefix."""

    @abstractmethod
    def delete(self, key: str):
        """Delete the object stored under key."""

    def __repr__(self):
        return f'<{self.__class__.__name__} bucket={self.bucket_name}>'


class S3Storage(StorageBackend):
    """
    Handler for storing backups in Amazon S3.

    Credentials are resolved by boto3's default chain (environment, shared
    config, instance/IRSA roles).
    """

    name = 's3'

    def __init__(self, bucket_name: str, region: Optional[str] = None, endpoint_url: Optional[str] = None):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: from environment/config)
            endpoint_url: Custom endpoint for S3-compatible stores
        """
        super().__init__(bucket_name)
        self.region = region
        self.endpoint_url = endpoint_url

        try:
            self.s3_client = boto3.client(
                's3',
                region_name=region,
                endpoint_url=endpoint_url
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}", backend=self.name)

    def upload(self, key: str, data: bytes):
        """
        Upload dump bytes to S3.

        Raises:
            StorageError: If upload fails
        """
        try:
            if len(data) > MULTIPART_THRESHOLD:
                self._multipart_upload(key, data)
            else:
                self.s3_client.put_object(
                    Bucket=self.bucket_name,
                    Key=key,
                    Body=data
                )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload of {key} failed ({error_code}): {e}", backend=self.name)
        except BotoCoreError as e:
            raise StorageError(f"S3 upload of {key} failed: {e}", backend=self.name)

    def _multipart_upload(self, key: str, data: bytes):
        """
        Upload a large dump in parts.

        The multipart upload is aborted if any part fails so no orphaned
        parts are left behind in the bucket.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            view = memoryview(data)
            for part_number, offset in enumerate(range(0, len(data), MULTIPART_CHUNK_SIZE), start=1):
                response = self.s3_client.upload_part(
                    Bucket=self.bucket_name,
                    Key=key,
                    PartNumber=part_number,
                    UploadId=upload_id,
                    Body=bytes(view[offset:offset + MULTIPART_CHUNK_SIZE])
                )

                parts.append({
                    'PartNumber': part_number,
                    'ETag': response['ETag']
                })

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except (ClientError, BotoCoreError):
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id} for {key}: {abort_error}")
            raise

    def list(self, prefix: str) -> List[BackupRecord]:
        """
        List all objects in S3 with given prefix.

        Follows continuation tokens until the listing is exhausted.

        Raises:
            StorageError: If listing fails
        """
        try:
            records = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    if 'LastModified' not in obj:
                        continue
                    records.append(BackupRecord(
                        key=obj['Key'],
                        timestamp=_to_utc_seconds(obj['LastModified']),
                        size=obj.get('Size', 0)
                    ))

            return records

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list of {prefix} failed ({error_code}): {e}", backend=self.name)
        except BotoCoreError as e:
            raise StorageError(f"S3 list of {prefix} failed: {e}", backend=self.name)

    def delete(self, key: str):
        """
        Delete an object from S3.

        S3 reports success for keys that do not exist.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=key
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 delete of {key} failed ({error_code}): {e}", backend=self.name)
        except BotoCoreError as e:
            raise StorageError(f"S3 delete of {key} failed: {e}", backend=self.name)


class GCSStorage(StorageBackend):
    """
    Handler for storing backups in Google Cloud Storage.

    Uses Application Default Credentials (GOOGLE_APPLICATION_CREDENTIALS,
    workload identity, gcloud user credentials).
    """

    name = 'gcs'

    def __init__(self, bucket_name: str, project_id: Optional[str] = None):
        """
        Initialize GCS storage handler.

        Args:
            bucket_name: GCS bucket name
            project_id: GCP project (default: inferred from credentials)
        """
        super().__init__(bucket_name)
        self.project_id = project_id

        try:
            self.client = gcs_storage.Client(project=project_id)
        except (GoogleAuthError, GoogleAPIError) as e:
            raise StorageError(f"Failed to initialize GCS client: {e}", backend=self.name)

        self.bucket = self.client.bucket(bucket_name)

    def upload(self, key: str, data: bytes):
        """
        Upload dump bytes to GCS.

        Raises:
            StorageError: If upload fails
        """
        try:
            blob = self.bucket.blob(key)
            blob.upload_from_string(data, content_type='application/octet-stream')
        except (GoogleAPIError, GoogleAuthError) as e:
            raise StorageError(f"GCS upload of {key} failed: {e}", backend=self.name)

    def list(self, prefix: str) -> List[BackupRecord]:
        """
        List all blobs in GCS with given prefix.

        The blob iterator fetches further pages transparently.

        Raises:
            StorageError: If listing fails
        """
        try:
            records = []

            for blob in self.client.list_blobs(self.bucket_name, prefix=prefix):
                if blob.time_created is None:
                    continue
                records.append(BackupRecord(
                    key=blob.name,
                    timestamp=_to_utc_seconds(blob.time_created),
                    size=blob.size or 0
                ))

            return records

        except (GoogleAPIError, GoogleAuthError) as e:
            raise StorageError(f"GCS list of {prefix} failed: {e}", backend=self.name)

    def delete(self, key: str):
        """
        Delete a blob from GCS. A blob that is already gone counts as deleted.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.bucket.blob(key).delete()
        except NotFound:
            logger.debug(f"GCS object {key} already absent")
        except (GoogleAPIError, GoogleAuthError) as e:
            raise StorageError(f"GCS delete of {key} failed: {e}", backend=self.name)


def create_storage(target: StorageTarget) -> StorageBackend:
    """
    Create the storage backend selected by the configuration.

    Args:
        target: Resolved storage target

    Returns:
        StorageBackend for the target's kind

    Raises:
        StorageError: If the client cannot be created
        ValueError: If the kind is unknown
    """
    if target.kind == 's3':
        return S3Storage(
            bucket_name=target.bucket,
            region=target.region,
            endpoint_url=target.endpoint
        )
    if target.kind == 'gcs':
        return GCSStorage(
            bucket_name=target.bucket,
            project_id=target.project_id
        )
    raise ValueError(f"Unknown storage type: {target.kind}")
