"""
S3 object store for database backups.

Provides the four operations the backup lifecycle needs (put, list, get,
delete) plus bucket bootstrap. Listing returns BackupObject records; the
store never orders them, callers sort with backup_sort_key().
"""

import os
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError

from brbackup.errors import BRBackupError


# Error codes S3 returns when an object vanished between listing and acting on it
NOT_FOUND_CODES = ('NoSuchKey', '404', 'NotFound')

MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024
DOWNLOAD_CHUNK_SIZE = 1024 * 1024


class StorageError(BRBackupError):
    """Raised when a storage operation fails."""
    pass


class StoreInconsistency(StorageError):
    """Raised when the store reports an object missing that a listing returned."""
    pass


class TransferFailed(StorageError):
    """Raised when streaming a backup to or from the store fails."""
    pass


@dataclass(frozen=True)
class BackupObject:
    """One stored dump artifact."""

    key: str
    last_modified: datetime
    size: int


def backup_sort_key(obj: BackupObject):
    """Sort by last-modified time, ties broken by key."""
    return (obj.last_modified, obj.key)


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


class S3Storage:
    """
    Handler for backup objects in AWS S3 (or an S3-compatible endpoint).
    """

    def __init__(self, access_key: str, secret_key: str, bucket_name: str, region: str = 'us-east-1',
                 endpoint_url: Optional[str] = None, max_attempts: int = 5):
        """
        Initialize S3 storage handler.

        Args:
            access_key: AWS access key ID
            secret_key: AWS secret access key
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            endpoint_url: Optional custom endpoint for S3-compatible stores
            max_attempts: Attempts per request before botocore gives up
        """
        self.bucket_name = bucket_name
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url,
                config=BotoConfig(retries={'max_attempts': max_attempts, 'mode': 'standard'})
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def ensure_bucket(self) -> bool:
        """
        Create the bucket if it does not exist yet.

        Returns:
            True if the bucket was created, False if it already existed

        Raises:
            StorageError: If the bucket cannot be checked or created
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return False
        except ClientError as e:
            if _error_code(e) not in NOT_FOUND_CODES + ('NoSuchBucket',):
                raise StorageError(f"S3 bucket check failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 bucket check failed: {e}")

        try:
            if self.region == 'us-east-1':
                self.s3_client.create_bucket(Bucket=self.bucket_name)
            else:
                self.s3_client.create_bucket(
                    Bucket=self.bucket_name,
                    CreateBucketConfiguration={'LocationConstraint': self.region}
                )
            return True
        except ClientError as e:
            raise StorageError(f"S3 bucket creation failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 bucket creation failed: {e}")

    def upload(self, local_path: str, key: str, acl: Optional[str] = 'private') -> str:
        """
        Upload a local file to the given key.

        Args:
            local_path: Path to local dump file
            key: Destination object key
            acl: Canned ACL to apply, or None to leave the bucket default

        Returns:
            The key that was written

        Raises:
            StorageError: If the local file does not exist
            TransferFailed: If the upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        extra = {'ACL': acl} if acl else {}

        try:
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, key, extra)
            else:
                with open(local_path, 'rb') as f:
                    self.s3_client.put_object(Bucket=self.bucket_name, Key=key, Body=f, **extra)

            return key

        except ClientError as e:
            raise TransferFailed(f"S3 upload failed ({_error_code(e)}): {e}")
        except (BotoCoreError, OSError) as e:
            raise TransferFailed(f"S3 upload failed: {e}")

    def _multipart_upload(self, local_path: str, key: str, extra: dict):
        """
        Upload large file in parts, aborting the upload on any failure.

        An aborted multipart upload never becomes a visible object, so a
        half-sent dump cannot show up in a listing.
        """
        response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=key, **extra)
        upload_id = response['UploadId']
        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except BaseException:
            try:
                self.s3_client.abort_multipart_upload(Bucket=self.bucket_name, Key=key, UploadId=upload_id)
            except (ClientError, BotoCoreError):
                pass
            raise

    def list_objects(self, prefix: str) -> List[BackupObject]:
        """
        List objects whose key starts with prefix.

        Args:
            prefix: Key prefix to filter by

        Returns:
            Unordered list of BackupObject; empty when the bucket does not
            exist yet (it is created by the first backup)

        Raises:
            StorageError: If listing fails
        """
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    objects.append(BackupObject(
                        key=obj['Key'],
                        last_modified=obj['LastModified'],
                        size=obj['Size']
                    ))

            return objects

        except ClientError as e:
            if _error_code(e) == 'NoSuchBucket':
                return []
            raise StorageError(f"S3 list failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 list failed: {e}")

    def get(self, key: str, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> Iterator[bytes]:
        """
        Stream an object's body in chunks.

        Args:
            key: Object key
            chunk_size: Maximum bytes per yielded chunk

        Yields:
            Chunks of the object body

        Raises:
            StoreInconsistency: If the object no longer exists
            TransferFailed: If reading the body fails
        """
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                raise StoreInconsistency(f"S3 object disappeared: {key}")
            raise TransferFailed(f"S3 download failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise TransferFailed(f"S3 download failed: {e}")

        body = response['Body']
        try:
            for chunk in body.iter_chunks(chunk_size):
                yield chunk
        except (BotoCoreError, OSError) as e:
            raise TransferFailed(f"S3 download of {key} interrupted: {e}")
        finally:
            body.close()

    def delete(self, key: str):
        """
        Delete an object.

        Args:
            key: Object key to delete

        Raises:
            StoreInconsistency: If the store reports the object missing
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                raise StoreInconsistency(f"S3 object already gone: {key}")
            raise StorageError(f"S3 delete failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 delete failed: {e}")
