"""
Remote stores for backup objects.

Supports:
- S3Storage: Objects in an S3 (or S3-compatible) bucket
- LocalStorage: Objects as files in a local or mounted directory

Both expose store, fetch, list and delete over flat object names.
"""

import io
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional, Union

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from .settings import ConfigurationMissing, StorageSettings


# Files larger than this are uploaded in parts
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024

NOT_FOUND_CODES = ('404', 'NoSuchKey', 'NotFound')

Content = Union[bytes, str, BinaryIO]


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class ObjectNotFound(StorageError):
    """Raised when a fetched object does not exist."""
    pass


def _new_local_file(local_dir: Optional[str]) -> str:
    if local_dir:
        os.makedirs(local_dir, exist_ok=True)
    handle = tempfile.NamedTemporaryFile(prefix='dump', dir=local_dir, delete=False)
    handle.close()
    return handle.name


def _content_size(fileobj: BinaryIO) -> int:
    """Bytes remaining in a file object from its current position."""
    try:
        return os.fstat(fileobj.fileno()).st_size - fileobj.tell()
    except (AttributeError, io.UnsupportedOperation):
        position = fileobj.tell()
        size = fileobj.seek(0, io.SEEK_END) - position
        fileobj.seek(position)
        return size


def _remove_quietly(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


class S3Storage:
    """
    Handler for backup objects in an S3 bucket.

    Objects are stored under their name at the bucket root and are never
    public.
    """

    def __init__(self, bucket_name: str, access_key: Optional[str] = None,
                 secret_key: Optional[str] = None, region: str = 'us-east-1',
                 endpoint_url: Optional[str] = None, acl: Optional[str] = 'private',
                 local_dir: Optional[str] = None):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            access_key: AWS access key ID (default: boto3 credential chain)
            secret_key: AWS secret access key
            region: AWS region (default: us-east-1)
            endpoint_url: Endpoint for S3-compatible services (optional)
            acl: Canned ACL for stored objects; empty to omit
            local_dir: Directory for fetched files (default: system temp dir)
        """
        self.bucket_name = bucket_name
        self.region = region
        self.acl = acl or None
        self.local_dir = local_dir

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url or None
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}") from e

    def _extra_args(self) -> Dict[str, Any]:
        return {'ACL': self.acl} if self.acl else {}

    def store(self, name: str, content: Content):
        """
        Upload content as object `name`, replacing any existing object.

        Args:
            name: Object key
            content: bytes, str, or a binary file object

        Raises:
            StorageError: If upload fails
        """
        if isinstance(content, str):
            content = content.encode('utf-8')

        try:
            if isinstance(content, bytes):
                self.s3_client.put_object(
                    Bucket=self.bucket_name,
                    Key=name,
                    Body=content,
                    **self._extra_args()
                )
                return

            file_size = _content_size(content)
            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(content, name)
            else:
                self.s3_client.put_object(
                    Bucket=self.bucket_name,
                    Key=name,
                    Body=content,
                    **self._extra_args()
                )

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}") from e
        except OSError as e:
            raise StorageError(f"Failed to read upload content: {e}") from e

    def _multipart_upload(self, fileobj: BinaryIO, name: str):
        """
        Upload a large file in parts.

        Args:
            fileobj: Binary file object positioned at the start
            name: Object key
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=name,
            **self._extra_args()
        )
        upload_id = response['UploadId']

        parts = []

        try:
            part_number = 1

            while True:
                data = fileobj.read(MULTIPART_CHUNK_SIZE)
                if not data:
                    break

                response = self.s3_client.upload_part(
                    Bucket=self.bucket_name,
                    Key=name,
                    PartNumber=part_number,
                    UploadId=upload_id,
                    Body=data
                )

                parts.append({
                    'PartNumber': part_number,
                    'ETag': response['ETag']
                })

                part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=name,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=name,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError):
                pass
            raise

    def fetch(self, name: str) -> str:
        """
        Download object `name` to a new local temporary file.

        Args:
            name: Object key

        Returns:
            Path to the downloaded file; the caller owns and must delete it

        Raises:
            ObjectNotFound: If the object does not exist
            StorageError: If download fails
        """
        local_path = _new_local_file(self.local_dir)

        try:
            with open(local_path, 'wb') as f:
                self.s3_client.download_fileobj(self.bucket_name, name, f)
            return local_path

        except ClientError as e:
            _remove_quietly(local_path)
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in NOT_FOUND_CODES:
                raise ObjectNotFound(f"Object not found: {name}") from e
            raise StorageError(f"S3 download failed ({error_code}): {e}") from e
        except Exception as e:
            _remove_quietly(local_path)
            raise StorageError(f"Failed to download from S3: {e}") from e

    def list(self) -> List[str]:
        """
        List every object name in the bucket.

        Returns:
            List of object keys, unfiltered

        Raises:
            StorageError: If listing fails
        """
        try:
            names = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name):
                for obj in page.get('Contents', []):
                    names.append(obj['Key'])

            return names

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}") from e

    def delete(self, name: str):
        """
        Delete an object. Deleting a missing object is not an error.

        Args:
            name: Object key

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=name
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in NOT_FOUND_CODES:
                return
            raise StorageError(f"S3 delete failed ({error_code}): {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}") from e


class LocalStorage:
    """
    Handler for backup objects kept as files in a directory.

    Useful for mounted network storage and for tests.
    """

    def __init__(self, base_path: str, local_dir: Optional[str] = None):
        """
        Initialize local storage handler.

        Args:
            base_path: Directory holding the objects
            local_dir: Directory for fetched files (default: system temp dir)
        """
        self.base_path = Path(base_path)
        self.local_dir = local_dir

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}") from e

    def _path(self, name: str) -> Path:
        path = (self.base_path / name).resolve()
        if self.base_path.resolve() not in path.parents:
            raise StorageError(f"Invalid object name: {name}")
        return path

    def store(self, name: str, content: Content):
        """
        Write content as object `name`, replacing any existing object.

        Raises:
            StorageError: If the write fails
        """
        dest_path = self._path(name)

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, str):
                dest_path.write_text(content, encoding='utf-8')
            elif isinstance(content, bytes):
                dest_path.write_bytes(content)
            else:
                with open(dest_path, 'wb') as f:
                    shutil.copyfileobj(content, f)

        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}") from e
        except OSError as e:
            raise StorageError(f"Failed to store locally: {e}") from e

    def fetch(self, name: str) -> str:
        """
        Copy object `name` to a new local temporary file.

        Raises:
            ObjectNotFound: If the object does not exist
        """
        source_path = self._path(name)
        if not source_path.is_file():
            raise ObjectNotFound(f"Object not found: {name}")

        local_path = _new_local_file(self.local_dir)
        try:
            shutil.copyfile(source_path, local_path)
            return local_path
        except OSError as e:
            _remove_quietly(local_path)
            raise StorageError(f"Failed to fetch {name}: {e}") from e

    def list(self) -> List[str]:
        """List every object name in the directory, unfiltered."""
        try:
            return [
                str(path.relative_to(self.base_path))
                for path in self.base_path.rglob('*')
                if path.is_file()
            ]
        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}") from e

    def delete(self, name: str):
        """
        Delete an object. Deleting a missing object is not an error.

        Raises:
            StorageError: If deletion fails
        """
        full_path = self._path(name)

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}") from e
        except OSError as e:
            raise StorageError(f"Failed to delete local file: {e}") from e


def create_store(storage: StorageSettings, local_dir: Optional[str] = None):
    """
    Factory function to create the remote store for a configuration.

    Args:
        storage: Storage settings (backend, directory, options)
        local_dir: Directory for fetched files

    Returns:
        S3Storage or LocalStorage instance

    Raises:
        ConfigurationMissing: If the configuration is incomplete
    """
    if storage is None or not storage.directory:
        raise ConfigurationMissing("Storage is not configured")

    if storage.backend == 's3':
        return S3Storage(bucket_name=storage.directory, local_dir=local_dir, **storage.options)
    elif storage.backend == 'local':
        return LocalStorage(storage.directory, local_dir=local_dir)
    else:
        raise ConfigurationMissing(f"Invalid storage backend: {storage.backend}")
