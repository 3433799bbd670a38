import logging
import os
import time
from typing import Any, Dict, Optional
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .abstract_storage import AbstractStorage

logger = logging.getLogger(__name__)

RETRYABLE_ERROR_CODES = [
    '500', '502', '503', '504', 'Throttling', 'SlowDown',
    'RequestTimeout', 'ServiceUnavailable', 'InternalError'
]


class S3Storage(AbstractStorage):
    """
    S3 implementation of the storage backend

    Stores archived documents in Amazon S3.
    Supports multiple credential sources: config, environment variables, IAM roles.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize S3 storage

        Args:
            config: Configuration dictionary with:
                - bucket: S3 bucket name (required)
                - access_key: AWS access key (optional if using IAM/env vars)
                - secret_key: AWS secret key (optional if using IAM/env vars)
                - session_token: AWS session token (optional, for temporary credentials)
                - region: AWS region (default: us-east-1)
                - prefix: Optional S3 key prefix for organizing files
                - max_retries: Maximum retry attempts (default: 3)
                - retry_delay: Delay between retries in seconds (default: 1.0)
        """
        self.config = config

        self.bucket = config.get('bucket')
        if not self.bucket:
            raise ValueError("S3 bucket name is required in configuration")

        credentials = self._get_credentials(config)

        self.region = credentials['region']
        self.prefix = (config.get('prefix') or '').strip('/')
        if self.prefix:
            self.prefix += '/'

        self.max_retries = config.get('max_retries', 3)
        self.retry_delay = config.get('retry_delay', 1.0)

        boto_config = Config(
            retries={
                'max_attempts': self.max_retries,
                'mode': 'adaptive'
            },
            connect_timeout=config.get('connect_timeout', 60),
            read_timeout=config.get('read_timeout', 60)
        )

        client_kwargs = {
            'service_name': 's3',
            'region_name': self.region,
            'config': boto_config
        }

        # Without explicit credentials boto3 falls back to the IAM role or default profile
        if credentials['access_key'] and credentials['secret_key']:
            client_kwargs['aws_access_key_id'] = credentials['access_key']
            client_kwargs['aws_secret_access_key'] = credentials['secret_key']
            if credentials['session_token']:
                client_kwargs['aws_session_token'] = credentials['session_token']

        self.s3 = boto3.client(**client_kwargs)

        self.ensure_storage_exists()

    def _get_credentials(self, config: Dict[str, Any]) -> Dict[str, Optional[str]]:
        """
        Get AWS credentials from config, falling back to environment variables

        Returns:
            Dictionary with credentials and region
        """
        credentials = {
            'access_key': config.get('access_key') or os.getenv('AWS_ACCESS_KEY_ID'),
            'secret_key': config.get('secret_key') or os.getenv('AWS_SECRET_ACCESS_KEY'),
            'session_token': config.get('session_token') or os.getenv('AWS_SESSION_TOKEN'),
            'region': config.get('region') or os.getenv('AWS_DEFAULT_REGION', 'us-east-1')
        }

        logger.info(f"S3 storage initialized with bucket: {self.bucket}, region: {credentials['region']}")
        if credentials['access_key']:
            logger.debug("Using credentials from config or environment variables")
        else:
            logger.debug("Using IAM role or default AWS profile")

        return credentials

    def _get_full_key(self, path: str) -> str:
        path = path.lstrip('/')
        return f"{self.prefix}{path}" if self.prefix else path

    def _retry_on_error(self, func, *args, **kwargs):
        """
        Retry a client call on transient errors with exponential backoff

        Raises:
            ClientError, BotoCoreError: If the error is not transient or retries run out
        """
        for attempt in range(self.max_retries):
            try:
                return func(*args, **kwargs)
            except (ClientError, BotoCoreError) as e:
                error_code = None
                if isinstance(e, ClientError):
                    error_code = e.response.get('Error', {}).get('Code', '')

                transient = error_code in RETRYABLE_ERROR_CODES or 'timeout' in str(e).lower()
                if transient and attempt < self.max_retries - 1:
                    wait_time = self.retry_delay * (2 ** attempt)
                    logger.warning(
                        f"S3 operation failed (attempt {attempt + 1}/{self.max_retries}): {e}. "
                        f"Retrying in {wait_time}s..."
                    )
                    time.sleep(wait_time)
                    continue
                raise

    def ensure_storage_exists(self) -> None:
        """Ensure S3 bucket exists"""
        try:
            self._retry_on_error(self.s3.head_bucket, Bucket=self.bucket)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', '')
            if error_code not in ('404', 'NoSuchBucket'):
                logger.error(f"Failed to access S3 bucket {self.bucket}: {e}")
                raise

            create_params = {'Bucket': self.bucket}
            if self.region != 'us-east-1':
                create_params['CreateBucketConfiguration'] = {
                    'LocationConstraint': self.region
                }
            self._retry_on_error(self.s3.create_bucket, **create_params)
            logger.info(f"Created S3 bucket: {self.bucket}")

    def save(self, path: str, content: bytes, content_type: Optional[str] = None) -> None:
        key = self._get_full_key(path)
        params = {'Bucket': self.bucket, 'Key': key, 'Body': content}
        if content_type:
            params['ContentType'] = content_type

        try:
            self._retry_on_error(self.s3.put_object, **params)
            logger.debug(f"Saved content to S3: {key}")
        except (ClientError, BotoCoreError) as e:
            error_msg = f"Failed to save content to S3 key {key}: {e}"
            logger.error(error_msg)
            raise IOError(error_msg) from e

    def load(self, path: str) -> bytes:
        key = self._get_full_key(path)

        try:
            response = self._retry_on_error(self.s3.get_object, Bucket=self.bucket, Key=key)
            return response['Body'].read()
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', '')
            if error_code in ('NoSuchKey', '404'):
                raise FileNotFoundError(f"File not found in S3: {key}")
            error_msg = f"Failed to load content from S3 key {key}: {e}"
            logger.error(error_msg)
            raise IOError(error_msg) from e

    def delete(self, path: str) -> bool:
        key = self._get_full_key(path)

        try:
            self._retry_on_error(self.s3.delete_object, Bucket=self.bucket, Key=key)
            logger.debug(f"Deleted content from S3: {key}")
            return True
        except ClientError as e:
            logger.warning(f"Failed to delete content from S3 key {key}: {e}")
            return False

    def exists(self, path: str) -> bool:
        key = self._get_full_key(path)

        try:
            self._retry_on_error(self.s3.head_object, Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', '')
            if error_code not in ('404', 'NoSuchKey'):
                logger.warning(f"Error checking existence of S3 key {key}: {e}")
            return False

    def get_metadata(self, path: str) -> Dict[str, Any]:
        key = self._get_full_key(path)

        try:
            response = self._retry_on_error(self.s3.head_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', '')
            if error_code in ('404', 'NoSuchKey'):
                raise FileNotFoundError(f"File not found: {key}")
            raise IOError(f"Failed to get metadata for S3 key {key}: {e}") from e

        return {
            'size': response['ContentLength'],
            'modified_at': response['LastModified'],
            'etag': response['ETag'],
            'content_type': response.get('ContentType', 'application/octet-stream')
        }

    def get_url(self, path: str, expires_in: Optional[int] = None) -> str:
        """
        Get a URL for the object

        Without ``expires_in`` this is the plain virtual-hosted https URL;
        with it, a presigned GET URL.
        """
        key = self._get_full_key(path)

        if expires_in is None:
            return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{quote(key)}"

        try:
            return self.s3.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket, 'Key': key},
                ExpiresIn=expires_in
            )
        except ClientError as e:
            error_msg = f"Failed to generate presigned URL for {key}: {e}"
            logger.error(error_msg)
            raise ValueError(error_msg) from e
