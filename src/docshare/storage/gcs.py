"""Google Cloud Storage backend."""

import logging
from datetime import timedelta
from typing import Optional

from google.api_core import exceptions as gcs_exceptions
from google.cloud import storage
from google.oauth2 import service_account

from docshare.core.config import settings
from docshare.core.exceptions import StorageError
from docshare.storage.base import StorageBackend, StoredObject

logger = logging.getLogger(__name__)


class GCSStorageBackend(StorageBackend):
    """Google Cloud Storage backend using V4 signed URLs."""

    def __init__(self, bucket_name: Optional[str] = None, project_id: Optional[str] = None):
        self.bucket_name = bucket_name or settings.GCS_BUCKET_NAME
        self.project_id = project_id or settings.GCP_PROJECT_ID
        self._client: Optional[storage.Client] = None
        self._bucket: Optional[storage.Bucket] = None
        self._signing_credentials = None

    def _get_bucket(self) -> storage.Bucket:
        """Lazy-load and cache GCS bucket."""
        if self._bucket is None:
            if not self.bucket_name:
                raise ValueError("GCS_BUCKET_NAME not configured")

            self._client = storage.Client(project=self.project_id or None)
            self._bucket = self._client.bucket(self.bucket_name)

        return self._bucket

    def _get_signing_credentials(self) -> service_account.Credentials:
        """Build credentials that sign through the IAM signBlob API.

        Works on Cloud Run / GCE / GKE where no private key file exists. The
        runtime service account needs roles/iam.serviceAccountTokenCreator on itself.
        """
        if self._signing_credentials is None:
            from google.auth import compute_engine, iam
            from google.auth.transport import requests as auth_requests

            credentials = compute_engine.Credentials()
            auth_request = auth_requests.Request()
            credentials.refresh(auth_request)
            service_account_email = credentials.service_account_email

            signer = iam.Signer(
                request=auth_request,
                credentials=credentials,
                service_account_email=service_account_email,
            )
            # token_uri is required by the constructor only; signing goes through the signer
            self._signing_credentials = service_account.Credentials(
                signer=signer,
                service_account_email=service_account_email,
                token_uri="https://oauth2.googleapis.com/token",
            )
        return self._signing_credentials

    def generate_upload_url(self, storage_key: str, content_type: str, expires_in: int) -> str:
        """Generate V4 signed URL for direct PUT upload."""
        blob = self._get_bucket().blob(storage_key)
        credentials = self._get_signing_credentials()
        try:
            return blob.generate_signed_url(
                version="v4",
                expiration=timedelta(seconds=expires_in),
                method="PUT",
                content_type=content_type,
                headers={"Content-Type": content_type},
                credentials=credentials,
                service_account_email=credentials.service_account_email,
            )
        except Exception as e:
            raise StorageError(
                "Failed to sign upload URL", details={"storage_key": storage_key}
            ) from e

    def generate_download_url(
        self, storage_key: str, expires_in: int, filename: Optional[str] = None
    ) -> str:
        """Generate V4 signed URL for GET."""
        blob = self._get_bucket().blob(storage_key)
        credentials = self._get_signing_credentials()
        disposition = f'attachment; filename="{filename}"' if filename else None
        try:
            return blob.generate_signed_url(
                version="v4",
                expiration=timedelta(seconds=expires_in),
                method="GET",
                response_disposition=disposition,
                credentials=credentials,
                service_account_email=credentials.service_account_email,
            )
        except Exception as e:
            raise StorageError(
                "Failed to sign download URL", details={"storage_key": storage_key}
            ) from e

    def object_exists(self, storage_key: str) -> bool:
        """Check if object exists in GCS."""
        try:
            return self._get_bucket().blob(storage_key).exists()
        except gcs_exceptions.GoogleAPICallError as e:
            raise StorageError(
                "Failed to check object existence", details={"storage_key": storage_key}
            ) from e

    def delete_object(self, storage_key: str) -> bool:
        try:
            self._get_bucket().blob(storage_key).delete()
        except gcs_exceptions.NotFound:
            return False
        except gcs_exceptions.GoogleAPICallError as e:
            raise StorageError(
                "Failed to delete object", details={"storage_key": storage_key}
            ) from e
        logger.info("Deleted GCS object", extra={"storage_key": storage_key, "bucket": self.bucket_name})
        return True

    def list_objects(self, prefix: str) -> list[StoredObject]:
        bucket = self._get_bucket()
        try:
            blobs = bucket.client.list_blobs(bucket, prefix=prefix)
            return [
                StoredObject(key=blob.name, size=blob.size or 0, updated_at=blob.updated)
                for blob in blobs
            ]
        except gcs_exceptions.GoogleAPICallError as e:
            raise StorageError("Failed to list objects", details={"prefix": prefix}) from e

    def get_backend_name(self) -> str:
        return "gcs"
