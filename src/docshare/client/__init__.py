"""Async client for the DocShare upload pipeline."""

from docshare.client.api import UploadApiClient
from docshare.client.config import ClientConfig
from docshare.client.coordinator import UploadCoordinator, WizardStep
from docshare.client.state import (
    Completed,
    Error,
    ErrorKind,
    Pending,
    Requesting,
    UploadFile,
    UploadStateStore,
    Uploading,
)
from docshare.client.uploader import DirectStorageUploader

__all__ = [
    "ClientConfig",
    "Completed",
    "DirectStorageUploader",
    "Error",
    "ErrorKind",
    "Pending",
    "Requesting",
    "UploadApiClient",
    "UploadCoordinator",
    "UploadFile",
    "UploadStateStore",
    "Uploading",
    "WizardStep",
]
