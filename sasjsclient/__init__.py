"""Async client for running jobs on SAS Viya, SAS 9 and SASjs servers."""

from .auth import AuthConfig
from .client import SASjsClient
from .config import ClientConfig, load_client_config
from .errors import (
    ArgumentError,
    AuthenticationError,
    AuthorizeError,
    CertificateError,
    ComputeJobExecutionError,
    InternalServerError,
    InvalidCsrfError,
    JobExecutionError,
    JobStatePollError,
    LengthExceededError,
    LoginRequiredError,
    NotFoundError,
    SASjsError,
)
from .executors import FileUploader, JobExecutor
from .history import RequestHistory
from .models import ExtraResponseAttribute, PollOptions, SasjsRequest, ServerType, UploadFile
from .request import RequestClient, Sas9RequestClient, SasjsRequestClient
from .sessions import SessionManager
from .tables import Tables, convert_to_csv, format_data_for_request, validate_input

__all__ = [
    "AuthConfig",
    "SASjsClient",
    "ClientConfig",
    "load_client_config",
    "ArgumentError",
    "AuthenticationError",
    "AuthorizeError",
    "CertificateError",
    "ComputeJobExecutionError",
    "InternalServerError",
    "InvalidCsrfError",
    "JobExecutionError",
    "JobStatePollError",
    "LengthExceededError",
    "LoginRequiredError",
    "NotFoundError",
    "SASjsError",
    "FileUploader",
    "JobExecutor",
    "RequestHistory",
    "ExtraResponseAttribute",
    "PollOptions",
    "SasjsRequest",
    "ServerType",
    "UploadFile",
    "RequestClient",
    "Sas9RequestClient",
    "SasjsRequestClient",
    "SessionManager",
    "Tables",
    "convert_to_csv",
    "format_data_for_request",
    "validate_input",
]
