# -*- coding: utf-8 -*-
"""gcp_secret_rekeyer

Rotates credentials for cloud resources and pushes the new values into the applications that
consume them without taking those applications offline. State is kept in a Google Cloud Storage
bucket, cached sign offs in Google Secret Manager.

"""

from __future__ import absolute_import

from gcp_secret_rekeyer.config import RekeyerConfiguration, load_config
from gcp_secret_rekeyer.exceptions import RekeyerError, \
    ConfigurationError, \
    UnknownProviderType, \
    DuplicateHint, \
    CredentialError, \
    CredentialNotFound, \
    InvalidCredential, \
    ProviderExecutionError, \
    ConcurrencyTimeout, \
    ObjectNotFound, \
    DuplicateObjectId, \
    InvalidTaskState, \
    SignalRejected, \
    MessageVerificationError, \
    PayloadCorrupted
from gcp_secret_rekeyer.models import AccessTokenCredential, \
    ActionStatus, \
    ConfirmationStrategy, \
    ManagedSecret, \
    Phase, \
    RekeyingTask, \
    Resource, \
    TaskState, \
    WorkflowAction, \
    WorkflowActionCollection, \
    generate_nonce
from gcp_secret_rekeyer.providers import Capability, \
    Provider, \
    RekeyableObjectProvider, \
    ApplicationLifecycleProvider, \
    RegeneratedSecret, \
    ProviderResourceSuggestion, \
    ProviderRegistry, \
    register_provider
from gcp_secret_rekeyer.workflow import RotationWorkflowEngine, WorkflowActionLogger
from gcp_secret_rekeyer.datastore import LeasedBlobDataStore
from gcp_secret_rekeyer.identity import IdentityService, GoogleIdentityService
from gcp_secret_rekeyer.secure_storage import SecureStorage, \
    SecretManagerSecureStorage, \
    InMemorySecureStorage
from gcp_secret_rekeyer.crypto import CryptographicImplementation, \
    DefaultCryptographicImplementation, \
    generate_private_key_pem, \
    public_key_pem
from gcp_secret_rekeyer.events import SystemEvents, EventSink, LoggingEventSink, EventDispatcher
from gcp_secret_rekeyer.tasks import TaskExecutionService
from gcp_secret_rekeyer.scheduler import TaskScheduler
from gcp_secret_rekeyer.external_signal import ExternalSignalHandler
from gcp_secret_rekeyer.agents import AgentMessageEnvelope, \
    AgentProviderCommandMessage, \
    AgentProviderStatusMessage, \
    AgentStatusMessage, \
    ProviderExecutionParameters, \
    TokenSource, \
    AgentCommunicationProvider, \
    QueueAgentCommunicationProvider, \
    AgentService
from ._version import __version__

__all__ = ["__version__",
           "RekeyerConfiguration",
           "load_config",
           "RekeyerError",
           "ConfigurationError",
           "UnknownProviderType",
           "DuplicateHint",
           "CredentialError",
           "CredentialNotFound",
           "InvalidCredential",
           "ProviderExecutionError",
           "ConcurrencyTimeout",
           "ObjectNotFound",
           "DuplicateObjectId",
           "InvalidTaskState",
           "SignalRejected",
           "MessageVerificationError",
           "PayloadCorrupted",
           "AccessTokenCredential",
           "ActionStatus",
           "ConfirmationStrategy",
           "ManagedSecret",
           "Phase",
           "RekeyingTask",
           "Resource",
           "TaskState",
           "WorkflowAction",
           "WorkflowActionCollection",
           "generate_nonce",
           "Capability",
           "Provider",
           "RekeyableObjectProvider",
           "ApplicationLifecycleProvider",
           "RegeneratedSecret",
           "ProviderResourceSuggestion",
           "ProviderRegistry",
           "register_provider",
           "RotationWorkflowEngine",
           "WorkflowActionLogger",
           "LeasedBlobDataStore",
           "IdentityService",
           "GoogleIdentityService",
           "SecureStorage",
           "SecretManagerSecureStorage",
           "InMemorySecureStorage",
           "CryptographicImplementation",
           "DefaultCryptographicImplementation",
           "generate_private_key_pem",
           "public_key_pem",
           "SystemEvents",
           "EventSink",
           "LoggingEventSink",
           "EventDispatcher",
           "TaskExecutionService",
           "TaskScheduler",
           "ExternalSignalHandler",
           "AgentMessageEnvelope",
           "AgentProviderCommandMessage",
           "AgentProviderStatusMessage",
           "AgentStatusMessage",
           "ProviderExecutionParameters",
           "TokenSource",
           "AgentCommunicationProvider",
           "QueueAgentCommunicationProvider",
           "AgentService"]
