"""pgqueue - PostgreSQL-backed job execution and webhook dispatch"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.app import PgQueue
from .core.models.app import AppConfig, DispatchConfig, PollConfig, SweepConfig
from .core.models.store import PostgresConfig
from .core.models.job import (
    AuthConfig,
    AuthMode,
    FailureLogEntry,
    JobInfo,
    JobSpec,
    PolledJob,
    SigningAlgorithm,
    SigningConfig,
    SigningEncoding,
    SigningStyle,
)
from .core.types.status import JobStatus, JobType
from .core.retry.classifier import AttemptOutcome, Classification, FailureKind
from .core.collaborators.http import HttpExecutor, HttpxExecutor, OutboundRequest
from .core.collaborators.functions import (
    FunctionInvoker,
    PostgresFunctionInvoker,
    RegistryFunctionInvoker,
)
from .core.collaborators.vault import (
    PostgresVaultResolver,
    SecretNotFoundError,
    SecretResolver,
    StaticSecretResolver,
)
from .core.collaborators.audit import AuditSink, PostgresAuditSink
from .core.store.result_types import StoreErrorCode, StoreOperationError, StoreResult
from .core.scheduler import Scheduler
from .core.worker.sweeper import JobSweeper, SweepStats
from .core.poll.lease import PollLeaseManager
from .core.errors import (
    AuthenticationError,
    ConfigurationError,
    ErrorCode,
    InvalidTransitionError,
    JobValidationError,
    MultipleValidationErrors,
    PgQueueError,
    RegistryError,
)
from .core.types.result import Ok, Err, Result, is_ok, is_err

__all__ = [
    # Core
    'PgQueue',
    'AppConfig',
    'PostgresConfig',
    'SweepConfig',
    'DispatchConfig',
    'PollConfig',
    # Jobs
    'JobSpec',
    'JobInfo',
    'JobStatus',
    'JobType',
    'AuthConfig',
    'AuthMode',
    'SigningConfig',
    'SigningAlgorithm',
    'SigningEncoding',
    'SigningStyle',
    'FailureLogEntry',
    'PolledJob',
    # Classification
    'AttemptOutcome',
    'Classification',
    'FailureKind',
    # Collaborators
    'HttpExecutor',
    'HttpxExecutor',
    'OutboundRequest',
    'FunctionInvoker',
    'RegistryFunctionInvoker',
    'PostgresFunctionInvoker',
    'SecretResolver',
    'StaticSecretResolver',
    'PostgresVaultResolver',
    'SecretNotFoundError',
    'AuditSink',
    'PostgresAuditSink',
    # Services
    'Scheduler',
    'JobSweeper',
    'SweepStats',
    'PollLeaseManager',
    # Store results
    'StoreErrorCode',
    'StoreOperationError',
    'StoreResult',
    'Ok',
    'Err',
    'Result',
    'is_ok',
    'is_err',
    # Errors
    'PgQueueError',
    'ConfigurationError',
    'JobValidationError',
    'AuthenticationError',
    'InvalidTransitionError',
    'RegistryError',
    'MultipleValidationErrors',
    'ErrorCode',
]
