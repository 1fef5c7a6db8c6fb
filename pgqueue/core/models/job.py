# pgqueue/core/models/job.py
from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from pgqueue.core.defaults import DEFAULT_RETRY_LIMIT, DEFAULT_SIGNING_HEADER
from pgqueue.core.errors import (
    ErrorCode,
    JobValidationError,
    ValidationReport,
    raise_collected,
)
from pgqueue.core.types.status import JobStatus, JobType
from pgqueue.core.utils.url import is_http_url

_FUNC_TARGET_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$')


class SigningAlgorithm(str, Enum):
    MD5 = 'md5'
    SHA1 = 'sha1'
    SHA224 = 'sha224'
    SHA256 = 'sha256'
    SHA384 = 'sha384'
    SHA512 = 'sha512'


class SigningEncoding(str, Enum):
    HEX = 'hex'
    BASE64 = 'base64'


class SigningStyle(str, Enum):
    PLAIN = 'PLAIN'  # <digest>
    PREFIXED = 'PREFIXED'  # <algorithm>=<digest>


class SigningConfig(BaseModel):
    """
    HMAC signing configuration of a job.

    - secret: raw secret bytes; takes precedence over ``vault``
    - vault: name of a secret resolved through the SecretResolver
    - header: outbound header that receives the signature
    """

    model_config = ConfigDict(frozen=True)

    secret: Optional[bytes] = None
    vault: Optional[str] = None
    header: str = DEFAULT_SIGNING_HEADER
    style: SigningStyle = SigningStyle.PLAIN
    algorithm: SigningAlgorithm = SigningAlgorithm.SHA256
    encoding: SigningEncoding = SigningEncoding.HEX

    @property
    def has_key(self) -> bool:
        return bool(self.secret) or bool(self.vault)


class AuthMode(str, Enum):
    NONE = 'none'
    JWT = 'jwt'
    SESSION = 'session'  # Use the submitting session's token


class AuthConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    mode: AuthMode = AuthMode.NONE
    jwt: Optional[str] = None

    @classmethod
    def none(cls) -> AuthConfig:
        return cls()

    @classmethod
    def bearer(cls, jwt: str) -> AuthConfig:
        return cls(mode=AuthMode.JWT, jwt=jwt)

    @classmethod
    def from_session(cls) -> AuthConfig:
        return cls(mode=AuthMode.SESSION)


class JobSpec(BaseModel):
    """Everything a producer supplies when enqueuing a job."""

    job_type: JobType
    target: str
    owner: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    signing: SigningConfig = Field(default_factory=SigningConfig)
    retry_limit: int = DEFAULT_RETRY_LIMIT
    run_at: Optional[datetime] = None  # None = immediately eligible

    @model_validator(mode='after')
    def validate_job(self) -> Self:
        """Collect every independent problem and raise them together."""
        report = ValidationReport('job')

        if self.job_type.is_http and not is_http_url(self.target):
            report.add(
                JobValidationError(
                    message=f'{self.job_type.value} job target must be an http(s) URL',
                    code=ErrorCode.JOB_INVALID_TARGET,
                    notes=[f'got target={self.target!r}'],
                )
            )
        if self.job_type == JobType.FUNC and not _FUNC_TARGET_RE.match(self.target):
            report.add(
                JobValidationError(
                    message='FUNC job target must be a function name',
                    code=ErrorCode.JOB_INVALID_TARGET,
                    notes=[f'got target={self.target!r}'],
                    help_text="use 'schema.function' or 'function'",
                )
            )
        if self.job_type == JobType.POLL:
            if not self.owner:
                report.add(
                    JobValidationError(
                        message='POLL jobs require an owner',
                        code=ErrorCode.JOB_MISSING_OWNER,
                        help_text='pull consumers poll by owner',
                    )
                )
            if not self.signing.has_key:
                report.add(
                    JobValidationError(
                        message='POLL jobs require a signing secret or vault name',
                        code=ErrorCode.JOB_INVALID_SIGNING,
                        notes=['poll and ack requests are authenticated with the job secret'],
                    )
                )
        if self.retry_limit < 0:
            report.add(
                JobValidationError(
                    message='retry_limit must be non-negative',
                    code=ErrorCode.JOB_INVALID_PAYLOAD,
                    notes=[f'got retry_limit={self.retry_limit}'],
                )
            )
        if self.auth.mode == AuthMode.JWT and not self.auth.jwt:
            report.add(
                JobValidationError(
                    message='auth mode jwt requires a token',
                    code=ErrorCode.JOB_INVALID_AUTH,
                    help_text='use AuthConfig.bearer(token)',
                )
            )
        if self.run_at is not None and self.run_at.tzinfo is None:
            report.add(
                JobValidationError(
                    message='run_at must be timezone-aware',
                    code=ErrorCode.JOB_INVALID_PAYLOAD,
                    notes=[f'got run_at={self.run_at.isoformat()}'],
                )
            )

        raise_collected(report)
        return self


class JobInfo(BaseModel):
    """Read-only snapshot of a job row."""

    id: str
    owner: Optional[str]
    job_type: JobType
    status: JobStatus
    target: str
    payload: dict[str, Any]
    headers: dict[str, str]
    retry_count: int
    retry_limit: int
    run_at: datetime
    last_at: Optional[datetime]
    response_status: Optional[int]
    response_content: Optional[str]
    response_headers: Optional[dict[str, str]]
    parent_id: Optional[str]
    created_at: datetime


class FailureLogEntry(BaseModel):
    job_id: str
    attempt: int
    response_status: int
    response_content: Optional[str]
    created_at: datetime


class PolledJob(BaseModel):
    """What a pull consumer receives from a successful poll."""

    id: str
    payload: dict[str, Any]
    headers: dict[str, str]
