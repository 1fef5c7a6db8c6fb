# pgqueue/core/models/app.py
from __future__ import annotations

from typing import Annotated, Self
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pgqueue.core.defaults import (
    DEFAULT_RATE_LIMIT_DELAY_S,
    DEFAULT_REDIRECT_STATUS,
    DEFAULT_SCHEMA,
    POLL_LEASE_S,
    POLL_REPLAY_WINDOW_S,
)
from pgqueue.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)
from pgqueue.core.models.store import PostgresConfig
from pgqueue.core.utils.url import mask_database_url


class SweepConfig(BaseModel):
    """
    Cadence and batch sizes of the claim and resolution sweeps.

    The claim sweep runs once per tick; the resolution sweep runs every
    ``resolve_interval_seconds`` within the tick.
    """

    model_config = ConfigDict(frozen=True)

    batch_size: Annotated[int, Field(ge=1, le=10_000)] = Field(
        default=100, description='Maximum jobs claimed by one sweep'
    )
    tick_seconds: Annotated[float, Field(gt=0)] = Field(
        default=60.0, description='Interval between claim sweeps'
    )
    resolve_interval_seconds: Annotated[float, Field(gt=0)] = Field(
        default=10.0, description='Interval between resolution sweeps'
    )
    lost_request_after_seconds: Annotated[float, Field(gt=0)] = Field(
        default=300.0,
        description=(
            'Age after which an unresolved request owned by another executor '
            'is treated as lost'
        ),
    )

    @model_validator(mode='after')
    def validate_cadence(self) -> Self:
        report = ValidationReport('sweep')
        if self.resolve_interval_seconds > self.tick_seconds:
            report.add(
                ConfigurationError(
                    message='resolve_interval_seconds must be <= tick_seconds',
                    code=ErrorCode.CONFIG_INVALID_SWEEP,
                    notes=[
                        f'tick_seconds={self.tick_seconds}',
                        f'resolve_interval_seconds={self.resolve_interval_seconds}',
                    ],
                    help_text='results are resolved several times per claim tick',
                )
            )
        raise_collected(report)
        return self


class DispatchConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    default_schema: str = Field(
        default=DEFAULT_SCHEMA,
        description='Schema used for unqualified FUNC targets',
    )
    redirect_status: int = Field(
        default=DEFAULT_REDIRECT_STATUS,
        description='Response status that completes a job and spawns a derived job',
    )
    http_timeout_seconds: Annotated[float, Field(gt=0)] = Field(
        default=30.0, description='Timeout for one outbound HTTP request'
    )
    default_rate_limit_delay_seconds: Annotated[int, Field(ge=0)] = Field(
        default=DEFAULT_RATE_LIMIT_DELAY_S,
        description='Delay after a 429 without a usable Retry-After header',
    )

    @model_validator(mode='after')
    def validate_dispatch(self) -> Self:
        report = ValidationReport('dispatch')
        if not 200 <= self.redirect_status <= 299:
            report.add(
                ConfigurationError(
                    message='redirect_status must be a 2xx status code',
                    code=ErrorCode.CONFIG_INVALID_DISPATCH,
                    notes=[f'got redirect_status={self.redirect_status}'],
                    help_text='use 210 (default) or 201',
                )
            )
        if not self.default_schema or '.' in self.default_schema:
            report.add(
                ConfigurationError(
                    message='default_schema must be a bare schema name',
                    code=ErrorCode.CONFIG_INVALID_DISPATCH,
                    notes=[f'got default_schema={self.default_schema!r}'],
                )
            )
        raise_collected(report)
        return self


class PollConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    lease_seconds: Annotated[int, Field(ge=1)] = Field(
        default=POLL_LEASE_S, description='Time a pull consumer has to ack'
    )
    replay_window_seconds: Annotated[float, Field(ge=0)] = Field(
        default=POLL_REPLAY_WINDOW_S,
        description='Maximum age of a poll request timestamp',
    )
    scan_limit: Annotated[int, Field(ge=1, le=1_000)] = Field(
        default=50,
        description='Candidate rows examined per poll when matching signatures',
    )

    @model_validator(mode='after')
    def validate_poll(self) -> Self:
        report = ValidationReport('poll')
        if self.replay_window_seconds >= self.lease_seconds:
            report.add(
                ConfigurationError(
                    message='replay_window_seconds must be shorter than lease_seconds',
                    code=ErrorCode.CONFIG_INVALID_POLL,
                    notes=[
                        f'replay_window_seconds={self.replay_window_seconds}',
                        f'lease_seconds={self.lease_seconds}',
                        'a signed poll request could be replayed after the lease it took expired',
                    ],
                    help_text='keep the replay window at a few seconds',
                )
            )
        raise_collected(report)
        return self


class AppConfig(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    store: PostgresConfig
    sweep: SweepConfig = Field(default_factory=SweepConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    poll: PollConfig = Field(default_factory=PollConfig)

    def log_config(self) -> str:
        """Human-readable summary with the database password masked."""
        return (
            f'store={mask_database_url(self.store.database_url)} '
            f'batch_size={self.sweep.batch_size} '
            f'tick={self.sweep.tick_seconds}s '
            f'resolve_every={self.sweep.resolve_interval_seconds}s '
            f'redirect_status={self.dispatch.redirect_status} '
            f'lease={self.poll.lease_seconds}s'
        )
