# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Data models for the dispatch queue and the health monitor.

This module defines the types shared by every component:

Enumerations:
    - MessageKind, Priority, MessageStatus: queued message attributes
    - HealthStatus, ActivityType: health ledger vocabulary

Configuration (pydantic, immutable, validated):
    - QueueConfig: pacing, rate limiting and retry settings
    - HealthSettings: tunable constants of the health score formula

Runtime records (dataclasses, mutated only by their owning component):
    - QueuedMessage and its payload parts
    - ActivityEvent, HealthMetrics, DeviceHealth, SafetyDecision
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from .errors import ConfigError


class MessageKind(str, Enum):
    """Kind of content carried by a queued message."""

    TEXT = "text"
    MEDIA = "media"
    LOCATION = "location"


class Priority(str, Enum):
    """Dispatch priority. Lower rank dispatches first."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.NORMAL: 1, Priority.LOW: 2}


class MessageStatus(str, Enum):
    """Lifecycle of a queued message.

    ``pending`` -> ``processing`` -> ``sent``, or back to ``pending`` for a
    retry, or ``failed`` once attempts are exhausted.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageStatus.SENT, MessageStatus.FAILED)


class HealthStatus(str, Enum):
    """Categorical account status derived from the health score."""

    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    BLOCKED = "blocked"

    @property
    def severity(self) -> int:
        return _STATUS_SEVERITY[self]


_STATUS_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.WARNING: 1,
    HealthStatus.CRITICAL: 2,
    HealthStatus.BLOCKED: 3,
}


class ActivityType(str, Enum):
    """Events recorded in an account's activity log."""

    SENT = "sent"
    FAILED = "failed"
    DISCONNECTED = "disconnected"
    RECONNECTED = "reconnected"


def _camel_to_field(model: type[BaseModel]) -> dict[str, str]:
    mapping = {}
    for name in model.model_fields:
        mapping[name] = name
        mapping[to_camel(name)] = name
    return mapping


class QueueConfig(BaseModel):
    """Process-wide queue configuration.

    Instances are frozen: a configuration change builds a new object with
    :meth:`merged` and the queue swaps its reference in one assignment, so a
    tick never observes a half-applied update.

    Attributes:
        min_delay_ms: Lower bound of the random gap between two sends of one account.
        max_delay_ms: Upper bound of that gap; also caps retry backoff.
        messages_per_minute: Sliding-window cap per account.
        burst_limit: Max sends per account inside ``burst_window_ms``.
        burst_window_ms: Width of the burst window.
        max_attempts: Default attempt ceiling for new messages.
        retry_delay_ms: Base of the exponential retry backoff.
        typing_delay_simulation: Show a typing indicator before text sends.
        not_ready_delay_ms: Re-check delay when the account is disconnected.
        send_timeout_ms: Account client call timeout; a timeout is a retryable failure.
    """

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    min_delay_ms: Annotated[int, Field(default=1000, ge=0)]
    max_delay_ms: Annotated[int, Field(default=10000, ge=0)]
    messages_per_minute: Annotated[int, Field(default=10, ge=1)]
    burst_limit: Annotated[int, Field(default=3, ge=1)]
    burst_window_ms: Annotated[int, Field(default=10000, ge=1)]
    max_attempts: Annotated[int, Field(default=3, ge=1)]
    retry_delay_ms: Annotated[int, Field(default=5000, ge=0)]
    typing_delay_simulation: bool = True
    not_ready_delay_ms: Annotated[int, Field(default=30000, ge=0)]
    send_timeout_ms: Annotated[int, Field(default=30000, ge=1)]

    @model_validator(mode="after")
    def check_bounds(self) -> QueueConfig:
        if self.min_delay_ms > self.max_delay_ms:
            raise ValueError("min_delay_ms must not exceed max_delay_ms")
        if self.burst_limit > self.messages_per_minute:
            raise ValueError("burst_limit must not exceed messages_per_minute")
        return self

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> QueueConfig:
        """Build a configuration from snake_case or camelCase keys.

        Raises:
            ConfigError: If any key is unknown or any value is invalid.
        """
        return cls().merged(data)

    def merged(self, partial: Mapping[str, Any]) -> QueueConfig:
        """Return a validated copy with ``partial`` applied on top.

        Args:
            partial: Subset of options, snake_case or camelCase.

        Raises:
            ConfigError: If any key is unknown or the result is invalid.
        """
        names = _camel_to_field(QueueConfig)
        data = self.model_dump()
        for key, value in partial.items():
            if key not in names:
                raise ConfigError(f"unknown queue option '{key}'")
            data[names[key]] = value
        try:
            return QueueConfig.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(_describe_validation_error(exc)) from exc


class HealthSettings(BaseModel):
    """Tunable constants of the health score formula.

    The status thresholds (80/50/20) are fixed; everything that shapes how
    fast a score moves between them lives here.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    activity_log_size: Annotated[int, Field(default=500, ge=10)]

    # Success rate (heaviest factor)
    success_prior: Annotated[float, Field(default=5.0, ge=0)]
    success_exponent: Annotated[float, Field(default=2.0, gt=0)]
    low_success_rate: Annotated[float, Field(default=90.0, ge=0, le=100)]
    critical_success_rate: Annotated[float, Field(default=50.0, ge=0, le=100)]
    min_attempts_for_escalation: Annotated[int, Field(default=5, ge=1)]

    # Disconnections in the last 24h
    disconnect_penalty: Annotated[float, Field(default=10.0, ge=0)]
    disconnect_threshold: Annotated[int, Field(default=3, ge=0)]
    disconnect_penalty_beyond: Annotated[float, Field(default=5.0, ge=0)]
    max_disconnect_penalty: Annotated[float, Field(default=50.0, ge=0)]

    # Response time
    response_time_baseline_ms: Annotated[float, Field(default=5000.0, gt=0)]
    response_time_penalty_per_second: Annotated[float, Field(default=5.0, ge=0)]
    max_response_time_penalty: Annotated[float, Field(default=20.0, ge=0)]
    response_time_alpha: Annotated[float, Field(default=0.2, gt=0, le=1)]

    # Volume
    hourly_cap: Annotated[int, Field(default=60, ge=1)]
    volume_penalty_per_message: Annotated[float, Field(default=2.0, ge=0)]
    max_volume_penalty: Annotated[float, Field(default=20.0, ge=0)]

    # Warm-up ramp
    warmup_duration_ms: Annotated[int, Field(default=7 * 24 * 3600 * 1000, ge=1)]
    warmup_initial_score_cap: Annotated[int, Field(default=50, ge=0, le=100)]
    warmup_final_score_cap: Annotated[int, Field(default=79, ge=0, le=100)]
    warmup_initial_hourly_cap: Annotated[int, Field(default=10, ge=1)]
    auto_warmup: bool = True
    dormancy_ms: Annotated[int, Field(default=7 * 24 * 3600 * 1000, ge=1)]

    # Admission
    cooldown_ms: Annotated[int, Field(default=15 * 60 * 1000, ge=0)]
    recommended_delay_base_ms: Annotated[int, Field(default=2000, ge=0)]
    blocked_recheck_ms: Annotated[int, Field(default=60000, ge=0)]

    @model_validator(mode="after")
    def check_ramp(self) -> HealthSettings:
        if self.warmup_initial_score_cap > self.warmup_final_score_cap:
            raise ValueError("warmup_initial_score_cap must not exceed warmup_final_score_cap")
        if self.warmup_initial_hourly_cap > self.hourly_cap:
            raise ValueError("warmup_initial_hourly_cap must not exceed hourly_cap")
        return self

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> HealthSettings:
        """Build settings from a mapping, raising :class:`ConfigError` on bad values."""
        try:
            return cls.model_validate(dict(data))
        except ValidationError as exc:
            raise ConfigError(_describe_validation_error(exc)) from exc


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "__root__")
        msg = err.get("msg", "invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or "invalid configuration"


# --------------------------------------------------------------------- messages


@dataclass
class MediaPayload:
    data: str
    mimetype: str = "image/jpeg"
    filename: str | None = None

    def to_dict(self, include_data: bool = False) -> dict[str, Any]:
        result: dict[str, Any] = {"mimetype": self.mimetype, "size": len(self.data)}
        if self.filename:
            result["filename"] = self.filename
        if include_data:
            result["data"] = self.data
        return result


@dataclass
class LocationPayload:
    latitude: float
    longitude: float
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"latitude": self.latitude, "longitude": self.longitude}
        if self.description:
            result["description"] = self.description
        return result


@dataclass
class SendOptions:
    quoted_message_id: str | None = None
    mentions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.quoted_message_id:
            result["quoted_message_id"] = self.quoted_message_id
        if self.mentions:
            result["mentions"] = list(self.mentions)
        return result


@dataclass
class QueuedMessage:
    """A unit of work owned by exactly one account.

    Producers build it through :meth:`DispatchQueue.enqueue`; afterwards only
    the dispatch loop mutates it. Timestamps are epoch milliseconds.
    """

    id: str
    account_id: str
    recipient: str
    kind: MessageKind
    priority: Priority
    max_attempts: int
    enqueued_at: int
    seq: int
    text: str | None = None
    media: MediaPayload | None = None
    location: LocationPayload | None = None
    options: SendOptions = field(default_factory=SendOptions)
    attempts: int = 0
    status: MessageStatus = MessageStatus.PENDING
    next_eligible_at: int | None = None
    last_error: str | None = None
    sent_at: int | None = None
    failed_at: int | None = None

    @property
    def sort_key(self) -> tuple[int, int, int]:
        """Priority first, then enqueue time, then arrival order."""
        return (self.priority.rank, self.enqueued_at, self.seq)

    def is_eligible(self, now_ms: int) -> bool:
        return self.next_eligible_at is None or self.next_eligible_at <= now_ms

    @property
    def content_length(self) -> int:
        return len(self.text or "")

    def payload(self) -> dict[str, Any]:
        """Build the payload handed to the account client."""
        if self.kind is MessageKind.MEDIA and self.media is not None:
            body: dict[str, Any] = {"kind": self.kind.value, **self.media.to_dict(include_data=True)}
            body.pop("size", None)
            if self.text:
                body["caption"] = self.text
            return body
        if self.kind is MessageKind.LOCATION and self.location is not None:
            return {"kind": self.kind.value, **self.location.to_dict()}
        return {"kind": MessageKind.TEXT.value, "text": self.text or ""}

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "account_id": self.account_id,
            "recipient": self.recipient,
            "kind": self.kind.value,
            "priority": self.priority.value,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "enqueued_at": self.enqueued_at,
            "next_eligible_at": self.next_eligible_at,
            "last_error": self.last_error,
            "sent_at": self.sent_at,
            "failed_at": self.failed_at,
        }
        if self.text is not None:
            result["text"] = self.text
        if self.media is not None:
            result["media"] = self.media.to_dict()
        if self.location is not None:
            result["location"] = self.location.to_dict()
        options = self.options.to_dict()
        if options:
            result["options"] = options
        return result


# ----------------------------------------------------------------------- health


@dataclass(frozen=True)
class ActivityEvent:
    type: ActivityType
    timestamp: int
    latency_ms: int | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "timestamp": self.timestamp,
            "latency_ms": self.latency_ms,
            "detail": self.detail,
        }


@dataclass
class HealthMetrics:
    messages_per_hour: int = 0
    success_rate: float = 100.0
    avg_response_time_ms: float = 0.0
    disconnection_count_24h: int = 0
    last_activity_at: int | None = None
    warmup_phase: bool = False
    warmup_started_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "messages_per_hour": self.messages_per_hour,
            "success_rate": round(self.success_rate, 2),
            "avg_response_time_ms": round(self.avg_response_time_ms, 1),
            "disconnection_count_24h": self.disconnection_count_24h,
            "last_activity_at": self.last_activity_at,
            "warmup_phase": self.warmup_phase,
            "warmup_started_at": self.warmup_started_at,
        }


@dataclass
class DeviceHealth:
    """Reputation ledger snapshot of one account."""

    account_id: str
    score: int = 100
    status: HealthStatus = HealthStatus.HEALTHY
    metrics: HealthMetrics = field(default_factory=HealthMetrics)
    warnings: list[str] = field(default_factory=list)
    last_updated: int = 0
    cooldown_until: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "score": self.score,
            "status": self.status.value,
            "metrics": self.metrics.to_dict(),
            "warnings": list(self.warnings),
            "last_updated": self.last_updated,
            "cooldown_until": self.cooldown_until,
        }


@dataclass(frozen=True)
class SafetyDecision:
    safe: bool
    reason: str | None = None
    retry_after_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"safe": self.safe}
        if self.reason:
            result["reason"] = self.reason
        return result
