from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class Document(BaseModel):
    # Persisted documents keep their camelCase JSON keys; Python code uses snake_case.
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class BreakerError(Document):
    message: str
    code: str | None = None
    status: int | None = None


class BreakerTarget(Document):
    channel: str
    target_key: str | None = Field(default=None, alias="targetKey")
    recipient_key: str | None = Field(default=None, alias="recipientKey")
    state: Literal["open", "muted"] = "open"
    failure_count: int = Field(default=0, alias="failureCount")
    first_failure_at: datetime | None = Field(default=None, alias="firstFailureAtISO")
    last_failure_at: datetime | None = Field(default=None, alias="lastFailureAtISO")
    muted_until: datetime | None = Field(default=None, alias="mutedUntilISO")
    last_error: BreakerError | None = Field(default=None, alias="lastError")

    @property
    def key(self) -> str:
        # Email is keyed by recipient, chat and webhook by target alias.
        suffix = self.recipient_key if self.channel == "email" else self.target_key
        return f"{self.channel}:{suffix or ''}"


class CircuitBreakerState(Document):
    version: int = 1
    updated_at: datetime = Field(default=EPOCH, alias="updatedAtISO")
    targets: list[BreakerTarget] = Field(default_factory=list)


class CronLock(Document):
    version: int = 1
    holder: str
    acquired_at: datetime = Field(alias="acquiredAtISO")
    lease_until: datetime = Field(alias="leaseUntilISO")


class DeliveryMarker(Document):
    channel: str
    run_key: str = Field(alias="runKey")
    recipient_key: str = Field(alias="recipientKey")
    target_key: str | None = Field(default=None, alias="targetKey")
    sent_at: datetime = Field(alias="sentAtISO")
    message_id: str | None = Field(default=None, alias="messageId")
    details: dict[str, Any] | None = None


class ReportMarker(Document):
    run_key: str = Field(alias="runKey")
    profile_id: str = Field(alias="profileId")
    report_file_id: str = Field(alias="reportFileId")
    report_file_name: str = Field(alias="reportFileName")
    saved_at: datetime = Field(alias="savedAtISO")


class DeliveryFailure(Document):
    channel: str
    recipient_key: str | None = Field(default=None, alias="recipientKey")
    target_key: str | None = Field(default=None, alias="targetKey")
    message: str
    code: str | None = None
    status: int | None = None
    attempts: int | None = None


class EmailOutcome(Document):
    mode: Literal["broadcast", "routes"]
    attempted: bool = False
    ok: bool | None = None
    skipped: bool = False
    reason: str | None = None
    error: str | None = None
    message_id: str | None = Field(default=None, alias="messageId")
    marker_warning: str | None = Field(default=None, alias="markerWarning")


class DeliveryCounts(Document):
    attempted: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    attempts_total: int = Field(default=0, alias="attemptsTotal")


class ReportCounts(Document):
    generated: int = 0
    reused: int = 0
    skipped: int = 0
    failed: int = 0


class JobRunLogEntry(Document):
    ts: datetime = Field(alias="tsISO")
    job_id: str = Field(alias="jobId")
    type: str
    ok: bool
    duration_ms: int = Field(default=0, alias="durationMs")
    run_key: str | None = Field(default=None, alias="runKey")
    error: str | None = None
    email: EmailOutcome | None = None
    routes: DeliveryCounts | None = None
    slack: DeliveryCounts | None = None
    webhook: DeliveryCounts | None = None
    reports: ReportCounts | None = None
    failures: list[DeliveryFailure] | None = None
    warnings: list[str] | None = None
