from __future__ import annotations


class DigestCronError(Exception):
    """Base error for digestcron."""


class ConfigError(DigestCronError):
    """Malformed schedule config or recipient profile."""


class BlobStoreError(DigestCronError):
    """Backing blob namespace failure."""


class BlobNotFoundError(BlobStoreError):
    """Requested blob id does not exist."""


class PersistenceError(DigestCronError):
    """Best-effort scheduler document write failed (breaker, log, marker)."""


class JobComputationError(DigestCronError):
    """The content computation of a job raised; the job is reported ok=false."""


class ServiceAuthError(DigestCronError):
    """Service identity could not be established for this tick."""

    def __init__(self, code: str, message: str | None = None) -> None:
        super().__init__(message or code)
        self.code = code


class ChannelError(DigestCronError):
    """Classified delivery failure from a notification channel."""

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        kind: str = "http",
        status: int | None = None,
        code: str | None = None,
        attempts: int = 1,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status = status
        self.code = code
        self.attempts = attempts


class TransientChannelError(ChannelError):
    """Timeout, network, 429 or 5xx failure; eligible for retry."""

    retryable = True


class PermanentChannelError(ChannelError):
    """Non-retryable delivery failure (4xx other than 429)."""


class MissingTargetSecretError(PermanentChannelError):
    """No secret URL is configured for a target key."""

    def __init__(self, channel: str, target_key: str) -> None:
        super().__init__(
            f"No {channel} target configured for key {target_key}",
            kind="config",
            code="missing_target_secret",
        )
        self.channel = channel
        self.target_key = target_key
