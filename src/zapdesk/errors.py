"""Failure taxonomy for the messaging pipeline.

Every error carries a user-facing ``notice``; the session boundary converts
them into notices and never retries.
"""

from __future__ import annotations


class MessagingError(Exception):
    title = "messaging error"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    @property
    def notice(self) -> str:
        return self.detail


class DataUnavailable(MessagingError):
    title = "data unavailable"

    def __init__(self, operation: str, detail: str) -> None:
        super().__init__(f"{operation} failed: {detail}")
        self.operation = operation


class ChannelUnavailable(MessagingError):
    title = "channel disconnected"

    def __init__(self, instance_label: str) -> None:
        super().__init__(
            f"{instance_label} is disconnected; reconnect it before sending."
        )
        self.instance_label = instance_label


class ScopeViolation(MessagingError):
    title = "invalid channel"


class InvalidAddress(MessagingError):
    title = "invalid number"


class MediaRejected(MessagingError):
    title = "media rejected"


class TargetUnavailable(MessagingError):
    title = "upload target unavailable"
    step = "request_upload_target"

    @property
    def notice(self) -> str:
        return f"{self.step}: {self.detail}"


class UploadFailed(MessagingError):
    title = "upload failed"
    step = "upload"

    def __init__(self, status_code: int | None, detail: str | None = None) -> None:
        if detail is None:
            detail = f"storage returned HTTP {status_code}"
        super().__init__(detail)
        self.status_code = status_code

    @property
    def notice(self) -> str:
        return f"{self.step}: {self.detail}"


class AdmissionRejected(MessagingError):
    title = "please wait"

    def __init__(self, retry_after_ms: float, cooldown_ms: float) -> None:
        super().__init__(
            "to avoid provider blocking, send at most one message every "
            f"{cooldown_ms / 1000:g} seconds; retry in {retry_after_ms / 1000:.1f}s."
        )
        self.retry_after_ms = retry_after_ms
        self.cooldown_ms = cooldown_ms


class ProviderRejected(MessagingError):
    title = "send failed"


class ProviderUnreachable(MessagingError):
    title = "send failed"
