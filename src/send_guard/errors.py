# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception taxonomy for the dispatch layer.

Every error carries a stable ``code`` so the command layer and the REST API
can map it to a response without string matching.

Only :class:`MessageValidationError` ever reaches a producer. Admission
denials and transport failures are absorbed by the dispatch loop and show up
as message status (``pending`` with ``last_error`` or terminal ``failed``).
"""

from __future__ import annotations


class SendGuardError(Exception):
    """Base class for all send-guard errors."""

    code = "send_guard_error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class MessageValidationError(SendGuardError):
    """Raised when an enqueue request is malformed. The message never enters the queue."""

    code = "validation_error"

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class AdmissionDenied(SendGuardError):
    """The health gate or the rate limiter refused a dispatch for now."""

    code = "admission_denied"

    def __init__(self, message: str, retry_after_ms: int = 0):
        super().__init__(message)
        self.retry_after_ms = max(0, int(retry_after_ms))


class TransportError(SendGuardError):
    """The account client failed to deliver a message.

    ``provider_signal`` is set when the failure looks like the messaging
    provider pushing back (throttling, temporary ban) rather than a plain
    network problem.
    """

    code = "transport_error"

    def __init__(self, message: str, provider_signal: bool = False, status: int | None = None):
        super().__init__(message)
        self.provider_signal = provider_signal
        self.status = status


class ConfigError(SendGuardError):
    """Invalid queue or health configuration. The previous configuration is retained."""

    code = "config_error"


class AccountNotFoundError(SendGuardError):
    """No health ledger exists yet for the requested account."""

    code = "not_found"

    def __init__(self, account_id: str):
        super().__init__(f"no health data for account '{account_id}'")
        self.account_id = account_id
