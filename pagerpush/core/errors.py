from __future__ import annotations


class PagerPushError(Exception):
    """Base error for PagerPush."""


class ProviderConfigError(PagerPushError):
    """Missing or invalid push gateway configuration."""


class QueueUnavailableError(PagerPushError):
    """Notification queue could not durably record or serve a job."""


class JobNotFoundError(PagerPushError):
    """Queue operation referenced a job id that is not stored."""


class TransportError(PagerPushError):
    """Push gateway connection or stream failure; safe to retry."""


class TransportTimeoutError(TransportError):
    """Push gateway connect or request exceeded its timeout."""


class PayloadValidationError(PagerPushError):
    """Notification job or payload is malformed; never retried."""


class RecipientDirectoryError(PagerPushError):
    """Recipient directory or token cleanup hook is missing or cannot be loaded."""
