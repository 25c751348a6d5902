"""Error kinds raised along the notification-to-submission pipeline.

Every error carries the HTTP status the webhook answers with when the error
escapes a request handler.
"""
from typing import Optional


class RelayError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthenticationError(RelayError):
    """Bad signature, or Reddit credentials that a refresh could not fix"""
    status_code = 403


class NotFoundError(RelayError):
    """Unknown or deleted subscription, account or subreddit"""
    status_code = 404


class MalformedRequestError(RelayError):
    """Missing or unparseable request parameters or headers"""
    status_code = 400


class ParseError(RelayError):
    """Notification body is not a usable Atom feed"""
    status_code = 400

    def __init__(self, message: str, raw_body: bytes = b""):
        super().__init__(message)
        self.raw_body = raw_body


class DuplicateSubmissionError(RelayError):
    """The (video, account, subreddit) triple is already claimed"""
    status_code = 409


class TransientNetworkError(RelayError):
    """Timeouts, rate limits and 5xx responses; retried before surfacing"""
    status_code = 503


class PostingError(RelayError):
    """Reddit rejected the post, or retries were exhausted"""
    status_code = 502

    def __init__(self, message: str, target: Optional[object] = None):
        super().__init__(message)
        self.target = target


class SubscriptionRequestError(RelayError):
    """The hub refused a subscribe request"""
    status_code = 502
