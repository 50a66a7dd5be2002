"""Failure taxonomy for video generation jobs.

- SubmissionError: the initial job request was rejected
- PollError: a status check could not be completed
- ProtocolViolation: the service reported completion without a result

Each may additionally be classified as a credential failure, in which case
the caller should re-authenticate before submitting again.
"""

from __future__ import annotations

from typing import Optional

# Upstream reports a revoked or unknown API key this way; no structured code exists yet.
CREDENTIAL_NOT_FOUND_SIGNATURE = "Requested entity was not found"

TAG_CREDENTIAL_INVALID = "credential_invalid"
TAG_CREDENTIAL_MISSING = "credential_missing"
TAG_QUOTA_EXCEEDED = "quota_exceeded"
TAG_INVALID_REQUEST = "invalid_request"
TAG_NETWORK = "network"


class TrackerError(Exception):
    """Base class for classified job failures.

    ``tag`` is the collaborator's classification, when it had one.
    ``credential_invalid`` is tracked separately so a tagged error can still
    be recognised as a credential problem.
    """

    prefix: str = ""

    def __init__(
        self,
        message: str,
        tag: Optional[str] = None,
        credential_invalid: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.tag = tag
        if credential_invalid is None:
            credential_invalid = tag == TAG_CREDENTIAL_INVALID
        self.credential_invalid = credential_invalid

    @property
    def kind(self) -> str:
        return type(self).__name__

    def display_message(self) -> str:
        """Message to render verbatim next to the status line."""
        if self.prefix:
            return f"{self.prefix}: {self.message}"
        return self.message


class SubmissionError(TrackerError):
    prefix = "Failed to start video generation"


class PollError(TrackerError):
    prefix = "Error checking video status"


class ProtocolViolation(TrackerError):
    """Completion was reported but no result reference came with it."""


def is_credential_signature(message: str | None) -> bool:
    return bool(message) and CREDENTIAL_NOT_FOUND_SIGNATURE in message


def classify_error(exception: BaseException, category: type[TrackerError]) -> TrackerError:
    """Classify a collaborator failure into ``category``.

    Args:
        exception: Whatever the submitter or poller raised
        category: SubmissionError or PollError, depending on the failing call

    Returns:
        A ``category`` instance. Errors already of that category keep their
        message and tag; anything else is wrapped. The "entity not found" wording
        marks the error as a credential problem whatever its tag; untagged
        errors also take the credential tag.
    """
    if isinstance(exception, category):
        classified = exception
    elif isinstance(exception, TrackerError):
        classified = category(
            exception.message,
            tag=exception.tag,
            credential_invalid=exception.credential_invalid,
        )
    else:
        message = str(exception) or exception.__class__.__name__
        classified = category(message)

    if is_credential_signature(classified.message):
        classified.credential_invalid = True
        if classified.tag is None:
            classified.tag = TAG_CREDENTIAL_INVALID

    return classified
