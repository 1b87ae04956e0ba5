"""Error taxonomy for the generation lifecycle.

Route handlers map these onto HTTP status codes:

    GenerationValidationError, WebhookValidationError  → 400
    WebhookAuthenticationError                         → 401
    TrackNotFoundError                                 → 404
    PredictionNotSubmittedError                        → 409
    UpstreamError (Replicate / storage / Spotify)      → 502, or 500 from the webhook

Upstream failures that happen after a track row exists are never raised to
the original caller on their own; they are captured into
``tracks.error_message`` through the state machine.
"""
from __future__ import annotations


class MelodyMakerError(Exception):
    """Base class for all service-level errors."""


class GenerationValidationError(MelodyMakerError):
    """A generation request was rejected before any record was created."""


class WebhookValidationError(MelodyMakerError):
    """A provider callback was malformed (bad JSON, missing prediction id)."""


class WebhookAuthenticationError(MelodyMakerError):
    """A provider callback failed HMAC signature verification."""


class TrackNotFoundError(MelodyMakerError):
    """No track matches the given id or prediction id."""


class UpstreamError(MelodyMakerError):
    """An external collaborator (compute, storage, search) call failed."""


class ReplicateError(UpstreamError):
    """Replicate rejected a request or could not be reached."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class StorageError(UpstreamError):
    """The object store could not persist or return an object."""


class ArtifactRelocationError(UpstreamError):
    """The finished audio could not be downloaded or copied into owned storage."""


class SpotifyError(UpstreamError):
    """Spotify rejected a request or could not be reached."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class PredictionNotSubmittedError(MelodyMakerError):
    """A track has no Replicate prediction yet, so there is nothing to read back."""
