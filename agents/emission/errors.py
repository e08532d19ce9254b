"""Exception hierarchy for the emission pipeline."""

from __future__ import annotations

from typing import List, Optional


class EmissionError(RuntimeError):
    pass


class ConfigurationError(EmissionError):
    """Required configuration (client id/secret, credentials record) is missing."""


class TokenError(EmissionError):
    """The auth endpoint did not hand out a token."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(TokenError):
    """The auth endpoint rejected the credentials (401/403)."""


class MalformedRequestError(TokenError):
    """The auth endpoint rejected the grant request itself (400)."""


class AuthServiceError(TokenError):
    """The auth endpoint failed (5xx) or could not be reached."""


class DocumentNotFoundError(EmissionError):
    def __init__(self, document_id: int) -> None:
        super().__init__(f"Document {document_id} not found")
        self.document_id = document_id


class MappingError(EmissionError):
    """The document cannot be translated into an external payload."""

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [message])


class NumberingError(EmissionError):
    pass


class NoActiveRangeError(NumberingError):
    pass


class RangeExhaustedError(NumberingError):
    pass


class RangeNotFoundError(NumberingError):
    pass


class ReservationNotFoundError(NumberingError):
    pass


class ReservationStateError(NumberingError):
    pass
