from __future__ import annotations


class HalaxyError(Exception):
    """Base class for failures raised by the Halaxy integration."""


class ConfigurationError(HalaxyError):
    pass


class UpstreamAuthError(HalaxyError):
    def __init__(self, status_code: int, response_body: str) -> None:
        super().__init__(
            f"Failed to obtain Halaxy access token: {status_code}. {response_body}"
        )
        self.status_code = status_code
        self.response_body = response_body


class UpstreamApiError(HalaxyError):
    def __init__(self, message: str, status_code: int, response_body: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

    def describe(self, preview_chars: int = 200) -> str:
        return f"{self} : {self.response_body[:preview_chars]}"


class TransformError(HalaxyError):
    def __init__(self, entity_type: str, entity_id: str | None, message: str) -> None:
        super().__init__(message)
        self.entity_type = entity_type
        self.entity_id = entity_id


class InputValidationError(HalaxyError, ValueError):
    """Raised before any network call when local input is unusable."""


def describe_error(error: BaseException) -> str:
    if isinstance(error, UpstreamApiError):
        return error.describe()
    message = str(error)
    return message or error.__class__.__name__
