"""Error taxonomy for the generation pipeline.

Every error carries a stable ``code`` and the HTTP ``status_code`` the web
layer answers with. Messages are meant for clients and never include
internal details such as stack traces or engine output.
"""


class DocGenError(Exception):
    """Base class for pipeline errors."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class InternalServiceError(DocGenError):
    code = "internal_error"
    status_code = 500

    def __init__(self, message: str = "Internal server error") -> None:
        super().__init__(message)


# Client input


class ClientInputError(DocGenError):
    code = "invalid_request"
    status_code = 400


class MissingDataError(ClientInputError):
    code = "missing_data"

    def __init__(self, message: str = "Missing 'data' field") -> None:
        super().__init__(message)


class InvalidDataFormatError(ClientInputError):
    code = "invalid_data_format"


class NoFileUploadedError(ClientInputError):
    code = "no_file_uploaded"

    def __init__(self, message: str = "No file uploaded") -> None:
        super().__init__(message)


class UnsupportedFormatError(ClientInputError):
    code = "unsupported_format"


class PayloadTooLargeError(ClientInputError):
    code = "payload_too_large"
    status_code = 413


# Template resolution


class TemplateResolutionError(DocGenError):
    code = "template_resolution_failed"


class TemplateNotFoundError(TemplateResolutionError):
    code = "template_not_found"
    status_code = 500

    def __init__(self, searched: list[str]) -> None:
        self.searched = list(searched)
        locations = ", ".join(self.searched) if self.searched else "<none>"
        super().__init__(f"Default template not found; searched: {locations}")


class TemplateEmptyError(TemplateResolutionError):
    code = "template_empty"
    status_code = 400


class TemplateFetchError(TemplateResolutionError):
    code = "template_fetch_failed"
    status_code = 400


# Rendering


class RenderError(DocGenError):
    code = "render_failed"


class InvalidTemplateFormatError(RenderError):
    code = "invalid_template_format"
    status_code = 400


class MalformedTemplateMarkupError(RenderError):
    code = "malformed_template_markup"
    status_code = 400


class MissingFieldError(RenderError):
    code = "missing_field"
    status_code = 400

    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"Missing value for template field '{field}'")


class RenderEngineError(RenderError):
    code = "render_engine_failure"
    status_code = 500


# Conversion


class ConversionError(DocGenError):
    code = "conversion_error"


class ConversionEngineUnavailableError(ConversionError):
    code = "conversion_engine_unavailable"
    status_code = 503


class ConversionFailedError(ConversionError):
    code = "conversion_failed"
    status_code = 500


class ConversionTimeoutError(ConversionError):
    code = "conversion_timeout"
    status_code = 504
