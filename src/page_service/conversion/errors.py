"""Error taxonomy shared by the conversion domain and the HTTP layer."""


class ConversionError(Exception):
    status_code = 500
    kind = "internal"

    def __init__(self, message: str, *, kind: str | None = None, **context: object) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.context = context

    def to_dict(self) -> dict[str, object]:
        body: dict[str, object] = {"error": self.message, "kind": self.kind}
        body.update({k: v for k, v in self.context.items() if v is not None})
        return body


class ValidationError(ConversionError):
    status_code = 400
    kind = "validation"


class ConflictError(ConversionError):
    status_code = 409
    kind = "already_in_progress"

    @property
    def job_id(self) -> str | None:
        return self.context.get("jobId")  # type: ignore[return-value]


class NotFoundError(ConversionError):
    status_code = 404
    kind = "not_found"


class ExternalFailure(ConversionError):
    """Rasterizer, storage or timeout failure captured on a job."""

    status_code = 502
    kind = "external"

    def __init__(self, message: str, *, retryable: bool = True, **context: object) -> None:
        super().__init__(message, **context)
        self.retryable = retryable


class InternalError(ConversionError):
    status_code = 500
    kind = "internal"

    def __init__(self, message: str = "Internal error", **context: object) -> None:
        super().__init__(message, **context)
