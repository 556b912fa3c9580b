class BoardError(Exception):
    """Base class for failures surfaced to API callers."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidArgument(BoardError):
    status_code = 400


class NotFound(BoardError):
    status_code = 404


class Unavailable(BoardError):
    status_code = 503


class Internal(BoardError):
    status_code = 500
