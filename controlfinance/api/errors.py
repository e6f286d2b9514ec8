"""Application errors carrying an HTTP status code."""


class AppError(Exception):
    """Raised by services when a request cannot be fulfilled.

    The web layer turns it into a JSON response with ``status_code``.
    """

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message

    @property
    def retryable(self) -> bool:
        """Whether repeating the same request later may succeed."""
        return self.status_code == 429 or self.status_code >= 500

    def __repr__(self) -> str:
        return f"AppError({self.status_code}, {self.message!r})"
