class InvalidSignalData(ValueError):
    """Raised when a signal or log payload fails validation before any SQL runs."""

    def __init__(self, message: str, errors=None):
        super().__init__(message)
        self.errors = errors or []
