"""GrowthLab Metrics — Application Errors."""


class CalculationRequestError(Exception):
    """Raised when a request is rejected before any work is done."""

    def __init__(self, message: str, status_code: int = 400):
        self.status_code = status_code
        super().__init__(message)
