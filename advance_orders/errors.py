class AdvanceOrderError(Exception):
    """Base class for scheduling and POS delivery failures."""


class ClassificationError(AdvanceOrderError):
    """Scheduling input could not be interpreted; callers fall back to immediate."""


class InvalidOrderError(AdvanceOrderError):
    pass


class OrderNotFoundError(AdvanceOrderError):
    pass


class ScheduleNotFoundError(AdvanceOrderError):
    pass


class InvalidTransitionError(AdvanceOrderError):
    def __init__(self, order_id: str, status: str, action: str) -> None:
        super().__init__(f"cannot {action} order {order_id} in status {status}")
        self.order_id = order_id
        self.status = status
        self.action = action


class POSError(AdvanceOrderError):
    retryable = True


class POSUnavailableError(POSError):
    """Integration disabled or not configured for the tenant."""

    retryable = False


class POSTransportError(POSError):
    """Timeout, connection failure or non-2xx response from the POS."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RetryExhaustedError(AdvanceOrderError):
    def __init__(self, order_id: str, retry_count: int) -> None:
        super().__init__(f"order {order_id} exhausted {retry_count} retry attempts")
        self.order_id = order_id
        self.retry_count = retry_count
