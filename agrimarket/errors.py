from fastapi import status


class BookingError(Exception):
    """Base class for expected failures of a booking operation.

    Raised before any state change is committed; routers turn it into an
    HTTP error with ``status_code``.
    """

    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Booking operation failed."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)


class BookingNotFound(BookingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Booking not found."


class NotFound(BookingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found."


class JobUnavailable(BookingError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "This job is no longer available."


class ItemUnavailable(BookingError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Selected item is not available."


class PurposeNotSupported(BookingError):
    status_code = status.HTTP_422_UNPROCESSABLE_CONTENT
    default_message = "The selected item does not support the requested work purpose."


class InsufficientQuantity(BookingError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Selected item does not have enough quantity."


class InvalidOtp(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid OTP. Please try again."


class InvalidTransition(BookingError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "This action is not allowed in the booking's current status."


class NotAParty(BookingError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "You are not allowed to act on this booking."
