"""Domain errors raised by the auth utilities and rendered by the handlers in main.py."""


class AuthError(Exception):
    status_code = 400
    default_message = "Request could not be completed"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidCode(AuthError):
    default_message = "Invalid authentication code"


class NotSetUp(AuthError):
    default_message = "Two-factor authentication is not set up"


class InvalidOrExpiredToken(AuthError):
    default_message = "Invalid or expired token"


class NotFound(AuthError):
    default_message = "Not found"


class Conflict(AuthError):
    status_code = 409
    default_message = "Resource already exists"


class AccountLocked(AuthError):
    status_code = 423
    default_message = "Account temporarily locked due to too many failed login attempts"


class EmailDeliveryError(AuthError):
    status_code = 502
    default_message = "Email could not be delivered"
