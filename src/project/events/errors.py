# events/errors.py
"""Registration failures, each with a stable machine-readable code."""


class RegistrationError(Exception):
    code = "internal_error"
    default_message = "Something went wrong. Please try again."
    status = 500

    def __init__(self, message=None, errors=None):
        self.message = message or self.default_message
        # field id -> list of messages
        self.errors = errors or {}
        super().__init__(self.message)

    def as_dict(self):
        return {
            "success": False,
            "code": self.code,
            "message": self.message,
            "errors": self.errors,
        }


class ValidationFailed(RegistrationError):
    code = "validation_failed"
    default_message = "Please correct the highlighted fields."
    status = 400


class FileTooLarge(RegistrationError):
    code = "file_too_large"
    default_message = "The file is too large."
    status = 400


class UnsupportedFileType(RegistrationError):
    code = "unsupported_file_type"
    default_message = "This file type is not allowed."
    status = 400


class CapacityExceeded(RegistrationError):
    code = "capacity_exceeded"
    default_message = "This event has reached maximum capacity."
    status = 409


class AlreadyRegistered(RegistrationError):
    code = "already_registered"
    default_message = "You have already registered for this event."
    status = 409


class FormInactive(RegistrationError):
    code = "form_inactive"
    default_message = "Registration is closed for this event."
    status = 409


class NotFound(RegistrationError):
    code = "not_found"
    default_message = "Event or registration form not found."
    status = 404


class InternalError(RegistrationError):
    pass


class InvalidTransition(Exception):
    """Raised when the registration wizard is asked for an illegal move."""
