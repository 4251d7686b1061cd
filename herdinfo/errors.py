class HerdInfoError(Exception):
    """Base class for errors raised by the service modules."""
    status_code = 400

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {'error': self.message}


class ValidationError(HerdInfoError):
    """Bad or missing input."""
    status_code = 400


class LicenseError(HerdInfoError):
    """The ranch license does not allow the operation."""
    status_code = 403


class InvitationError(HerdInfoError):
    status_code = 400


class BackupFormatError(HerdInfoError):
    """The uploaded archive is not a usable backup."""
    status_code = 400
