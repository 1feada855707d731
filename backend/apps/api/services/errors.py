# apps/api/services/errors.py


class LamsError(Exception):
    """Base error for the workflow core. Views map ``http_status`` to the response."""

    http_status = 400

    def __init__(self, message: str = "", **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {"error": self.message, "code": type(self).__name__}
        payload.update(self.details)
        return payload


class ValidationError(LamsError):
    http_status = 400


class NotFound(LamsError):
    http_status = 404


class InvalidTransition(LamsError):
    http_status = 409


class Unauthorized(LamsError):
    http_status = 403


class ObjectionsPending(LamsError):
    http_status = 409

    def __init__(self, message: str = "", blockers=None, **details):
        self.blockers = list(blockers or [])
        super().__init__(message, blockers=self.blockers, count=len(self.blockers), **details)


class ConcurrencyConflict(LamsError):
    http_status = 409


class IntegrityMismatch(LamsError):
    http_status = 422


class InvalidSelectionSize(LamsError):
    http_status = 400


class DocumentGenerationError(LamsError):
    http_status = 500
