"""
ColdTrack Compliance: Error Taxonomy

Every engine error carries a machine code and the HTTP status the API layer
should answer with.
"""


class ComplianceError(Exception):
    """Base class for all compliance engine errors."""

    code = "COMPLIANCE_ERROR"
    status_code = 400

    def __init__(self, message: str, code: str = None, status_code: int = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code

    def to_dict(self):
        return {"ok": False, "error": self.message, "code": self.code}


class ConfigurationError(ComplianceError):
    """Invalid recurrence rule or window monitor definition."""

    code = "CONFIGURATION_ERROR"
    status_code = 400

    def __init__(self, message: str, errors: list = None):
        super().__init__(message)
        self.errors = list(errors or [message])

    def to_dict(self):
        d = super().to_dict()
        d["errors"] = self.errors
        return d


class ValidationError(ComplianceError):
    """Malformed event payload or request."""

    code = "VALIDATION_ERROR"
    status_code = 400


class StateConflictError(ComplianceError):
    """Requested transition is not legal from the occurrence's current status."""

    code = "STATE_CONFLICT"
    status_code = 409


class NotFoundError(ComplianceError):
    code = "NOT_FOUND"
    status_code = 404
