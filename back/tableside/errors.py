"""
Domain errors raised by the ledger services.

Routes let these propagate; the handler registered in `main.py` turns them
into JSON responses with the matching status code.
"""


class LedgerError(Exception):
    status_code = 400
    code = "ledger_error"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class OrderValidationError(LedgerError):
    """Bad input: unknown item, invalid modifier selection, missing field."""
    status_code = 400
    code = "validation_error"

    def __init__(self, message: str, field: str | None = None, code: str | None = None):
        super().__init__(message, code)
        self.field = field

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class NotFoundError(LedgerError):
    status_code = 404
    code = "not_found"


class StateConflictError(LedgerError):
    """The entity is in a state that does not allow the requested transition."""
    status_code = 409
    code = "state_conflict"


class GatewayUnavailableError(LedgerError):
    """The payment gateway could not create an intent. Nothing was persisted."""
    status_code = 503
    code = "gateway_unavailable"
