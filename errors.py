from typing import Optional


class FinanceError(Exception):
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(FinanceError, ValueError):
    def __init__(
        self, message: str, field_errors: Optional[dict[str, list[str]]] = None
    ) -> None:
        super().__init__(message)
        self.field_errors = field_errors or {}


class OversizedInputError(ValidationError):
    status_code = 413


class TransactionNotFound(FinanceError, ValueError):
    status_code = 404


class ServiceError(FinanceError, RuntimeError):
    status_code = 502


class StoreError(FinanceError, RuntimeError):
    status_code = 503
