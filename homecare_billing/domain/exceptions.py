"""Domain-specific exceptions"""

from typing import List, Optional


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class RuleConfigurationError(DomainException):
    """Bonus rule definition is malformed or cannot be evaluated"""

    def __init__(self, rule_code: str, message: str):
        super().__init__(f"{rule_code}: {message}")
        self.rule_code = rule_code


class IllegalTransitionError(DomainException):
    """Lifecycle transition refused; no state was changed"""

    def __init__(self, code: str, messages: Optional[List[str]] = None):
        self.code = code
        self.messages = messages or []
        super().__init__(code if not self.messages else f"{code}: {'; '.join(self.messages)}")


class RecalculationFailedError(DomainException):
    """Persistence failed and the transaction was rolled back; safe to retry"""

    pass


class NotFoundError(DomainException):
    """Referenced entity does not exist"""

    pass


class ReceiptNotFoundError(NotFoundError):
    pass


class VisitRecordNotFoundError(NotFoundError):
    pass


class PatientNotFoundError(NotFoundError):
    pass


class FacilityNotFoundError(NotFoundError):
    pass


class RuleNotFoundError(NotFoundError):
    pass
