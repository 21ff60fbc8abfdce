"""
Exception hierarchy for the lending engine.

Validation errors subclass ValueError and authorization errors subclass
PermissionError, so callers that only know the built-in types still catch them.
"""


class LendingError(Exception):
    """Base class for all lending engine errors"""


class LoanValidationError(LendingError, ValueError):
    """Caller-correctable input problem; nothing was mutated"""


class LoanNotFoundError(LendingError, LookupError):
    """Referenced loan does not exist"""

    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__(f"Loan {loan_id} not found")


class PaymentNotFoundError(LendingError, LookupError):
    """Referenced payment does not exist"""

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment {payment_id} not found")


class PaymentAuthorizationError(LendingError, PermissionError):
    """Actor lacks the permission required for the requested operation"""

    def __init__(self, user_id: str, permission: str):
        self.user_id = user_id
        self.permission = permission
        super().__init__(f"User {user_id} lacks permission {permission}")
