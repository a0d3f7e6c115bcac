"""Custom exceptions for the quota ledger."""


class QuotaLedgerException(Exception):
    """Base class for ledger exceptions with HTTP status code.

    All custom exceptions inherit from this class and define their
    specific status_code and a stable machine-readable code, so the
    single exception handler in main.py can render them uniformly.
    """
    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    retryable: bool = False

    def __init__(self, message: str = "Quota ledger error"):
        self.message = message
        super().__init__(message)

    def to_response(self) -> dict:
        return {"error": self.code, "message": self.message}


class InsufficientOrgQuota(QuotaLedgerException):
    """Raised when the organization's active lots cannot cover an allocation."""
    status_code = 400
    code = "INSUFFICIENT_ORG_QUOTA"

    def __init__(self, remaining: int, requested: int, test_kind: str, test_type_id: int):
        self.remaining = remaining
        self.requested = requested
        self.test_kind = test_kind
        self.test_type_id = test_type_id
        super().__init__(
            f"Organization quota for {test_kind} type {test_type_id} is not enough "
            f"(remaining {remaining}, requested {requested})"
        )

    def to_response(self) -> dict:
        data = super().to_response()
        data.update(remaining=self.remaining, requested=self.requested)
        return data


class InsufficientUserQuota(QuotaLedgerException):
    """Raised when the quota a member can return to this organization is too small."""
    status_code = 400
    code = "INSUFFICIENT_USER_QUOTA"

    def __init__(self, balance: int, requested: int):
        self.balance = balance
        self.requested = requested
        super().__init__(f"User quota is not enough ({balance} < {requested})")

    def to_response(self) -> dict:
        data = super().to_response()
        data.update(balance=self.balance, requested=self.requested)
        return data


class UnknownTestType(QuotaLedgerException):
    """Raised when a test type id is not in the master catalog for its kind."""
    status_code = 400
    code = "UNKNOWN_TEST_TYPE"

    def __init__(self, test_kind: str, test_type_id: int):
        self.test_kind = test_kind
        self.test_type_id = test_type_id
        super().__init__(f"Unknown {test_kind} test_type_id {test_type_id}")


class QuotasRequired(QuotaLedgerException):
    """Raised when a new member is submitted without any quota grant."""
    status_code = 400
    code = "QUOTAS_REQUIRED"

    def __init__(self, message: str = "A new member needs at least one quota item"):
        super().__init__(message)


class ActorRequired(QuotaLedgerException):
    """Raised when an operation is submitted without the acting admin id."""
    status_code = 400
    code = "ACTOR_REQUIRED"

    def __init__(self, message: str = "admin_id is required"):
        super().__init__(message)


class InvalidAmount(QuotaLedgerException):
    status_code = 400
    code = "INVALID_AMOUNT"

    def __init__(self, amount: object):
        self.amount = amount
        super().__init__(f"Amount must be a positive integer, got {amount!r}")


class DuplicateUser(QuotaLedgerException):
    status_code = 409
    code = "USER_DUPLICATE"

    def __init__(self, conflicts: list[str]):
        self.conflicts = conflicts
        super().__init__(f"Already registered: {', '.join(conflicts)}")


class AlreadyMember(QuotaLedgerException):
    status_code = 409
    code = "ALREADY_MEMBER"

    def __init__(self, org_id: int, user_id: int):
        super().__init__(f"User {user_id} is already a member of organization {org_id}")


class NoActiveLot(QuotaLedgerException):
    """Raised when a revocation has no active lot to return quantity into."""
    status_code = 409
    code = "NO_ACTIVE_LOT"

    def __init__(self, org_id: int, test_kind: str, test_type_id: int):
        super().__init__(
            f"Organization {org_id} has no active {test_kind} lot for type {test_type_id}"
        )


class TransactionConflict(QuotaLedgerException):
    """Raised when the store aborts a transaction because of a concurrent write.

    The transaction has been rolled back; re-running the same operation
    is safe and re-executes the full check-then-mutate sequence.
    """
    status_code = 409
    code = "TRANSACTION_CONFLICT"
    retryable = True

    def __init__(self, message: str = "Concurrent update conflict, please retry"):
        super().__init__(message)

    def to_response(self) -> dict:
        data = super().to_response()
        data["retryable"] = True
        return data


class OrganizationNotFound(QuotaLedgerException):
    status_code = 404
    code = "ORG_NOT_FOUND"

    def __init__(self, org_id: int):
        self.org_id = org_id
        super().__init__(f"Organization {org_id} not found")


class UserNotFound(QuotaLedgerException):
    status_code = 404
    code = "USER_NOT_FOUND"

    def __init__(self, user_id: int):
        self.user_id = user_id
        super().__init__(f"User {user_id} not found")
