from typing import Optional


class NotFoundError(ValueError):
    pass


class ValidationFailure(ValueError):
    pass


class PersistenceFailure(RuntimeError):
    """A store read or write failed; the unit of work was rolled back.

    Derived snapshots of the affected account are indeterminate until the
    account is reconciled again.
    """

    def __init__(self, message: str, account_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.account_id = account_id
