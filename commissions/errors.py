class CommissionError(Exception):
    pass


class NotFoundError(CommissionError):
    pass


class OrderNotFoundError(NotFoundError):
    pass


class EntityNotFoundError(NotFoundError):
    pass


class ReferralNotFoundError(NotFoundError):
    pass


class CommissionNotFoundError(NotFoundError):
    pass


class AlreadyProcessedError(CommissionError):
    """Idempotency key matched an existing row. Callers treat this as success."""

    def __init__(self, message: str, existing_id):
        super().__init__(message)
        self.existing_id = existing_id


class AttributionCycleError(CommissionError):
    pass


class TransientStoreError(CommissionError):
    pass


class InvalidStateTransitionError(CommissionError):
    pass


class ReferralExpiredError(InvalidStateTransitionError):
    pass


class DuplicateKeyError(CommissionError):
    def __init__(self, table: str, key):
        super().__init__(f"Duplicate key {key!r} in {table}")
        self.table = table
        self.key = key
