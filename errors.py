class LedgerError(ValueError):
    """Base class for every error raised by the ledger services."""


class NotFoundError(LedgerError):
    def __init__(self, kind: str, entity_id: object) -> None:
        super().__init__(f"{kind} with id {entity_id} not found")
        self.kind = kind
        self.entity_id = entity_id


class InvalidArgumentError(LedgerError):
    pass


class InvariantViolationError(LedgerError):
    pass
