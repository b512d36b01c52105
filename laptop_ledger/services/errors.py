class LedgerError(RuntimeError):
    pass


class ItemNotRegistered(LedgerError):
    def __init__(self, ref: str):
        super().__init__(f"Item not registered: {ref!r}. Create it from inventory first.")
        self.ref = ref


class BorrowerKeyRequired(LedgerError):
    def __init__(self):
        super().__init__("A borrower (email or classroom) is required to register a loan.")


class ClassroomLabelRequired(LedgerError):
    def __init__(self):
        super().__init__("A destination classroom is required for a classroom batch.")


class ItemNotAvailable(LedgerError):
    def __init__(self, item_id: str, reason: str):
        super().__init__(f"Item {item_id} cannot be loaned: {reason}")
        self.item_id = item_id
        self.reason = reason


class NoActiveLoanFound(LedgerError):
    def __init__(self, item_id: str):
        super().__init__(f"No active loan event found for item {item_id}")
        self.item_id = item_id


class StoreUnavailable(LedgerError):
    pass


class MalformedRecord(LedgerError):
    def __init__(self, collection: str, document_id: str | None, detail: str):
        super().__init__(f"Malformed {collection} document {document_id}: {detail}")
        self.collection = collection
        self.document_id = document_id


class ScanSessionError(LedgerError):
    pass
