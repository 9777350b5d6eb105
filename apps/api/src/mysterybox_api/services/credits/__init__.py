"""Credit ledger exports."""

from .ledger import (  # noqa: F401
    CreditLedger,
    LedgerAppendResult,
    ReconciliationResult,
    decode_time_uuid_cursor,
    encode_time_uuid_cursor,
)
