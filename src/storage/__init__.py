from .destination_directory_registry import load_destination_directory
from .notification_ledger_registry import (
    JsonFileLedgerStore,
    LedgerUnavailableError,
    NotificationEntry,
    NotificationLedger,
    SqlLedgerStore,
    build_ledger_store,
    ledger_lock,
    make_entry_id,
    replace_entry,
)
from .row_cache_registry import fetch_latest_rows

__all__ = [
    "NotificationEntry",
    "NotificationLedger",
    "JsonFileLedgerStore",
    "LedgerUnavailableError",
    "SqlLedgerStore",
    "build_ledger_store",
    "ledger_lock",
    "make_entry_id",
    "replace_entry",
    "fetch_latest_rows",
    "load_destination_directory",
]
