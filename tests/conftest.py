import os
import tempfile

# Settings are cached on first use, so pin them before any project import.
os.environ["LEDGER_TIMEZONE"] = "Europe/Berlin"
os.environ["LEDGER_RECENT_LIMIT"] = "10"
os.environ.setdefault("LEDGER_DATA_DIR", tempfile.mkdtemp(prefix="ledger-tests-"))
os.environ.setdefault("LEDGER_DATABASE_URL", "sqlite:///:memory:")
