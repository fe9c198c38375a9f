# examples/shipment_demo.py
# Run with: python examples/shipment_demo.py
#
# Walks one shipment from the factory to the customer, shows a rejected
# handoff, and verifies the stored custody history.

import time
from pathlib import Path
from tempfile import TemporaryDirectory

from custody import (
    CustodyRegistry,
    CustodyError,
    HistoryVerifier,
    SQLiteStorage,
)


def now() -> int:
    return int(time.time())


if __name__ == "__main__":
    with TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "demo.db"
        registry = CustodyRegistry(storage=str(db_path))

        registry.open("SHIP-2026-0042", "Factory, Shenzhen", "acme-factory", now())
        registry.transfer("SHIP-2026-0042", "oceanic-freight", "Port of Yantian", "acme-factory", now())

        # The factory no longer holds custody
        try:
            registry.transfer("SHIP-2026-0042", "shady-broker", "Unknown", "acme-factory", now())
        except CustodyError as e:
            print(f"Rejected as expected: {type(e).__name__}: {e}")

        registry.transfer("SHIP-2026-0042", "eu-logistics", "Port of Rotterdam", "oceanic-freight", now())
        registry.finalize("SHIP-2026-0042", "customer-berlin", "Berlin warehouse", "eu-logistics", now())

        print("\nFinal record:")
        print(registry.read("SHIP-2026-0042").to_dict())

        print("\nHistory:")
        for t in registry.history("SHIP-2026-0042"):
            print(f"  {t.sequence}: {t.operation:8} {t.caller} → {t.owner} @ {t.location}")

        registry.close()

        with SQLiteStorage(db_path) as storage:
            result = HistoryVerifier().verify_from_storage("SHIP-2026-0042", storage)
        print(f"\n{result}")
