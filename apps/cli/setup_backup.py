import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from core.config import get_settings
from core.log import setup_logging
from domains.orders.model import OrderLineItem, OrderRecord, utc_now_iso
from domains.orders.store import OrderBackupStore

logger = logging.getLogger(__name__)

README_TEMPLATE = """# BRISCO Order Backups

Local backups of every order, in case the Stripe dashboard is unreachable.

## Files:
- `orders.json` - master file with all orders
- `daily/` - one file per order date (orders-YYYY-MM-DD.json)

## Access:
- API: GET /orders?action=all|today|date|search|stats

## Last Updated: {updated}
"""


def _test_order() -> OrderRecord:
    stamp = utc_now_iso()
    return OrderRecord(
        session_id=f"test_session_{stamp}",
        customer_email="test@brisclothing.com",
        items=[OrderLineItem(name="Test Item", size="M", quantity=1)],
        total_quantity=1,
        subtotal=65.0,
        total_amount=65.0,
        source="setup_test",
    )


def setup(backup_dir: Path, run_test: bool = True) -> bool:
    logger.info(f" 🔥 Setting up order backups in {backup_dir}...")

    store = OrderBackupStore(backup_dir)
    if not store.ready:
        logger.error(" ❌ Could not create the backup directory.")
        return False
    logger.info(" ✅ Directories and orders.json ready.")

    try:
        (backup_dir / "README.md").write_text(
            README_TEMPLATE.format(updated=utc_now_iso()), encoding="utf-8"
        )
    except OSError as e:
        logger.error(f" ❌ README not written: {e}")
        return False
    logger.info(" ✅ README created.")

    if not run_test:
        return True

    logger.info(" 🧪 Testing backup system...")
    order = _test_order()
    if not store.append(order.to_record()):
        logger.error(" ❌ Test order could not be saved.")
        return False
    if store.find_by_session_id(order.session_id) is None:
        logger.error(" ❌ Test order saved but not readable.")
        return False

    logger.info(f" ✅ Can read orders ({len(store.list_all())} total)")
    return True


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Initialize the order backup store")
    parser.add_argument("--dir", dest="backup_dir", default=None)
    parser.add_argument(
        "--skip-test", action="store_true", help="do not write a test order"
    )
    args = parser.parse_args(argv)
    setup_logging(get_settings().log_level)

    backup_dir = Path(args.backup_dir or get_settings().backup_dir)
    if not setup(backup_dir, run_test=not args.skip_test):
        return 1
    logger.info(" 🎉 Backup system setup complete!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
