"""
One-shot billing pass for operational recovery.

Usage:
    python run_billing.py monthly   # bill every due subscription, then sweep
    python run_billing.py overdue   # only mark past-due invoices and lock tenants out
"""
import logging
import sys

from app.core.config import settings
from app.core.container import build_container


def main(argv):
    mode = argv[1] if len(argv) > 1 else "monthly"
    if mode not in {"monthly", "overdue"}:
        print(__doc__)
        return 2

    logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")
    container = build_container(settings)
    try:
        if mode == "overdue":
            count = container.scheduler.trigger_overdue_check()
            print(f"Overdue invoices marked: {count}")
            return 0
        result = container.scheduler.trigger_monthly_billing()
        print(
            f"Processed: {result.processed_count}  Errors: {result.error_count}  "
            f"Overdue: {result.overdue_count}  Skipped: {result.skipped_count}"
        )
        for project_id in result.failed_projects:
            print(f"  failed: {project_id}")
        return 1 if result.error_count else 0
    finally:
        container.shutdown()


if __name__ == "__main__":
    sys.exit(main(sys.argv))
