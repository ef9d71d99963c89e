"""
Recompute the kpi_daily rollup
"""
import logging

from commercehub.core import SessionLocal
from commercehub.core.logging_config import setup_logging
from commercehub.services.aggregate_service import AggregateRefresher

logger = logging.getLogger("refresh_aggregates")


def main():
    setup_logging(log_file="aggregates.log")
    db = SessionLocal()
    try:
        summary = AggregateRefresher(db).refresh()
        logger.info(f"Refreshed: {summary}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
