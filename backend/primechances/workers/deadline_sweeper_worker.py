from __future__ import annotations

from typing import Any

from ..modules.sweeper.deadline_sweeper import DeadlineSweeper
from ..observability.logging import configure_logging, get_logger
from ..settings import get_lifecycle_config

log = get_logger("deadline_sweeper_worker")


def run_once() -> dict[str, Any]:
    """
    Scheduler entrypoint (cron/ECS scheduled task). Never raises; the report
    carries `success` and `error`.
    """
    report = DeadlineSweeper(get_lifecycle_config()).run()
    log.info(
        "deadline_sweeper_run_once_done",
        success=report.get("success"),
        deleted_count=report.get("deleted_count"),
        expired_count=report.get("expired_count"),
        notifications_sent=report.get("notifications_sent"),
        error=report.get("error"),
    )
    return report


if __name__ == "__main__":
    configure_logging(level="INFO")
    run_once()
