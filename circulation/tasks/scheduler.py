# circulation/tasks/scheduler.py
from __future__ import annotations

import atexit
import os

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger


def start_scheduler(app):
    """
    Runs the late check (fine accrual + stale payments) in the background.
    - Skipped in the debug reloader's watcher process, only the real server runs jobs.
    - Shut down at interpreter exit.
    """
    # Werkzeug reloader: WERKZEUG_RUN_MAIN=true marks the serving process
    if app.debug and os.environ.get("WERKZEUG_RUN_MAIN") != "true":
        app.logger.info("[scheduler] Debug reloader secondary process: scheduler skipped.")
        return None

    # imported here to keep the services out of app import time
    from circulation.tasks.late_check import run_late_check_job

    minutes = int(app.config.get("LATE_CHECK_INTERVAL_MINUTES", 10))
    scheduler = BackgroundScheduler(timezone="UTC")

    scheduler.add_job(
        func=run_late_check_job,
        args=[app],
        trigger=IntervalTrigger(minutes=minutes),
        id="late_check_job",
        replace_existing=True,
        max_instances=1,        # never overlap
        coalesce=True,          # missed runs collapse into one
        misfire_grace_time=120
    )

    scheduler.start()
    app.logger.info(f"[scheduler] Late check job started (every {minutes} minutes).")

    app.extensions["apscheduler"] = scheduler

    def _shutdown():
        if scheduler.running:
            scheduler.shutdown(wait=False)

    atexit.register(_shutdown)
    return scheduler
