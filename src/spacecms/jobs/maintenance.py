"""Periodic maintenance: expired lock sweep and scheduled publication."""
from __future__ import annotations

import argparse
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from loguru import logger
from sqlalchemy.orm import Session

from spacecms.db.base import SessionLocal
from spacecms.services.locking import StoryLockService
from spacecms.services.stories import StoryService


class MaintenanceJob:
    """Job invoked by an external scheduler (cron, systemd timer...)."""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self.session_factory = session_factory or SessionLocal

    def run_once(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        session = self.session_factory()
        try:
            released = StoryLockService.cleanup_all_expired_locks(session, now)
            published = StoryService.publish_due_stories(session, now)
            logger.info(f"[JOB] Maintenance done: {released} lock(s) released, {published} story(ies) published")
            return {"locks_released": released, "stories_published": published}
        except Exception:
            session.rollback()
            logger.exception("[JOB] Maintenance run failed")
            raise
        finally:
            session.close()


def main():
    parser = argparse.ArgumentParser(description="CMS maintenance job")
    parser.add_argument("--loop", action="store_true", help="Run in a loop")
    parser.add_argument("--interval", type=int, default=60, help="Seconds between runs when looping")

    args = parser.parse_args()

    job = MaintenanceJob()

    if args.loop:
        logger.info("Starting maintenance loop...")
        while True:
            try:
                job.run_once()
            except Exception:
                logger.warning(f"[JOB] Retrying in {args.interval}s")
            time.sleep(args.interval)
    else:
        job.run_once()

if __name__ == "__main__":
    main()
