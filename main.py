"""
SiriusTrack — Entry Point.

`python main.py [--date YYYY-MM-DD] [--export FILE]` runs the daily routine:
generate habit todos, recompute every segment's evaluation and report the
pending carryover candidates.
"""

import argparse
import asyncio
import logging

from siriustrack.config import settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

from siriustrack.core.command_service import CommandService
from siriustrack.core.dates import now_in
from siriustrack.core.exporter import export_csv
from siriustrack.data.db import TrackerDB

logger = logging.getLogger("siriustrack")


async def daily_routine(service: CommandService, db: TrackerDB, today: str) -> None:
    for segment in db.list_segments():
        db.generate_habit_todos(segment.id, today)

    for snap in await service.evaluate_all_segments(today):
        logger.info(
            "Segment #%d: milestones %.0f%%, daily %.0f%%, weekly %.0f%%, %d pts, validity %.0f%%",
            snap.segment_id, snap.achievement_rate * 100, snap.daily_rate * 100,
            snap.weekly_rate * 100, snap.activity_volume, snap.task_validity * 100,
        )

    candidates = await service.find_carryover_candidates(today)
    for cand in candidates:
        logger.info("Carryover candidate: [%s] %s (from %s)", cand.segment_name, cand.title, cand.date)


def main() -> None:
    parser = argparse.ArgumentParser(description="SiriusTrack daily routine")
    parser.add_argument("--date", help="reference date (YYYY-MM-DD); defaults to today")
    parser.add_argument("--export", metavar="FILE", help="also write a CSV export to FILE")
    args = parser.parse_args()

    db = TrackerDB()
    service = CommandService(db)
    today = args.date or service.today()

    asyncio.run(daily_routine(service, db, today))

    if args.export:
        with open(args.export, "w", newline="", encoding="utf-8") as fh:
            export_csv(db, fh, now_in(settings.TIMEZONE))


if __name__ == "__main__":
    main()
