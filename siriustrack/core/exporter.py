"""
SiriusTrack — CSV Export.

Writes a sectioned, human-readable CSV report of every segment: its
milestones, todos and discussion items.
"""

from __future__ import annotations

import csv
import logging
from typing import TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from siriustrack.data.db import TrackerDB

logger = logging.getLogger(__name__)


def export_csv(db: TrackerDB, out: TextIO, exported_at: str) -> int:
    """Write the report to `out`. Returns the number of segments exported."""
    writer = csv.writer(out)
    writer.writerow(["SiriusTrack Export"])
    writer.writerow([f"Export Date: {exported_at}"])
    writer.writerow([])

    segments = db.list_segments()
    for segment in segments:
        writer.writerow([f"Segment: {segment.name}"])
        writer.writerow([f"Overall Goal: {segment.overall_goal}"])
        writer.writerow([])

        milestones = db.list_milestones(segment.id)
        if milestones:
            writer.writerow(["Milestones"])
            writer.writerow(["Title", "Target Date", "Status"])
            for m in milestones:
                writer.writerow([m.title, m.target_date, m.status.value])
            writer.writerow([])

        with db.reader() as conn:
            todo_rows = conn.execute(
                "SELECT date, title, type, completed FROM todos WHERE segment_id = ? ORDER BY date DESC, id",
                (segment.id,),
            ).fetchall()
        if todo_rows:
            writer.writerow(["Todos"])
            writer.writerow(["Date", "Title", "Type", "Completed"])
            for r in todo_rows:
                writer.writerow([r["date"], r["title"], r["type"], "Yes" if r["completed"] else "No"])
            writer.writerow([])

        discussions = db.list_discussion_items(segment.id)
        if discussions:
            writer.writerow(["Discussion Items"])
            writer.writerow(["Content", "Created At", "Resolved", "Resolved At"])
            for d in discussions:
                writer.writerow([
                    d.content, d.created_at, "Yes" if d.resolved else "No", d.resolved_at or "N/A",
                ])
            writer.writerow([])

        writer.writerow(["---"])
        writer.writerow([])

    logger.info("Exported %d segment(s) to CSV", len(segments))
    return len(segments)
