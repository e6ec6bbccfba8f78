#!/usr/bin/env python3
from __future__ import annotations

import csv
import datetime as dt
import logging
import os
from typing import List, TextIO

from flowmode.core.models import Outcome, SessionRecord


class CsvSessionLog:
    """Append-only session history, one row per finished session:
    task, start, end, outcome (RFC 3339 timestamps).
    Rows from older versions carry no outcome and read as completed.
    """

    def __init__(self, path: str):
        self.path = path

    def record(self, record: SessionRecord) -> None:
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        with open(self.path, "a", newline="", encoding="utf-8") as f:
            csv.writer(f).writerow([
                record.task,
                record.started_at.isoformat(timespec="seconds"),
                record.ended_at.isoformat(timespec="seconds"),
                record.outcome.value,
            ])
        logging.info(f"Logged session '{record.task}' ({record.outcome.value})")

    def read_records(self) -> List[SessionRecord]:
        records: List[SessionRecord] = []
        with open(self.path, "r", newline="", encoding="utf-8") as f:
            for line_num, row in enumerate(csv.reader(f), start=1):
                if not row or not any(cell.strip() for cell in row):
                    continue
                if len(row) not in (3, 4):
                    logging.warning(f"Skipping incomplete entry on line {line_num}: {','.join(row)}")
                    continue
                try:
                    started = dt.datetime.fromisoformat(row[1].strip())
                    ended = dt.datetime.fromisoformat(row[2].strip())
                    outcome = Outcome(row[3].strip()) if len(row) == 4 else Outcome.COMPLETED
                except ValueError:
                    logging.warning(f"Skipping malformed entry on line {line_num}: {','.join(row)}")
                    continue
                records.append(SessionRecord(row[0], started, ended, outcome))
        return records


def render_report(records: List[SessionRecord], out: TextIO) -> None:
    out.write("\n--- Flow Mode Session Report ---\n")
    for record in records:
        start_local = record.started_at.astimezone()
        end_local = record.ended_at.astimezone()
        minutes = int(record.duration.total_seconds() // 60)
        out.write(f"Task: {record.task}\n")
        out.write(f"  Start: {start_local:%Y-%m-%d %H:%M:%S}\n")
        out.write(f"  End:   {end_local:%Y-%m-%d %H:%M:%S}\n")
        out.write(f"  Duration: {minutes} minutes\n")
        if record.outcome is not Outcome.COMPLETED:
            out.write(f"  Outcome: {record.outcome.value}\n")
        out.write("--------------------------------\n")
    total = sum((r.duration for r in records), dt.timedelta(0))
    out.write(f"Sessions: {len(records)}, total focus time: {int(total.total_seconds() // 60)} minutes\n")
