import asyncio
import json
import logging
import os
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Union

from pydantic import ValidationError

from tripfinder.models import Coordinate, DelayReport

logger = logging.getLogger("tripfinder.delays")


class DelayLogError(Exception):
    """The delay log exists but is not a JSON array, so it cannot be appended to."""


class DelayStore:
    """Delay reports kept as one JSON array on disk.

    Writers are serialised with a lock so two submissions in this process
    cannot read the same snapshot and drop each other's report. Entries that
    do not validate are hidden from readers but written back untouched.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read_entries(self) -> list[Any]:
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info(f"{self.path} not found, returning empty delay list")
            return []
        if not content.strip():
            return []
        try:
            entries = json.loads(content)
        except json.JSONDecodeError as e:
            raise DelayLogError(f"Unreadable delay log {self.path}: {e}") from e
        if not isinstance(entries, list):
            raise DelayLogError(f"Delay log {self.path} is not a JSON array")
        return entries

    def _read(self) -> list[DelayReport]:
        try:
            entries = self._read_entries()
        except DelayLogError as e:
            logger.error(str(e))
            return []

        reports = []
        for index, entry in enumerate(entries):
            try:
                reports.append(DelayReport.model_validate(entry))
            except ValidationError as e:
                logger.warning(f"Skipping delay log entry {index} in {self.path}: {e}")
        return reports

    def _write(self, entries: list[Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(entries, indent=2, ensure_ascii=False)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".delays-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, self.path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise

    @staticmethod
    def _next_id(entries: list[Any]) -> int:
        report_id = int(time.time() * 1000)
        # Ids stay unique when two reports land in the same millisecond
        previous = [
            int(str(entry.get("id")))
            for entry in entries
            if isinstance(entry, dict) and str(entry.get("id", "")).isdigit()
        ]
        if previous:
            report_id = max(report_id, max(previous) + 1)
        return report_id

    async def list_reports(self) -> list[DelayReport]:
        return await asyncio.to_thread(self._read)

    async def append(self, cause: str, vehicle_number: str, location: Coordinate) -> DelayReport:
        """Store a new report; the id is the submission time in epoch milliseconds.

        Raises DelayLogError, leaving the file as it is, when the existing log
        cannot be parsed.
        """
        async with self._lock:
            entries = await asyncio.to_thread(self._read_entries)
            report = DelayReport(
                id=str(self._next_id(entries)),
                cause=cause,
                vehicle_number=vehicle_number,
                location=location,
                timestamp=datetime.now(timezone.utc).isoformat(),
            )
            entries.append(report.to_json())
            await asyncio.to_thread(self._write, entries)
        logger.info(f"Stored delay report {report.id} ({cause})")
        return report
