"""JSON-file store of accepted problem records."""

from __future__ import annotations

import json
from dataclasses import asdict
from pathlib import Path
from typing import Dict, List, Optional

from config import Settings
from .logging_utils import get_logger
from .pipeline import ProblemRecord

logger = get_logger(__name__)


class ProblemBank:
    """Persist reviewed problems to ``<output_dir>/<problem_bank_filename>``."""

    def __init__(self, settings: Settings, path: Optional[Path] = None):
        self.settings = settings
        self.path = Path(path) if path is not None else settings.problem_bank_path

    def load(self) -> List[ProblemRecord]:
        if not self.path.exists():
            return []
        with self.path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        return [ProblemRecord(**item) for item in data.get("problems", [])]

    def get(self, problem_id: str) -> Optional[ProblemRecord]:
        return next((record for record in self.load() if record.id == problem_id), None)

    def upsert(self, record: ProblemRecord) -> ProblemRecord:
        """Insert ``record`` or replace the stored record with the same id."""
        records: Dict[str, ProblemRecord] = {item.id: item for item in self.load()}
        created = record.id not in records
        records[record.id] = record
        self._write(list(records.values()))
        logger.info("%s problem %s in %s", "Added" if created else "Updated", record.id, self.path)
        return record

    def next_id(self) -> str:
        numbers = [int(record.id) for record in self.load() if record.id.isdigit()]
        return str(max(numbers, default=0) + 1)

    def _write(self, records: List[ProblemRecord]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as handle:
            json.dump({"problems": [asdict(record) for record in records]}, handle, indent=2)
