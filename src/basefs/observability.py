"""Structured logging helpers for provisioning runs.

Stage boundaries are recorded as ``stage_start`` and ``stage_complete``
records, which is what ``current_stage`` and ``completed_stages`` read.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass(slots=True)
class StructuredLogger:
    records: list[dict[str, Any]] = field(default_factory=list)

    def log(
        self,
        *,
        operation: str,
        image: str | None,
        stage: str | None,
        message: str,
        tool: str | None = None,
        level: str = "info",
        extra: dict[str, Any] | None = None,
    ) -> None:
        record: dict[str, Any] = {
            "level": level,
            "operation": operation,
            "image": image,
            "stage": stage,
            "tool": tool,
            "message": message,
        }
        if extra is not None:
            record["extra"] = extra
        self.records.append(record)

    def records_for_image(self, image: str) -> list[dict[str, Any]]:
        return [record for record in self.records if record.get("image") == image]

    def records_at(self, level: str) -> list[dict[str, Any]]:
        return [record for record in self.records if record.get("level") == level]

    def records_for_stage(self, image: str, stage: str) -> list[dict[str, Any]]:
        return [
            record
            for record in self.records
            if record.get("image") == image and record.get("stage") == stage
        ]

    def current_stage(self, image: str) -> str | None:
        """Return the last stage started for *image*, or None before the first."""
        for record in reversed(self.records):
            if record.get("image") == image and record.get("operation") == "stage_start":
                return record.get("stage")
        return None

    def completed_stages(self, image: str) -> list[str]:
        return [
            record["stage"]
            for record in self.records
            if record.get("image") == image and record.get("operation") == "stage_complete"
        ]

    def to_json_lines(self, path: str | Path) -> Path:
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        lines = [json.dumps(record, sort_keys=True) for record in self.records]
        output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return output_path
