"""Utilities for exporting task results."""

import csv
import json
import logging
import re
from datetime import datetime
from pathlib import Path

from .config import settings
from .tasks.models import LeadResult, TaskRecord

logger = logging.getLogger(__name__)

CSV_COLUMNS = [
    "name",
    "website",
    "email",
    "phone",
    "address",
    "category",
    "rating",
    "reviews_count",
    "country",
    "language",
    "region",
    "relevance_score",
    "data_source",
    "description",
]


def _unique_path(directory: Path, base: str, suffix: str) -> Path:
    file_path = directory / f"{base}{suffix}"
    # Extremely unlikely, but still handle same-microsecond collisions deterministically.
    if file_path.exists():
        for i in range(1, 10_000):
            candidate = directory / f"{base}_{i}{suffix}"
            if not candidate.exists():
                return candidate
        raise RuntimeError("Failed to allocate a unique result filename after 10,000 attempts")
    return file_path


def _csv_row(result: LeadResult) -> dict[str, object]:
    row = result.model_dump(mode="json", include=set(CSV_COLUMNS))
    if not row.get("email") and result.all_emails:
        row["email"] = "; ".join(result.all_emails)
    return row


def export_task_results(task: TaskRecord, directory: Path | None = None, include_csv: bool = True) -> list[Path]:
    """Write a task's results to the results directory.

    A JSON file holds the task summary and every result; a CSV file with one
    row per result is written alongside unless include_csv is False.

    Returns:
        Paths of the written files, JSON first.
    """
    results_dir = directory or settings.get_results_dir()
    results_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")

    # Sanitize task name for filesystem
    safe_name = re.sub(r"[^\w\-]", "_", task.name)[:30]
    base = f"{timestamp}_{safe_name}"

    json_path = _unique_path(results_dir, base, ".json")
    payload = {
        "exported_at": datetime.now().isoformat(),
        "task": task.public_view(),
        "summary": task.summary,
        "input": task.input_params.model_dump(mode="json"),
    }
    json_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    written = [json_path]

    if include_csv:
        csv_path = json_path.with_suffix(".csv")
        with csv_path.open("w", newline="", encoding="utf-8") as handle:
            writer = csv.DictWriter(handle, fieldnames=CSV_COLUMNS)
            writer.writeheader()
            for result in task.final_results:
                writer.writerow(_csv_row(result))
        written.append(csv_path)

    logger.info(f"Exported {len(task.final_results)} results of task {task.task_id} to {json_path}")
    return written
