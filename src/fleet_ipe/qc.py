"""Extraction report persistence."""

from __future__ import annotations

from collections import Counter
from pathlib import Path

from fleet_ipe.io import write_json
from fleet_ipe.models import ExtractionReport, SkippedRow


def write_qc_report(out_dir: Path, report: ExtractionReport, skipped: list[SkippedRow] | None = None) -> Path:
    """Write ``qc_report.json`` into *out_dir* and return the path.

    When *skipped* is given, per-reason counts are included under ``skipped``.
    """
    payload = report.to_dict()
    if skipped is not None:
        payload["skipped"] = dict(Counter(row.reason for row in skipped))
    return write_json(Path(out_dir) / "qc_report.json", payload)
