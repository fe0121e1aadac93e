"""CSV input and output helpers for the reports."""
from __future__ import annotations

import csv
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .models import unique_preserve


logger = logging.getLogger(__name__)

IDENTIFIER_COLUMNS = ("userprincipalname", "upn", "mail", "email", "id")


def default_output_path(
    prefix: str, directory: Path, now: Optional[datetime] = None
) -> Path:
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return Path(directory) / f"{prefix}_{stamp}.csv"


def sibling_path(path: Path, suffix: str) -> Path:
    """``reports/out.csv`` -> ``reports/out_<suffix>.csv``."""

    return path.with_name(f"{path.stem}_{suffix}{path.suffix or '.csv'}")


def read_identifiers(path: Path) -> List[str]:
    """Read user identifiers from a CSV with a UPN-like column or a plain list.

    Blank lines and lines starting with ``#`` are ignored; duplicates are
    dropped keeping the first occurrence.
    A CSV header without a known column raises :class:`ValueError`.
    """

    if not path.exists():
        raise FileNotFoundError(f"Input file '{path}' was not found.")

    with path.open("r", encoding="utf-8-sig", newline="") as handle:
        lines = [line for line in handle.read().splitlines() if line.strip()]
    lines = [line for line in lines if not line.lstrip().startswith("#")]
    if not lines:
        return []

    reader = csv.reader(lines)
    header = next(reader)
    lowered = [column.strip().lower() for column in header]
    column = next((lowered.index(name) for name in IDENTIFIER_COLUMNS if name in lowered), None)

    if column is None:
        if len(header) > 1:
            raise ValueError(
                f"Input file '{path}' has no identifier column; expected one of "
                f"{', '.join(IDENTIFIER_COLUMNS)} (found {', '.join(header)})."
            )
        values = lines
    else:
        values = [row[column] for row in reader if len(row) > column]

    identifiers = unique_preserve(values)
    logger.info("Read %s user identifiers from %s", len(identifiers), path)
    return identifiers


def write_report(
    rows: Sequence[Dict[str, Any]],
    path: Path,
    fieldnames: Optional[Sequence[str]] = None,
) -> Path:
    """Write ``rows`` to ``path`` once; a header is written even for no rows."""

    if fieldnames is None:
        fieldnames = list(rows[0].keys()) if rows else []

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=list(fieldnames), extrasaction="ignore")
        writer.writeheader()
        writer.writerows(rows)

    logger.info("Wrote %s rows to %s", len(rows), path)
    return path


__all__ = ["default_output_path", "read_identifiers", "sibling_path", "write_report"]
