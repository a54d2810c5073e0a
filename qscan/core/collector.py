"""
Discovery of report files written by the engine.
"""

import glob
import logging
import os
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Checked in order; the first pattern with a match wins for its format
REPORT_PATTERNS: List[Tuple[str, List[str]]] = [
    ("json", ["*.json"]),
    ("spdx", ["*spdx*.json", "*.spdx"]),
    ("cyclonedx", ["*cyclonedx*.json", "*cdx*.json"]),
    ("sarif", ["*.sarif", "*sarif*.json"]),
]

# File timestamps come from the kernel's coarse clock and may trail time.time()
MTIME_SLACK = 1.0


def _modified_since(path: str, since: Optional[float]) -> bool:
    if since is None:
        return True
    try:
        return os.stat(path).st_mtime >= since - MTIME_SLACK
    except OSError:
        return False


def collect_reports(output_dir: str, since: Optional[float] = None) -> Dict[str, str]:
    """
    Map report format to the first matching file in output_dir.

    Formats the engine did not produce are simply absent. A missing or
    unreadable directory yields an empty mapping.

    Args:
        output_dir: Directory the engine wrote into
        since: Epoch seconds; older files are left over from earlier runs and ignored
    """
    reports: Dict[str, str] = {}

    if not os.path.isdir(output_dir) or not os.access(output_dir, os.R_OK | os.X_OK):
        logger.debug(f"Report directory {output_dir} is missing or unreadable")
        return reports

    for report_format, patterns in REPORT_PATTERNS:
        for pattern in patterns:
            matches = sorted(glob.glob(os.path.join(glob.escape(output_dir), pattern)))
            matches = [m for m in matches if _modified_since(m, since)]
            if matches:
                reports[report_format] = matches[0]
                break

    logger.debug(f"Found reports in {output_dir}: {sorted(reports)}")
    return reports
