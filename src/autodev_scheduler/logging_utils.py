"""Configure logging and condense verification output into evidence."""

import re
import sys

from loguru import logger

from .io_utils import _tail_text

_FAILED_NODEID_RE = re.compile(r"^(?P<nodeid>\S+)\s+FAILED\b", re.M)
_FAILED_SUMMARY_RE = re.compile(r"^FAILED\s+(?P<nodeid>\S+)\b", re.M)
_ASSERT_RE = re.compile(r"^(E\s+.+)$", re.M)
_FAILURE_HEADER_RE = re.compile(r"^_{5,}\s*(.+?)\s*_{5,}$", re.M)


def _configure_logging(level: str = "INFO") -> None:
    """Configure the loguru sink with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan> - "
            "{message}"
        ),
    )


def summarize_pytest_failures(log_text: str, max_failed: int = 5) -> dict[str, object]:
    """Summarize pytest failures from a raw log.

    Args:
        log_text: Full pytest output text.
        max_failed: Maximum number of `FAILED ...` entries to capture.

    Returns:
        A dictionary with keys `failed`, `headline`, and `first_error`.
    """
    if not log_text:
        return {"failed": [], "headline": None, "first_error": None}

    failed: list[str] = []
    seen: set[str] = set()
    for regex in (_FAILED_NODEID_RE, _FAILED_SUMMARY_RE):
        for match in regex.finditer(log_text):
            nodeid = (match.group("nodeid") or "").strip()
            if not nodeid or nodeid in seen:
                continue
            seen.add(nodeid)
            failed.append(nodeid)
            if len(failed) >= max_failed:
                break
        if len(failed) >= max_failed:
            break

    m_err = _ASSERT_RE.search(log_text)
    first_error = m_err.group(1).strip() if m_err else None

    m_head = _FAILURE_HEADER_RE.search(log_text)
    headline = m_head.group(1).strip() if m_head else None

    return {"failed": failed, "headline": headline, "first_error": first_error}


def summarize_evidence(output: str, *, exit_code: int | None = None, max_chars: int = 1200) -> str:
    """Condense command output into a short evidence summary.

    The pytest summary (if any) comes first, followed by the output tail.
    """
    lines: list[str] = []
    if exit_code is not None:
        lines.append(f"exit code {exit_code}")
    summary = summarize_pytest_failures(output)
    if summary["failed"]:
        lines.append("failed: " + ", ".join(summary["failed"]))
    if summary["headline"]:
        lines.append(f"headline: {summary['headline']}")
    if summary["first_error"]:
        lines.append(f"error: {summary['first_error']}")
    tail = _tail_text(output.strip(), max_chars)
    if tail:
        lines.append(tail)
    return "\n".join(lines)

