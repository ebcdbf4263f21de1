"""
Build failure analysis (pure).

Scans build tool output for known resource-exhaustion signatures and
turns them into a specific, actionable diagnosis. No I/O, no subprocess.
"""

from __future__ import annotations

from typing import NamedTuple


class Diagnosis(NamedTuple):
    cause: str
    suggestion: str


# Checked in order, case-sensitive; first match wins.
_SIGNATURES: tuple[tuple[str, Diagnosis], ...] = (
    ("No space left on device", Diagnosis(
        "Disk space exhausted during the build",
        "Free at least 10 GB in the working directory, or run cleanup and re-run with --resume",
    )),
    ("virtual memory exhausted", Diagnosis(
        "Out of memory during compilation",
        "Re-run with --use-swap or a lower --jobs value, then --resume",
    )),
    ("Cannot allocate memory", Diagnosis(
        "Out of memory during compilation",
        "Re-run with --use-swap or a lower --jobs value, then --resume",
    )),
    ("Killed", Diagnosis(
        "A compiler process was killed (likely by the OOM killer)",
        "Re-run with --use-swap or --jobs=1, then --resume",
    )),
    ("Permission denied", Diagnosis(
        "Permission denied during the build",
        "Fix ownership of the working directory or run with sudo available",
    )),
)


def analyse_build_output(output: str) -> Diagnosis | None:
    """Return a diagnosis for ``output`` or None if nothing known matched."""
    if not output:
        return None
    for needle, diagnosis in _SIGNATURES:
        if needle in output:
            return diagnosis
    return None
