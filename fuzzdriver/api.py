"""
Public API for fuzz targets and hooks.

``report_finding`` flags a problem without raising it, which is what hooks need
when the target would otherwise swallow the exception. The report takes effect
when the current iteration ends and overrides anything the target raised.
"""

from __future__ import annotations

from fuzzdriver.findings import FindingSlot

_slot: FindingSlot | None = None


def install_finding_slot(slot: FindingSlot | None) -> None:
    """Route report_finding() to *slot*. Called by the runner on startup."""
    global _slot
    _slot = slot


def report_finding(exc: BaseException) -> None:
    """Report *exc* as this iteration's finding. A later report replaces an earlier one."""
    if _slot is None:
        raise RuntimeError("report_finding() called outside of a fuzzdriver run")
    _slot.report(exc)
