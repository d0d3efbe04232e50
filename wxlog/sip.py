"""Detection of macOS System Integrity Protection status."""

from __future__ import annotations

import subprocess


def sip_disabled_from_output(output: str) -> bool:
    """Interpret the output of 'csrutil status'."""
    text = output.lower()
    if "system integrity protection status: disabled" in text:
        return True
    # Partially disabled configurations that still allow debugging.
    return "disabled" in text and "debugging" in text


def is_sip_disabled() -> bool:
    """True if SIP is disabled; False if enabled or undeterminable."""
    try:
        result = subprocess.run(
            ["csrutil", "status"],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            check=True,
        )
    except (OSError, subprocess.SubprocessError):
        return False
    return sip_disabled_from_output(result.stdout)