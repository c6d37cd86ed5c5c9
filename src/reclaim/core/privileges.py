"""Privilege escalation via pkexec for protected paths and system commands."""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess

log = logging.getLogger(__name__)

# Timeout for the pkexec subprocess (seconds).
_PKEXEC_TIMEOUT = 300


class PrivilegeError(Exception):
    """Raised when privilege escalation fails."""


def is_root() -> bool:
    """Check if the current process is running as root."""
    return os.geteuid() == 0


def find_reclaim_executable() -> str | None:
    """Find the reclaim CLI executable on PATH."""
    return shutil.which("reclaim")


def pkexec_available() -> bool:
    """Check if pkexec is available on the system."""
    return shutil.which("pkexec") is not None


def run_privileged_delete(paths: list[str]) -> list[dict]:
    """Permanently delete *paths* as root with a single pkexec prompt.

    Serializes the batch as JSON on stdin, invokes
    ``pkexec reclaim delete-as-root``, and parses the JSON results from
    stdout.

    Args:
        paths: Absolute paths to remove.

    Returns:
        List of result dicts (path, deleted, freed_bytes, error).

    Raises:
        PrivilegeError: On missing pkexec, authentication cancel/deny,
            timeout or bad output.
    """
    if not pkexec_available():
        raise PrivilegeError("pkexec is not available on this system")

    reclaim_exe = find_reclaim_executable()
    if reclaim_exe is None:
        raise PrivilegeError("Could not find the 'reclaim' executable on PATH")

    payload = json.dumps({"paths": paths})
    log.info("Requesting elevation to delete %d path(s)", len(paths))

    try:
        proc = subprocess.run(
            ["pkexec", reclaim_exe, "delete-as-root"],
            input=payload,
            capture_output=True,
            text=True,
            timeout=_PKEXEC_TIMEOUT,
        )
    except subprocess.TimeoutExpired:
        raise PrivilegeError("Privileged delete timed out after 5 minutes")

    if proc.returncode == 126:
        raise PrivilegeError("Authentication dismissed by user")
    if proc.returncode == 127:
        raise PrivilegeError("Authentication denied")
    if proc.returncode != 0:
        stderr = proc.stderr.strip()
        raise PrivilegeError(f"Privileged delete failed (exit {proc.returncode}): {stderr}")

    try:
        results = json.loads(proc.stdout)
    except (json.JSONDecodeError, TypeError) as exc:
        raise PrivilegeError(f"Invalid response from privileged process: {exc}")
    if not isinstance(results, list):
        raise PrivilegeError("Invalid response from privileged process: expected a list")
    return results


def run_privileged_command(argv: list[str], timeout: int = 600) -> subprocess.CompletedProcess:
    """Run a package-manager style command as root.

    Runs *argv* directly when already root, otherwise through pkexec.
    The caller inspects the exit status of the command itself.

    Raises:
        PrivilegeError: On missing pkexec, authentication cancel/deny or
            timeout.
    """
    program = argv[0]
    if not is_root():
        if not pkexec_available():
            raise PrivilegeError("pkexec is not available on this system")
        argv = ["pkexec", *argv]

    log.info("Running privileged command: %s", " ".join(argv))
    try:
        proc = subprocess.run(argv, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        raise PrivilegeError(f"{program} timed out after {timeout} seconds")
    except FileNotFoundError as exc:
        raise PrivilegeError(f"Command not found: {exc.filename}")

    if argv[0] == "pkexec":
        if proc.returncode == 126:
            raise PrivilegeError("Authentication dismissed by user")
        if proc.returncode == 127:
            raise PrivilegeError("Authentication denied")
    return proc
