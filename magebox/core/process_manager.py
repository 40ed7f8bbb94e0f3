import os
import signal
import time
import errno # For os.kill error codes
import logging
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_STOP_TIMEOUT = 5  # seconds to wait after SIGTERM before escalating
POLL_INTERVAL = 0.2
SIGKILL_RETRIES = 5


def read_pid_file(pid_file_path: Optional[Union[str, Path]]) -> Optional[int]:
    """
    Reads a PID from a file.
    Args:
        pid_file_path: Absolute path to the PID file.
    Returns:
        int or None: The PID if successfully read, otherwise None.
    """
    if not pid_file_path:
        logger.debug("PROCESS_MANAGER: read_pid_file: No PID file path provided.")
        return None
    pid_file = Path(pid_file_path)
    if not pid_file.is_file():
        logger.debug(f"PROCESS_MANAGER: read_pid_file: PID file not found at {pid_file}")
        return None
    pid_str = ""
    try:
        pid_str = pid_file.read_text(encoding='utf-8').strip()
        if not pid_str:
            logger.warning(f"PROCESS_MANAGER: read_pid_file: PID file {pid_file} is empty.")
            return None
        pid = int(pid_str)
        if pid <= 0:
            logger.warning(f"PROCESS_MANAGER: read_pid_file: Invalid PID {pid} found in {pid_file}.")
            return None
        return pid
    except ValueError:
        logger.warning(f"PROCESS_MANAGER: read_pid_file: Non-integer PID value '{pid_str}' in {pid_file}.")
        return None
    except OSError as e_io:
        logger.warning(f"PROCESS_MANAGER: read_pid_file: Error reading PID file {pid_file}: {e_io.strerror}")
        return None

def check_pid_running(pid: Optional[int]) -> bool:
    """
    Checks if a process with the given PID exists using signal 0.
    """
    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)  # Send null signal
        return True
    except OSError as err:
        if err.errno == errno.ESRCH:  # No such process
            return False
        elif err.errno == errno.EPERM:  # Process exists but is owned by another user
            logger.warning(f"PROCESS_MANAGER: check_pid_running: Permission denied for PID {pid}, but process likely exists.")
            return True
        logger.warning(f"PROCESS_MANAGER: check_pid_running: OSError for PID {pid} (errno {err.errno}): {err.strerror}")
        return False

def _wait_for_exit(pid: int, timeout: float, pid_file_path: Optional[Path] = None) -> bool:
    """Polls until the PID is gone (or the process removed its own PID file)."""
    start_time = time.monotonic()
    while True:
        if not check_pid_running(pid):
            return True
        # PHP-FPM deletes its own PID file on a clean shutdown
        if pid_file_path and not pid_file_path.exists():
            return True
        if (time.monotonic() - start_time) >= timeout:
            return False
        time.sleep(POLL_INTERVAL)

def terminate_pid(
    pid: int,
    timeout: float = DEFAULT_STOP_TIMEOUT,
    pid_file_path: Optional[Union[str, Path]] = None
) -> bool:
    """
    Stops a process by PID.
    Sends SIGTERM, waits up to `timeout`, then escalates to SIGKILL.
    Returns:
        bool: True if the process is confirmed gone, False only if both signals failed.
    """
    pid_path_obj = Path(pid_file_path) if pid_file_path else None
    logger.info(f"PROCESS_MANAGER: Sending SIGTERM to PID {pid} (timeout {timeout}s)...")
    try:
        os.kill(pid, signal.SIGTERM)
        if _wait_for_exit(pid, timeout, pid_path_obj):
            logger.info(f"PROCESS_MANAGER: PID {pid} stopped gracefully after SIGTERM.")
            return True
        logger.warning(f"PROCESS_MANAGER: PID {pid} did not stop with SIGTERM in {timeout}s. Sending SIGKILL.")
    except ProcessLookupError:
        logger.info(f"PROCESS_MANAGER: PID {pid} disappeared before SIGTERM could be sent.")
        return True
    except OSError as term_err:
        logger.warning(f"PROCESS_MANAGER: SIGTERM to PID {pid} failed: {term_err}. Escalating to SIGKILL.")

    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        logger.info(f"PROCESS_MANAGER: PID {pid} disappeared before SIGKILL could be sent.")
        return True
    except OSError as kill_err:
        logger.error(f"PROCESS_MANAGER: Error sending SIGKILL to PID {pid}: {kill_err}")
        return False

    for i in range(SIGKILL_RETRIES):
        if not check_pid_running(pid):
            logger.info(f"PROCESS_MANAGER: PID {pid} confirmed stopped after SIGKILL (attempt {i + 1}).")
            return True
        time.sleep(POLL_INTERVAL)

    logger.error(f"PROCESS_MANAGER: PID {pid} did not appear to stop even after SIGKILL and retries.")
    return False

def remove_runtime_file(path: Optional[Union[str, Path]]):
    """Deletes a PID/socket file, tolerating it being gone already."""
    if not path:
        return
    try:
        Path(path).unlink(missing_ok=True)
        logger.debug(f"PROCESS_MANAGER: Removed runtime file {path}")
    except OSError as e:
        logger.warning(f"PROCESS_MANAGER: Could not remove runtime file {path}: {e}")
