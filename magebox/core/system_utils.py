import subprocess
import shlex
import os
import grp
import shutil
import tempfile
import logging
from pathlib import Path
from typing import List, Tuple

logger = logging.getLogger(__name__)


def run_command(command_list: List[str]) -> Tuple[int, str, str]:
    """Runs a system command and captures output/return code."""
    joined_command = shlex.join(command_list)
    logger.debug(f"SYSTEM_UTILS: Running command: {joined_command}")
    try:
        result = subprocess.run(
            command_list,
            capture_output=True,
            text=True,
            check=False,
            encoding='utf-8',
            errors='replace'
        )
        if result.returncode != 0:
            log_message = (
                f"SYSTEM_UTILS: Command failed (Code: {result.returncode}): {joined_command}\n"
                f"  Stdout: {result.stdout.strip()}\n"
                f"  Stderr: {result.stderr.strip()}"
            )
            logger.warning(log_message)

        return result.returncode, result.stdout.strip(), result.stderr.strip()
    except FileNotFoundError:
        msg = f"SYSTEM_UTILS: Command not found: {command_list[0]}"
        logger.error(msg)
        return -1, "", msg
    except OSError as e:
        msg = f"SYSTEM_UTILS: Error running command '{joined_command}': {e}"
        logger.error(msg, exc_info=True)
        return -2, "", msg

def get_current_user() -> str:
    """Login name used for FPM pool user/listen.owner directives."""
    user = os.environ.get("USER") or os.environ.get("LOGNAME")
    return user or "www-data"

def get_current_group() -> str:
    """Primary group of the current process, falling back to the user name."""
    user = get_current_user()
    if user == "www-data":
        return "www-data"
    try:
        return grp.getgrgid(os.getgid()).gr_name
    except KeyError:
        # gid without a group entry (containers); the user name is the usual group on Linux
        return user

def write_file_atomic(path: Path, content: str, mode: int = 0o644):
    """
    Writes `content` to `path` through a temp file in the same directory and os.replace,
    so readers see either the old file or the new one. Raises OSError on failure.
    """
    path = Path(path)
    temp_path_obj = None
    try:
        with tempfile.NamedTemporaryFile('w', dir=path.parent, delete=False, encoding='utf-8',
                                         prefix=f"{path.name}.tmp.") as temp_f:
            temp_path_obj = Path(temp_f.name)
            temp_f.write(content)
            temp_f.flush()
            os.fsync(temp_f.fileno())

        if path.exists(): # Preserve permissions if original file existed
            shutil.copystat(path, temp_path_obj)
        else:
            os.chmod(temp_path_obj, mode)

        os.replace(temp_path_obj, path)
        temp_path_obj = None
        logger.debug(f"SYSTEM_UTILS: Wrote {path}")
    finally:
        if temp_path_obj and temp_path_obj.exists():
            try:
                temp_path_obj.unlink()
                logger.debug(f"SYSTEM_UTILS: Cleaned up temporary file {temp_path_obj}")
            except OSError as e_unlink:
                logger.error(f"SYSTEM_UTILS: Failed to remove temporary file {temp_path_obj}: {e_unlink}")
