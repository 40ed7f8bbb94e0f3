import os
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# --- Base Directories ---
# Everything magebox writes lives under one data root (conceptually ~/.magebox).
MAGEBOX_DIR = Path(os.environ.get('MAGEBOX_HOME', Path.home() / '.magebox')).expanduser().resolve()
# Template library checked out next to the data root; local overrides win over it.
LIB_DIR = Path(os.environ.get('MAGEBOX_LIB_DIR', MAGEBOX_DIR / 'yaml')).expanduser().resolve()
LOCAL_LIB_DIR = MAGEBOX_DIR / 'yaml-local'

# --- Fixed sub-path conventions (relative to the data root) ---
RUN_SUBDIR = 'run'
PHP_SUBDIR = 'php'
ISOLATED_SUBDIR = 'isolated'
POOLS_SUBDIR = 'pools'
LOGS_SUBDIR = 'logs'
FPM_LOGS_SUBDIR = 'php-fpm'
BIN_SUBDIR = 'bin'
REGISTRY_FILE_NAME = 'isolated-projects.json'
APP_LOG_FILE_NAME = 'magebox.log'

# --- File name templates ---
ISOLATED_SOCKET_TEMPLATE = "{project}-isolated-php{version}.sock"
ISOLATED_PID_TEMPLATE = "{project}-isolated-php{version}.pid"
ISOLATED_CONFIG_TEMPLATE = "{project}-php{version}.conf"
ISOLATED_ERROR_LOG_TEMPLATE = "{project}-isolated-error.log"
SHARED_SOCKET_TEMPLATE = "{project}-php{version}.sock"
POOL_CONFIG_TEMPLATE = "{project}.conf"
POOL_ERROR_LOG_TEMPLATE = "{project}-error.log"
SYSTEM_INI_TEMPLATE = "php-system-{version}.ini"
SYSTEM_INI_OWNER_TEMPLATE = "php-system-{version}.owner.json"
SYSTEM_INI_SYMLINK_NAME = "99-magebox-system.ini"

# --- Template categories/names (see core/templates.py) ---
TEMPLATE_CATEGORY_PHP = "php"
ISOLATED_FPM_TEMPLATE_NAME = "isolated-fpm.conf.tmpl"
POOL_TEMPLATE_NAME = "pool.conf.tmpl"
MAILPIT_SENDMAIL_TEMPLATE_NAME = "mailpit-sendmail.sh"
MAILPIT_SENDMAIL_SCRIPT_NAME = "mailpit-sendmail"

# --- Mailpit (local mail catcher) ---
MAILPIT_HOST = "127.0.0.1"
MAILPIT_SMTP_PORT = 1025

# --- Misc ---
APP_NAME = "MageBox"
CLI_NAME = "magebox"


# --- Path helpers ---
def data_dir(override: Optional[Path] = None) -> Path:
    """
    Returns the data root, honouring an explicit override (used by tests and --data-dir).
    Always absolute, since paths derived from it are written into php-fpm configs.
    """
    if override:
        return Path(override).expanduser().resolve()
    return MAGEBOX_DIR

def run_dir(base: Optional[Path] = None) -> Path:
    return data_dir(base) / RUN_SUBDIR

def php_dir(base: Optional[Path] = None) -> Path:
    return data_dir(base) / PHP_SUBDIR

def isolated_config_dir(base: Optional[Path] = None) -> Path:
    return php_dir(base) / ISOLATED_SUBDIR

def pools_dir(base: Optional[Path] = None) -> Path:
    return php_dir(base) / POOLS_SUBDIR

def logs_dir(base: Optional[Path] = None) -> Path:
    return data_dir(base) / LOGS_SUBDIR

def fpm_log_dir(base: Optional[Path] = None) -> Path:
    return logs_dir(base) / FPM_LOGS_SUBDIR

def bin_dir(base: Optional[Path] = None) -> Path:
    return data_dir(base) / BIN_SUBDIR

def registry_path(base: Optional[Path] = None) -> Path:
    return data_dir(base) / REGISTRY_FILE_NAME


def ensure_dir(path: Path):
    """Creates a directory if it doesn't exist. Returns True on success."""
    try:
        path.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Ensured directory exists: {path}")
        return True
    except OSError as e:
        logger.error(f"CONFIG_ERROR: Error creating directory {path}: {e}", exc_info=True)
        return False

def ensure_base_dirs(base: Optional[Path] = None):
    # Only the directories every command needs; managers create the rest on demand.
    base_dirs_to_ensure = [
        data_dir(base),
        run_dir(base),
        php_dir(base),
        logs_dir(base),
    ]

    all_ok = True
    for d_path in base_dirs_to_ensure:
        if not ensure_dir(d_path):
            all_ok = False
    if not all_ok:
        logger.warning("CONFIG_WARNING: Some base directories could not be created.")
    else:
        logger.debug("Base directories ensured successfully.")
    return all_ok
