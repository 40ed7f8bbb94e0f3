# magebox/managers/php_system_ini.py

import os
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

# --- Import Core Modules ---
from ..core import config
from ..core import platform as platform_utils
from ..core import system_utils
from ..core.exceptions import SystemINIError
# --- End Imports ---

# PHP_INI_SYSTEM directives: these can only be set in php.ini (or a file
# scanned with it), never per pool, so they are global to every pool served
# by one PHP runtime. Static on purpose: PHP offers no way to list directive
# modes at runtime. Review when a new PHP minor adds OPcache/JIT directives.
# Last reviewed against PHP 8.3.
PHP_INI_SYSTEM_SETTINGS = frozenset({
    # OPcache shared memory / file cache
    "opcache.enable_cli",
    "opcache.memory_consumption",
    "opcache.interned_strings_buffer",
    "opcache.max_accelerated_files",
    "opcache.max_wasted_percentage",
    "opcache.force_restart_timeout",
    "opcache.log_verbosity_level",
    "opcache.preferred_memory_model",
    "opcache.protect_memory",
    "opcache.mmap_base",
    "opcache.restrict_api",
    "opcache.file_update_protection",
    "opcache.huge_code_pages",
    "opcache.lockfile_path",
    "opcache.opt_debug_level",
    "opcache.file_cache",
    "opcache.file_cache_only",
    "opcache.file_cache_consistency_checks",
    "opcache.file_cache_fallback",

    # Preloading (PHP 7.4+)
    "opcache.preload",
    "opcache.preload_user",

    # JIT (PHP 8.0+)
    "opcache.jit",
    "opcache.jit_buffer_size",
    "opcache.jit_debug",
    "opcache.jit_bisect_limit",
    "opcache.jit_prof_threshold",
    "opcache.jit_max_root_traces",
    "opcache.jit_max_side_traces",
    "opcache.jit_max_exit_counters",
    "opcache.jit_hot_loop",
    "opcache.jit_hot_func",
    "opcache.jit_hot_return",
    "opcache.jit_hot_side_exit",
    "opcache.jit_blacklist_root_trace",
    "opcache.jit_blacklist_side_trace",
    "opcache.jit_max_loop_unrolls",
    "opcache.jit_max_recursive_calls",
    "opcache.jit_max_recursive_returns",
    "opcache.jit_max_polymorphic_calls",
})


# --- Settings classification ---
def is_system_setting(key: str) -> bool:
    """True if `key` is a PHP_INI_SYSTEM directive (exact, case-sensitive match)."""
    return key in PHP_INI_SYSTEM_SETTINGS

def separate_settings(settings: Optional[Dict[str, str]]) -> Tuple[Dict[str, str], Dict[str, str]]:
    """
    Splits a flat PHP-INI mapping into (system, pool) settings.
    Every key lands in exactly one of the two; values are passed through untouched.
    """
    system: Dict[str, str] = {}
    pool: Dict[str, str] = {}
    for key, value in (settings or {}).items():
        if is_system_setting(key):
            system[key] = value
        else:
            pool[key] = value
    return system, pool

def get_system_settings_list() -> List[str]:
    return sorted(PHP_INI_SYSTEM_SETTINGS)


def _now() -> datetime:
    return datetime.now(timezone.utc).astimezone()

def _parse_timestamp(value) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class SystemINIOwner:
    """Which project last wrote the system INI file of one PHP version."""

    def __init__(self, project_name: str, project_path: str, php_version: str,
                 settings: Optional[Dict[str, str]] = None, updated_at: Optional[datetime] = None):
        self.project_name = project_name
        self.project_path = project_path
        self.php_version = php_version
        self.settings = dict(settings or {})
        self.updated_at = updated_at or _now()

    def to_dict(self) -> dict:
        return {
            "project_name": self.project_name,
            "project_path": self.project_path,
            "php_version": self.php_version,
            "settings": self.settings,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SystemINIOwner":
        return cls(
            project_name=data["project_name"],
            project_path=data.get("project_path", ""),
            php_version=data["php_version"],
            settings={str(k): str(v) for k, v in (data.get("settings") or {}).items()},
            updated_at=_parse_timestamp(data["updated_at"]),
        )

    def __eq__(self, other):
        if not isinstance(other, SystemINIOwner):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return f"SystemINIOwner(project_name={self.project_name!r}, php_version={self.php_version!r})"


class SystemINIManager:
    """
    Keeps the per-version system INI file and the record of which project owns it.

    Writing only produces `{data}/php/php-system-<v>.ini`; the settings take
    effect once that file is symlinked into the PHP scan directory and FPM is
    restarted (see get_enable_command / is_symlink_active).
    """

    def __init__(self, data_dir: Optional[Path] = None,
                 platform_info: Optional[platform_utils.PlatformInfo] = None):
        self.php_dir = config.php_dir(data_dir)
        self._platform_info = platform_info

    @property
    def platform_info(self) -> platform_utils.PlatformInfo:
        if self._platform_info is None:
            self._platform_info = platform_utils.detect_platform()
        return self._platform_info

    # --- Paths ---
    def get_system_ini_path(self, php_version: str) -> Path:
        return self.php_dir / config.SYSTEM_INI_TEMPLATE.format(version=php_version)

    def get_owner_path(self, php_version: str) -> Path:
        return self.php_dir / config.SYSTEM_INI_OWNER_TEMPLATE.format(version=php_version)

    # --- Ownership ---
    def get_current_owner(self, php_version: str) -> Optional[SystemINIOwner]:
        owner_path = self.get_owner_path(php_version)
        try:
            raw = owner_path.read_text(encoding='utf-8')
        except FileNotFoundError:
            return None
        except OSError as e:
            raise SystemINIError(f"failed to read owner file {owner_path} (PHP {php_version}): {e}") from e

        try:
            return SystemINIOwner.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise SystemINIError(f"malformed owner file {owner_path} (PHP {php_version}): {e}") from e

    def render_system_ini(self, php_version: str, project_name: str, project_path: str,
                          settings: Dict[str, str], updated_at: datetime) -> str:
        lines = [
            f"; MageBox PHP System Settings for PHP {php_version}",
            f"; Owner: {project_name}",
            f"; Path: {project_path}",
            f"; Updated: {updated_at.isoformat(timespec='seconds')}",
            ";",
            "; These are PHP_INI_SYSTEM settings that apply to ALL projects using this PHP version.",
            "; They only take effect after PHP-FPM is restarted.",
            ";",
            "",
        ]
        lines.extend(f"{key} = {settings[key]}" for key in sorted(settings))
        return "\n".join(lines) + "\n"

    def write_system_ini(self, php_version: str, project_name: str, project_path: str,
                         settings: Optional[Dict[str, str]]) -> Optional[SystemINIOwner]:
        """
        Writes the system INI for `php_version` and records `project_name` as owner.
        Returns the previous owner if it was a different project, else None.
        """
        if not settings:
            logger.debug(f"SYSTEM_INI: No system settings for {project_name} (PHP {php_version}); nothing to write.")
            return None

        if not config.ensure_dir(self.php_dir):
            raise SystemINIError(f"failed to create php directory {self.php_dir}")

        previous_owner = self.get_current_owner(php_version)
        updated_at = _now()

        ini_path = self.get_system_ini_path(php_version)
        content = self.render_system_ini(php_version, project_name, project_path, settings, updated_at)
        try:
            system_utils.write_file_atomic(ini_path, content)
        except OSError as e:
            raise SystemINIError(f"failed to write system INI {ini_path} (PHP {php_version}): {e}") from e

        owner = SystemINIOwner(project_name, project_path, php_version, settings, updated_at)
        owner_path = self.get_owner_path(php_version)
        try:
            system_utils.write_file_atomic(owner_path, json.dumps(owner.to_dict(), indent=2, sort_keys=True) + "\n")
        except OSError as e:
            raise SystemINIError(f"failed to write owner file {owner_path} (PHP {php_version}): {e}") from e

        logger.info(f"SYSTEM_INI: {project_name} wrote {len(settings)} system setting(s) for PHP {php_version} to {ini_path}")

        if previous_owner is not None and previous_owner.project_name != project_name:
            logger.warning(f"SYSTEM_INI: PHP {php_version} system settings taken over from {previous_owner.project_name} by {project_name}")
            return previous_owner
        return None

    def clear_system_ini(self, php_version: str, project_name: str):
        """Removes the system INI and owner file, but only if `project_name` owns them."""
        owner = self.get_current_owner(php_version)
        if owner is None or owner.project_name != project_name:
            logger.debug(f"SYSTEM_INI: {project_name} does not own PHP {php_version} system settings; leaving them in place.")
            return

        for path in (self.get_system_ini_path(php_version), self.get_owner_path(php_version)):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                raise SystemINIError(f"failed to remove {path} (PHP {php_version}): {e}") from e
        logger.info(f"SYSTEM_INI: Cleared PHP {php_version} system settings owned by {project_name}")

    # --- Activation (symlink into the PHP scan dir) ---
    def get_php_scan_dir(self, php_version: str) -> Optional[str]:
        return platform_utils.php_scan_dir(php_version, self.platform_info)

    def get_symlink_path(self, php_version: str) -> Optional[Path]:
        scan_dir = self.get_php_scan_dir(php_version)
        if not scan_dir:
            return None
        return Path(scan_dir) / config.SYSTEM_INI_SYMLINK_NAME

    def is_symlink_active(self, php_version: str) -> bool:
        symlink_path = self.get_symlink_path(php_version)
        if symlink_path is None:
            return False
        try:
            target = os.readlink(symlink_path)
        except OSError:
            return False
        return Path(target) == self.get_system_ini_path(php_version)

    def get_enable_command(self, php_version: str) -> str:
        symlink_path = self.get_symlink_path(php_version)
        if symlink_path is None:
            return "# Unable to determine PHP scan directory for your platform"
        return f"sudo ln -sf {self.get_system_ini_path(php_version)} {symlink_path}"

    def get_disable_command(self, php_version: str) -> str:
        symlink_path = self.get_symlink_path(php_version)
        if symlink_path is None:
            return "# Unable to determine PHP scan directory for your platform"
        return f"sudo rm -f {symlink_path}"

    # --- Display ---
    def format_system_settings_info(self, php_version: str) -> str:
        owner = self.get_current_owner(php_version)
        if owner is None:
            return f"PHP {php_version}: No system settings configured"

        lines = [
            f"PHP {php_version} System Settings (PHP_INI_SYSTEM)",
            "-" * 50,
            f"Owner:   {owner.project_name}",
            f"Path:    {owner.project_path}",
            f"Updated: {owner.updated_at.strftime('%Y-%m-%d %H:%M:%S')}",
            f"Active:  {'yes' if self.is_symlink_active(php_version) else 'no (symlink missing)'}",
            "",
            "Settings:",
        ]
        lines.extend(f"  {key} = {owner.settings[key]}" for key in sorted(owner.settings))
        return "\n".join(lines) + "\n"

    def format_activation_instructions(self, php_version: str, settings: Optional[Dict[str, str]]) -> str:
        if not settings:
            return ""

        lines = [
            "",
            f"PHP System Settings (PHP_INI_SYSTEM) detected for PHP {php_version}",
            "",
            "The following settings require system-level PHP configuration:",
            "",
        ]
        lines.extend(f"  * {key} = {settings[key]}" for key in sorted(settings))
        lines.extend(["", f"Config file: {self.get_system_ini_path(php_version)}", ""])

        if self.is_symlink_active(php_version):
            lines.append("Status: active (symlink exists)")
        else:
            lines.extend([
                "Status: not active (requires symlink)",
                "",
                "To activate these settings, run:",
                f"  {self.get_enable_command(php_version)}",
                "",
                "Then restart PHP-FPM:",
                f"  {config.CLI_NAME} restart php",
            ])

        lines.extend(["", f"Note: These settings apply to ALL projects using PHP {php_version}"])
        return "\n".join(lines) + "\n"


def format_owner_warning(previous: SystemINIOwner, new_project: str, new_settings: Optional[Dict[str, str]]) -> str:
    """Human-readable diff shown when one project overwrites another's system settings."""
    new_settings = new_settings or {}
    lines = [
        "",
        "WARNING: PHP system settings (PHP_INI_SYSTEM) are being changed",
        f"   Previous owner: {previous.project_name}",
        f"   Previous path:  {previous.project_path}",
        f"   New owner:      {new_project}",
        "",
        "   Settings being overwritten:",
    ]

    for key in sorted(set(previous.settings) | set(new_settings)):
        had_old = key in previous.settings
        has_new = key in new_settings
        if had_old and has_new:
            if previous.settings[key] != new_settings[key]:
                lines.append(f"   - {key}: {previous.settings[key]} → {new_settings[key]}")
        elif had_old:
            lines.append(f"   - {key}: {previous.settings[key]} → (removed)")
        else:
            lines.append(f"   - {key}: (new) {new_settings[key]}")

    lines.extend([
        "",
        "   Note: These settings apply to ALL projects using this PHP version.",
        f"   Run '{config.CLI_NAME} php system show {previous.php_version}' to see current system settings.",
    ])
    return "\n".join(lines) + "\n"
