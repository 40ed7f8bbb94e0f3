import sys
import glob
import platform as _py_platform
import logging
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

DARWIN = "darwin"
LINUX = "linux"
UNKNOWN = "unknown"

DISTRO_DEBIAN = "debian"
DISTRO_FEDORA = "fedora"
DISTRO_ARCH = "arch"
DISTRO_UNKNOWN = "unknown"

OS_RELEASE_PATH = Path("/etc/os-release")

_FEDORA_IDS = {"fedora", "rhel", "centos", "rocky", "almalinux"}
_DEBIAN_IDS = {"debian", "ubuntu", "linuxmint", "pop"}
_ARCH_IDS = {"arch", "manjaro", "endeavouros", "garuda", "artix"}


class PlatformInfo:
    """Host OS facts the PHP-FPM code needs: OS type, Linux family and Homebrew prefix."""

    def __init__(self, os_type: str, linux_distro: str = DISTRO_UNKNOWN, is_apple_silicon: bool = False):
        self.os_type = os_type
        self.linux_distro = linux_distro
        self.is_apple_silicon = is_apple_silicon

    @property
    def homebrew_prefix(self) -> str:
        return "/opt/homebrew" if self.is_apple_silicon else "/usr/local"

    def __repr__(self):
        return f"PlatformInfo(os_type={self.os_type!r}, linux_distro={self.linux_distro!r})"


def normalize_version(version: str) -> str:
    """Accepts 'php8.2', 'PHP8.2', '82' or '8.2' and returns '8.2'."""
    version = version.strip()
    for prefix in ("php", "PHP"):
        if version.startswith(prefix):
            version = version[len(prefix):]
    if "." in version:
        return version
    if len(version) == 2:
        return f"{version[0]}.{version[1]}"
    return version

def parse_os_release(content: str) -> Dict[str, str]:
    result = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        result[key.strip()] = value.strip().strip('"').strip("'")
    return result

def detect_linux_distro(os_release_path: Path = OS_RELEASE_PATH) -> str:
    try:
        os_release = parse_os_release(os_release_path.read_text(encoding='utf-8'))
    except OSError as e:
        logger.debug(f"PLATFORM: Could not read {os_release_path}: {e}")
        return DISTRO_UNKNOWN

    distro_id = os_release.get("ID", "").lower()
    id_like = os_release.get("ID_LIKE", "").lower()
    logger.debug(f"PLATFORM: os-release ID={distro_id}, ID_LIKE={id_like}")

    if distro_id in _FEDORA_IDS or "fedora" in id_like or "rhel" in id_like:
        return DISTRO_FEDORA
    if distro_id in _DEBIAN_IDS or "debian" in id_like or "ubuntu" in id_like:
        return DISTRO_DEBIAN
    if distro_id in _ARCH_IDS or "arch" in id_like:
        return DISTRO_ARCH
    return DISTRO_UNKNOWN

def detect_platform() -> PlatformInfo:
    if sys.platform == "darwin":
        info = PlatformInfo(DARWIN, is_apple_silicon=_py_platform.machine() == "arm64")
    elif sys.platform.startswith("linux"):
        info = PlatformInfo(LINUX, linux_distro=detect_linux_distro())
    else:
        info = PlatformInfo(UNKNOWN)
    logger.debug(f"PLATFORM: Detected {info}")
    return info

def php_fpm_binary(version: str, platform_info: Optional[PlatformInfo] = None) -> Optional[str]:
    """
    Resolves the PHP-FPM binary for a PHP version on this host.
    Returns the path of the first candidate that exists, or None.
    """
    info = platform_info or detect_platform()
    version = normalize_version(version)
    candidates = []

    if info.os_type == DARWIN:
        base = info.homebrew_prefix
        # Cellar first; the opt/ symlink can lag behind after brew upgrades
        candidates.extend(sorted(glob.glob(f"{base}/Cellar/php@{version}/*/sbin/php-fpm"), reverse=True))
        candidates.append(f"{base}/opt/php@{version}/sbin/php-fpm")
    elif info.os_type == LINUX:
        if info.linux_distro == DISTRO_FEDORA:
            remi_version = version.replace(".", "")
            candidates.append(f"/opt/remi/php{remi_version}/root/usr/sbin/php-fpm")
        elif info.linux_distro == DISTRO_ARCH:
            candidates.extend(["/usr/bin/php-fpm", "/usr/sbin/php-fpm"])
        else:
            candidates.append(f"/usr/sbin/php-fpm{version}")

    for candidate in candidates:
        if Path(candidate).is_file():
            logger.debug(f"PLATFORM: PHP-FPM {version} binary: {candidate}")
            return candidate
    logger.debug(f"PLATFORM: No PHP-FPM {version} binary among {candidates}")
    return None

def php_scan_dir(version: str, platform_info: Optional[PlatformInfo] = None) -> Optional[str]:
    """The conf.d directory the FPM SAPI of this PHP version scans for extra INI files."""
    info = platform_info or detect_platform()
    version = normalize_version(version)
    if info.os_type == DARWIN:
        return f"{info.homebrew_prefix}/etc/php/{version}/conf.d"
    if info.os_type == LINUX:
        if info.linux_distro == DISTRO_FEDORA:
            return f"/etc/opt/remi/php{version.replace('.', '')}/php.d"
        if info.linux_distro == DISTRO_DEBIAN:
            return f"/etc/php/{version}/fpm/conf.d"
        if info.linux_distro == DISTRO_ARCH:
            return "/etc/php/conf.d"
    return None
