# magebox/managers/php_pool.py

import os
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

import jinja2

logger = logging.getLogger(__name__)

from ..core import config
from ..core import platform as platform_utils
from ..core import system_utils
from ..core.exceptions import PoolError, TemplateNotFoundError
from ..core.templates import TemplateLoader, get_default_loader, render
from .php_system_ini import separate_settings

# Shared-master pool sizing; many projects share one master per PHP version.
POOL_MAX_CHILDREN = 10
POOL_START_SERVERS = 2
POOL_MIN_SPARE_SERVERS = 1
POOL_MAX_SPARE_SERVERS = 3
POOL_MAX_REQUESTS = 500

MAGENTO_POOL_DEFAULTS = {
    "memory_limit": "756M",
    "max_execution_time": "18000",
    "max_input_time": "600",
    "max_input_vars": "10000",
    "post_max_size": "64M",
    "upload_max_filesize": "64M",
    "session.gc_maxlifetime": "86400",
    # Per-pool OPcache behaviour; cache sizing is PHP_INI_SYSTEM and lives elsewhere
    "opcache.enable": "1",
    "opcache.validate_timestamps": "1",
    "opcache.consistency_checks": "0",
}


class SocketResolver(ABC):
    """Answers which FastCGI socket serves a project."""

    @abstractmethod
    def get_socket_path(self, project_name: str, php_version: str) -> Path:
        pass


class SharedPoolSocketResolver(SocketResolver):
    """Socket of a project's pool inside the shared per-version master."""

    def __init__(self, run_dir: Path):
        self.run_dir = Path(run_dir)

    def get_socket_path(self, project_name: str, php_version: str) -> Path:
        return self.run_dir / config.SHARED_SOCKET_TEMPLATE.format(project=project_name, version=php_version)


class PoolConfig:
    """Everything the pool template needs for one project."""

    def __init__(self, project_name: str, project_path: str, php_version: str, socket_path: Path,
                 user: str, group: str, error_log_path: Path,
                 php_ini: Optional[Dict[str, str]] = None, env: Optional[Dict[str, str]] = None,
                 sendmail_path: Optional[Path] = None):
        self.project_name = project_name
        self.project_path = str(project_path)
        self.php_version = php_version
        self.socket_path = str(socket_path)
        self.user = user
        self.group = group
        self.error_log_path = str(error_log_path)
        self.max_children = POOL_MAX_CHILDREN
        self.start_servers = POOL_START_SERVERS
        self.min_spare_servers = POOL_MIN_SPARE_SERVERS
        self.max_spare_servers = POOL_MAX_SPARE_SERVERS
        self.max_requests = POOL_MAX_REQUESTS
        self.php_ini = dict(php_ini or {})
        self.env = dict(env or {})
        self.sendmail_path = str(sendmail_path) if sendmail_path else None

    def to_context(self) -> dict:
        return dict(vars(self))


class PoolGenerator(SharedPoolSocketResolver):
    """Writes per-project pool files included by the shared PHP-FPM master of each version."""

    def __init__(self, data_dir: Optional[Path] = None, template_loader: Optional[TemplateLoader] = None):
        self.data_dir = config.data_dir(data_dir)
        super().__init__(config.run_dir(self.data_dir))
        self.pools_dir = config.pools_dir(self.data_dir)
        self.template_loader = template_loader or get_default_loader()

    def get_version_dir(self, php_version: str) -> Path:
        return self.pools_dir / php_version

    def get_pool_path(self, project_name: str, php_version: str) -> Path:
        return self.get_version_dir(php_version) / config.POOL_CONFIG_TEMPLATE.format(project=project_name)

    def get_error_log_path(self, project_name: str) -> Path:
        return config.fpm_log_dir(self.data_dir) / config.POOL_ERROR_LOG_TEMPLATE.format(project=project_name)

    def get_mailpit_sendmail_path(self) -> Path:
        return config.bin_dir(self.data_dir) / config.MAILPIT_SENDMAIL_SCRIPT_NAME

    def get_include_directive(self, php_version: str) -> str:
        return str(self.get_version_dir(php_version) / "*.conf")

    def generate(self, project_name: str, project_path: str, php_version: str,
                 env: Optional[Dict[str, str]] = None, php_ini: Optional[Dict[str, str]] = None,
                 has_mailpit: bool = False) -> Path:
        """
        Renders the project's pool into the pool directory of php_version.

        PHP_INI_SYSTEM keys in php_ini are dropped: FPM ignores them per pool,
        they belong in the system INI or an isolated master.
        """
        version_dir = self.get_version_dir(php_version)
        error_log_path = self.get_error_log_path(project_name)
        for directory in (version_dir, self.run_dir, error_log_path.parent):
            if not config.ensure_dir(directory):
                raise PoolError(f"failed to create directory {directory} for pool {project_name}")

        system_settings, pool_settings = separate_settings(php_ini)
        if system_settings:
            logger.warning(f"POOL_GEN: Ignoring PHP_INI_SYSTEM settings for pool {project_name}: {', '.join(sorted(system_settings))}")

        merged_ini = dict(MAGENTO_POOL_DEFAULTS)
        merged_ini.update(pool_settings)
        pool_env = dict(env or {})

        sendmail_path = None
        if has_mailpit:
            sendmail_path = self.write_mailpit_sendmail()
            pool_env.setdefault("MAILPIT_HOST", config.MAILPIT_HOST)
            pool_env.setdefault("MAILPIT_PORT", str(config.MAILPIT_SMTP_PORT))

        pool_config = PoolConfig(
            project_name=project_name,
            project_path=project_path,
            php_version=php_version,
            socket_path=self.get_socket_path(project_name, php_version),
            user=system_utils.get_current_user(),
            group=system_utils.get_current_group(),
            error_log_path=error_log_path,
            php_ini=merged_ini,
            env=pool_env,
            sendmail_path=sendmail_path,
        )
        content = self._render(config.POOL_TEMPLATE_NAME, pool_config.to_context())

        # A project moves between versions as a whole; drop stale copies first
        self._remove_from_versions(project_name, exclude=php_version)

        pool_path = self.get_pool_path(project_name, php_version)
        try:
            pool_path.write_text(content, encoding='utf-8')
            os.chmod(pool_path, 0o644)
        except OSError as e:
            raise PoolError(f"failed to write pool file {pool_path}: {e}") from e
        logger.info(f"POOL_GEN: Wrote pool for {project_name} (PHP {php_version}) to {pool_path}")
        return pool_path

    def write_mailpit_sendmail(self) -> Path:
        script_path = self.get_mailpit_sendmail_path()
        if not config.ensure_dir(script_path.parent):
            raise PoolError(f"failed to create directory {script_path.parent}")
        content = self._render(config.MAILPIT_SENDMAIL_TEMPLATE_NAME, {
            "mailpit_host": config.MAILPIT_HOST,
            "mailpit_port": config.MAILPIT_SMTP_PORT,
        })
        try:
            script_path.write_text(content, encoding='utf-8')
            os.chmod(script_path, 0o755)
        except OSError as e:
            raise PoolError(f"failed to write sendmail wrapper {script_path}: {e}") from e
        logger.debug(f"POOL_GEN: Wrote Mailpit sendmail wrapper {script_path}")
        return script_path

    def _render(self, template_name: str, context: dict) -> str:
        try:
            template_text = self.template_loader.get_template(config.TEMPLATE_CATEGORY_PHP, template_name)
            return render(template_text, **context)
        except (TemplateNotFoundError, jinja2.TemplateError) as e:
            raise PoolError(f"failed to render {template_name}: {e}") from e

    def _remove_from_versions(self, project_name: str, exclude: Optional[str] = None) -> List[Path]:
        removed = []
        file_name = config.POOL_CONFIG_TEMPLATE.format(project=project_name)
        for pool_file in sorted(self.pools_dir.glob(f"*/{file_name}")):
            if exclude is not None and pool_file.parent.name == exclude:
                continue
            try:
                pool_file.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                raise PoolError(f"failed to remove pool file {pool_file}: {e}") from e
            logger.debug(f"POOL_GEN: Removed pool file {pool_file}")
            removed.append(pool_file)
        return removed

    def remove(self, project_name: str) -> List[Path]:
        """Removes the project's pool from every version directory. Missing files are fine."""
        removed = self._remove_from_versions(project_name)
        if removed:
            logger.info(f"POOL_GEN: Removed pool for {project_name}")
        return removed

    def list_pools(self) -> List[Path]:
        if not self.pools_dir.is_dir():
            return []
        return sorted(self.pools_dir.glob("*/*.conf"))


class FPMController:
    """Controls the shared PHP-FPM service of one PHP version through the OS service manager."""

    def __init__(self, version: str, platform_info: Optional[platform_utils.PlatformInfo] = None):
        self.version = platform_utils.normalize_version(version)
        self.platform_info = platform_info or platform_utils.detect_platform()

    def _service_command(self, action: str) -> List[str]:
        if self.platform_info.os_type == platform_utils.DARWIN:
            return ["brew", "services", action, f"php@{self.version}"]
        if self.platform_info.os_type == platform_utils.LINUX:
            return ["sudo", "systemctl", action, self.service_name()]
        raise PoolError(f"unsupported platform {self.platform_info.os_type} for PHP-FPM service control")

    def service_name(self) -> str:
        if self.platform_info.linux_distro == platform_utils.DISTRO_FEDORA:
            return f"php{self.version.replace('.', '')}-php-fpm"
        if self.platform_info.linux_distro == platform_utils.DISTRO_ARCH:
            return "php-fpm"
        return f"php{self.version}-fpm"

    def _run(self, action: str):
        command = self._service_command(action)
        logger.info(f"FPM_SERVICE: Running {' '.join(command)}")
        return_code, stdout, stderr = system_utils.run_command(command)
        if return_code != 0:
            output = "\n".join(part for part in (stdout, stderr) if part)
            raise PoolError(f"failed to {action} php-fpm {self.version} (exit code {return_code})\nOutput: {output}")

    def start(self):
        self._run("start")

    def stop(self):
        self._run("stop")

    def reload(self):
        # brew services has no reload
        self._run("restart" if self.platform_info.os_type == platform_utils.DARWIN else "reload")

    def is_running(self) -> bool:
        if self.platform_info.os_type == platform_utils.DARWIN:
            return_code, _, _ = system_utils.run_command(["pgrep", "-f", f"php-fpm.*{self.version}"])
            return return_code == 0
        if self.platform_info.os_type == platform_utils.LINUX:
            return_code, stdout, _ = system_utils.run_command(["systemctl", "is-active", self.service_name()])
            return return_code == 0 and stdout.strip() == "active"
        return False
