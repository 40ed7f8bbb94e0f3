# magebox/managers/php_isolation.py

import os
import json
import enum
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

import jinja2

logger = logging.getLogger(__name__)

# --- Import Core Modules ---
from ..core import config
from ..core import platform as platform_utils
from ..core import process_manager
from ..core import system_utils
from ..core.exceptions import (
    MageboxError,
    RegistryError,
    ProjectNotIsolatedError,
    FPMBinaryNotFoundError,
    IsolatedConfigError,
    FPMStartError,
    FPMStopError,
    BatchOperationError,
    TemplateNotFoundError,
)
from ..core.templates import TemplateLoader, get_default_loader, render
from .php_system_ini import separate_settings
from .php_pool import SocketResolver, SharedPoolSocketResolver
# --- End Imports ---

# Process-pool sizing for a dedicated master; larger than a shared pool
# since the master serves a single project.
ISOLATED_MAX_CHILDREN = 25
ISOLATED_START_SERVERS = 4
ISOLATED_MIN_SPARE_SERVERS = 2
ISOLATED_MAX_SPARE_SERVERS = 6
ISOLATED_MAX_REQUESTS = 1000


def _now() -> datetime:
    return datetime.now(timezone.utc).astimezone()


class IsolatedProject:
    """One isolated PHP-FPM master: where it lives on disk and what it was started with."""

    def __init__(self, project_name: str, project_path: str, php_version: str,
                 socket_path: str, pid_path: str, config_path: str,
                 settings: Optional[Dict[str, str]] = None, created_at: Optional[datetime] = None):
        self.project_name = project_name
        self.project_path = str(project_path)
        self.php_version = php_version
        self.socket_path = str(socket_path)
        self.pid_path = str(pid_path)
        self.config_path = str(config_path)
        self.settings = dict(settings or {})
        self.created_at = created_at or _now()

    def to_dict(self) -> dict:
        return {
            "project_name": self.project_name,
            "project_path": self.project_path,
            "php_version": self.php_version,
            "socket_path": self.socket_path,
            "pid_path": self.pid_path,
            "config_path": self.config_path,
            "settings": self.settings,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "IsolatedProject":
        created_at = data.get("created_at")
        return cls(
            project_name=data["project_name"],
            project_path=data.get("project_path", ""),
            php_version=data["php_version"],
            socket_path=data["socket_path"],
            pid_path=data["pid_path"],
            config_path=data["config_path"],
            settings={str(k): str(v) for k, v in (data.get("settings") or {}).items()},
            created_at=datetime.fromisoformat(created_at) if created_at else None,
        )

    def __eq__(self, other):
        if not isinstance(other, IsolatedProject):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return f"IsolatedProject(project_name={self.project_name!r}, php_version={self.php_version!r})"


# --- Registry storage ---
class RegistryStore(ABC):
    """Where the isolated-projects mapping is persisted."""

    @abstractmethod
    def load(self) -> Dict[str, IsolatedProject]:
        """Returns the full mapping; an absent store is an empty mapping."""
        pass

    @abstractmethod
    def save(self, projects: Dict[str, IsolatedProject]):
        """Replaces the full mapping."""
        pass


class JSONRegistryStore(RegistryStore):
    """
    Registry kept in a single pretty-printed JSON file.

    There is no file locking: two magebox processes mutating the registry at
    the same time race, and the last full write wins.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Dict[str, IsolatedProject]:
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise RegistryError(f"failed to read registry {self.path}: {e}") from e
        except ValueError as e:
            raise RegistryError(f"malformed registry {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise RegistryError(f"malformed registry {self.path}: expected an object, got {type(data).__name__}")
        projects = {}
        for name, entry in data.items():
            try:
                projects[name] = IsolatedProject.from_dict(entry)
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                raise RegistryError(f"malformed registry entry '{name}' in {self.path}: {e}") from e
        return projects

    def save(self, projects: Dict[str, IsolatedProject]):
        if not config.ensure_dir(self.path.parent):
            raise RegistryError(f"failed to create registry directory {self.path.parent}")

        data_to_save = {name: project.to_dict() for name, project in sorted(projects.items())}
        try:
            system_utils.write_file_atomic(self.path, json.dumps(data_to_save, indent=2, sort_keys=True) + "\n")
        except OSError as e:
            raise RegistryError(f"failed to write registry {self.path}: {e}") from e
        logger.debug(f"ISOLATED_REGISTRY: Saved {len(projects)} project(s) to {self.path}")


class IsolatedRegistry:
    """Project name → IsolatedProject; re-read from the store on every call."""

    def __init__(self, store: Optional[RegistryStore] = None, data_dir: Optional[Path] = None):
        self.store = store or JSONRegistryStore(config.registry_path(data_dir))

    def load(self) -> Dict[str, IsolatedProject]:
        return self.store.load()

    def save(self, projects: Dict[str, IsolatedProject]):
        self.store.save(projects)

    def get(self, project_name: str) -> Optional[IsolatedProject]:
        return self.load().get(project_name)

    def add(self, project: IsolatedProject):
        projects = self.load()
        projects[project.project_name] = project
        self.save(projects)

    def remove(self, project_name: str):
        projects = self.load()
        if projects.pop(project_name, None) is None:
            logger.debug(f"ISOLATED_REGISTRY: '{project_name}' was not registered.")
        self.save(projects)

    def list(self) -> List[IsolatedProject]:
        return [project for _, project in sorted(self.load().items())]


# --- Derived process state ---
class FPMState(enum.Enum):
    NOT_ISOLATED = "not_isolated"
    STOPPED = "stopped"      # registered, no readable PID file
    STALE = "stale"          # registered, PID file points at a dead process
    RUNNING = "running"


def derive_state(project: Optional[IsolatedProject], pid: Optional[int], alive: bool) -> FPMState:
    if project is None:
        return FPMState.NOT_ISOLATED
    if pid is None:
        return FPMState.STOPPED
    if not alive:
        return FPMState.STALE
    return FPMState.RUNNING


class IsolatedSocketResolver(SocketResolver):
    """Socket of a registered isolated master."""

    def __init__(self, project: IsolatedProject):
        self.project = project

    def get_socket_path(self, project_name: str, php_version: str) -> Path:
        return Path(self.project.socket_path)


# --- Controller ---
class IsolatedFPMController:
    """
    Runs one dedicated PHP-FPM master per isolated project.

    The registry is the durable record of which projects are isolated; the OS
    processes are reconciled against it (PID files are re-read on every call).
    A master started by enable() is only registered after it started, so a
    crash in between can leave an unregistered master running.
    """

    def __init__(self, data_dir: Optional[Path] = None,
                 registry: Optional[IsolatedRegistry] = None,
                 binary_resolver: Optional[Callable[[str], Optional[str]]] = None,
                 template_loader: Optional[TemplateLoader] = None,
                 shared_resolver: Optional[SocketResolver] = None,
                 stop_timeout: float = process_manager.DEFAULT_STOP_TIMEOUT):
        self.data_dir = config.data_dir(data_dir)
        self.registry = registry or IsolatedRegistry(data_dir=self.data_dir)
        self.binary_resolver = binary_resolver or platform_utils.php_fpm_binary
        self.template_loader = template_loader or get_default_loader()
        self.shared_resolver = shared_resolver or SharedPoolSocketResolver(config.run_dir(self.data_dir))
        self.stop_timeout = stop_timeout

    def get_registry(self) -> IsolatedRegistry:
        return self.registry

    # --- Paths ---
    def get_isolated_socket_path(self, project_name: str, php_version: str) -> Path:
        return config.run_dir(self.data_dir) / config.ISOLATED_SOCKET_TEMPLATE.format(project=project_name, version=php_version)

    def get_isolated_pid_path(self, project_name: str, php_version: str) -> Path:
        return config.run_dir(self.data_dir) / config.ISOLATED_PID_TEMPLATE.format(project=project_name, version=php_version)

    def get_isolated_config_path(self, project_name: str, php_version: str) -> Path:
        return config.isolated_config_dir(self.data_dir) / config.ISOLATED_CONFIG_TEMPLATE.format(project=project_name, version=php_version)

    def get_isolated_log_path(self, project_name: str, php_version: str) -> Path:
        # One error log per project regardless of PHP version
        return config.fpm_log_dir(self.data_dir) / config.ISOLATED_ERROR_LOG_TEMPLATE.format(project=project_name)

    # --- Lifecycle ---
    def enable(self, project_name: str, project_path: str, php_version: str,
               system_settings: Optional[Dict[str, str]]) -> IsolatedProject:
        """
        Starts (or re-starts with new settings/version) a dedicated master for the project.
        The registry is only updated once the master has started.
        """
        existing = self.registry.get(project_name)
        if existing is not None:
            logger.info(f"ISOLATED_FPM: {project_name} is already isolated (PHP {existing.php_version}); updating in place.")
            try:
                self.stop(project_name)
            except FPMStopError as e:
                raise FPMStopError(f"failed to stop existing isolated master for {project_name} (PHP {existing.php_version}): {e}",
                                   project_name=project_name, php_version=existing.php_version) from e

        project = IsolatedProject(
            project_name=project_name,
            project_path=str(project_path),
            php_version=php_version,
            socket_path=str(self.get_isolated_socket_path(project_name, php_version)),
            pid_path=str(self.get_isolated_pid_path(project_name, php_version)),
            config_path=str(self.get_isolated_config_path(project_name, php_version)),
            settings=system_settings,
            created_at=existing.created_at if existing is not None else None,
        )

        self.generate_config(project)
        self.start(project)
        self.registry.add(project)

        if existing is not None and existing.config_path != project.config_path:
            Path(existing.config_path).unlink(missing_ok=True)
            logger.debug(f"ISOLATED_FPM: Removed previous config {existing.config_path} for {project_name}")

        logger.info(f"ISOLATED_FPM: Isolation enabled for {project_name} (PHP {php_version}), socket {project.socket_path}")
        return project

    def disable(self, project_name: str):
        project = self.registry.get(project_name)
        if project is None:
            raise ProjectNotIsolatedError(project_name)

        self.stop(project_name)

        config_path = Path(project.config_path)
        try:
            config_path.unlink(missing_ok=True)
        except OSError as e:
            raise IsolatedConfigError(f"failed to remove config {config_path} for {project_name} (PHP {project.php_version}): {e}",
                                      project_name=project_name, php_version=project.php_version) from e

        self.registry.remove(project_name)
        logger.info(f"ISOLATED_FPM: Isolation disabled for {project_name} (PHP {project.php_version})")

    def render_config(self, project: IsolatedProject) -> str:
        system_settings, pool_settings = separate_settings(project.settings)
        context = {
            "project_name": project.project_name,
            "project_path": project.project_path,
            "php_version": project.php_version,
            "pid_path": project.pid_path,
            "error_log_path": str(self.get_isolated_log_path(project.project_name, project.php_version)),
            "socket_path": project.socket_path,
            "user": system_utils.get_current_user(),
            "group": system_utils.get_current_group(),
            "max_children": ISOLATED_MAX_CHILDREN,
            "start_servers": ISOLATED_START_SERVERS,
            "min_spare_servers": ISOLATED_MIN_SPARE_SERVERS,
            "max_spare_servers": ISOLATED_MAX_SPARE_SERVERS,
            "max_requests": ISOLATED_MAX_REQUESTS,
            "system_settings": system_settings,
            "pool_settings": pool_settings,
            "env": {},
        }
        try:
            template_text = self.template_loader.get_template(config.TEMPLATE_CATEGORY_PHP, config.ISOLATED_FPM_TEMPLATE_NAME)
            return render(template_text, **context)
        except (TemplateNotFoundError, jinja2.TemplateError) as e:
            raise IsolatedConfigError(f"failed to render isolated config for {project.project_name} (PHP {project.php_version}): {e}",
                                      project_name=project.project_name, php_version=project.php_version) from e

    def generate_config(self, project: IsolatedProject) -> Path:
        """Renders the master config; the run and log directories must exist for FPM to start."""
        config_path = Path(project.config_path)
        required_dirs = [
            config_path.parent,
            Path(project.pid_path).parent,
            Path(project.socket_path).parent,
            self.get_isolated_log_path(project.project_name, project.php_version).parent,
        ]
        for directory in required_dirs:
            if not config.ensure_dir(directory):
                raise IsolatedConfigError(f"failed to create directory {directory} for {project.project_name} (PHP {project.php_version})",
                                          project_name=project.project_name, php_version=project.php_version)

        content = self.render_config(project)
        try:
            config_path.write_text(content, encoding='utf-8')
            os.chmod(config_path, 0o644)
        except OSError as e:
            raise IsolatedConfigError(f"failed to write config {config_path} for {project.project_name} (PHP {project.php_version}): {e}",
                                      project_name=project.project_name, php_version=project.php_version) from e
        logger.debug(f"ISOLATED_FPM: Wrote isolated config {config_path}")
        return config_path

    def start(self, project: IsolatedProject):
        """Launches the master for an already-rendered config. Does not touch the registry."""
        # A crashed master leaves its socket behind and the new one would fail to bind
        process_manager.remove_runtime_file(project.socket_path)

        binary = self.binary_resolver(project.php_version)
        if not binary:
            raise FPMBinaryNotFoundError(f"PHP-FPM binary not found for version {project.php_version} (project {project.project_name})",
                                         project_name=project.project_name, php_version=project.php_version)

        logger.info(f"ISOLATED_FPM: Starting isolated master for {project.project_name} (PHP {project.php_version}) with {binary}")
        return_code, stdout, stderr = system_utils.run_command([binary, "-y", project.config_path])
        if return_code != 0:
            output = "\n".join(part for part in (stdout, stderr) if part)
            raise FPMStartError(f"failed to start isolated master for {project.project_name} (PHP {project.php_version}), exit code {return_code}\nOutput: {output}",
                                project_name=project.project_name, php_version=project.php_version)

    def stop(self, project_name: str):
        """
        Stops the project's master. Succeeds quietly when the project is not
        isolated or no PID can be read. PID and socket files are removed afterwards.
        """
        project = self.registry.get(project_name)
        if project is None:
            logger.debug(f"ISOLATED_FPM: {project_name} is not isolated; nothing to stop.")
            return

        pid = process_manager.read_pid_file(project.pid_path)
        if pid is None:
            logger.debug(f"ISOLATED_FPM: No readable PID file for {project_name}; treating as stopped.")
            self._remove_runtime_files(project)
            return

        stopped = True
        if process_manager.check_pid_running(pid):
            stopped = process_manager.terminate_pid(pid, timeout=self.stop_timeout, pid_file_path=project.pid_path)
        else:
            logger.info(f"ISOLATED_FPM: PID {pid} for {project_name} is not running; cleaning up stale files.")

        self._remove_runtime_files(project)
        if not stopped:
            raise FPMStopError(f"failed to stop isolated master for {project_name} (PHP {project.php_version}, PID {pid})",
                               project_name=project_name, php_version=project.php_version)
        logger.info(f"ISOLATED_FPM: Stopped isolated master for {project_name} (PHP {project.php_version})")

    def _remove_runtime_files(self, project: IsolatedProject):
        process_manager.remove_runtime_file(project.pid_path)
        process_manager.remove_runtime_file(project.socket_path)

    def restart(self, project_name: str):
        project = self.registry.get(project_name)
        if project is None:
            raise ProjectNotIsolatedError(project_name)
        self.stop(project_name)
        self.start(project)

    # --- Queries ---
    def get_pid(self, project_name: str) -> Optional[int]:
        project = self.registry.get(project_name)
        if project is None:
            return None
        return process_manager.read_pid_file(project.pid_path)

    def get_state(self, project_name: str) -> FPMState:
        project = self.registry.get(project_name)
        pid = process_manager.read_pid_file(project.pid_path) if project is not None else None
        alive = process_manager.check_pid_running(pid) if pid is not None else False
        return derive_state(project, pid, alive)

    def is_running(self, project_name: str) -> bool:
        return self.get_state(project_name) is FPMState.RUNNING

    def is_isolated(self, project_name: str) -> bool:
        return self.registry.get(project_name) is not None

    def socket_resolver_for(self, project_name: str) -> SocketResolver:
        project = self.registry.get(project_name)
        if project is not None:
            return IsolatedSocketResolver(project)
        return self.shared_resolver

    def get_socket_path(self, project_name: str, php_version: str) -> Path:
        """The socket a web server should use for the project, whichever mode it runs in."""
        return self.socket_resolver_for(project_name).get_socket_path(project_name, php_version)

    def get_status(self, project_name: str) -> Optional[dict]:
        project = self.registry.get(project_name)
        if project is None:
            return None

        pid = process_manager.read_pid_file(project.pid_path)
        alive = process_manager.check_pid_running(pid) if pid is not None else False
        state = derive_state(project, pid, alive)
        return {
            "project_name": project.project_name,
            "project_path": project.project_path,
            "php_version": project.php_version,
            "socket_path": project.socket_path,
            "pid_path": project.pid_path,
            "config_path": project.config_path,
            "settings": dict(project.settings),
            "created_at": project.created_at,
            "running": state is FPMState.RUNNING,
            "pid": pid if state is FPMState.RUNNING else None,
            "state": state.value,
        }

    # --- Batch operations ---
    def start_all_isolated(self) -> List[str]:
        """Starts every registered master that is not running. Returns the names started."""
        started, failures = [], {}
        for project in self.registry.list():
            if self.is_running(project.project_name):
                logger.debug(f"ISOLATED_FPM: {project.project_name} already running; skipping.")
                continue
            try:
                self.start(project)
                started.append(project.project_name)
            except MageboxError as e:
                logger.error(f"ISOLATED_FPM: Failed to start {project.project_name} (PHP {project.php_version}): {e}")
                failures[project.project_name] = e
        if failures:
            raise BatchOperationError("start", failures)
        return started

    def stop_all_isolated(self) -> List[str]:
        """Stops every registered master. Returns the names processed."""
        stopped, failures = [], {}
        for project in self.registry.list():
            try:
                self.stop(project.project_name)
                stopped.append(project.project_name)
            except MageboxError as e:
                logger.error(f"ISOLATED_FPM: Failed to stop {project.project_name} (PHP {project.php_version}): {e}")
                failures[project.project_name] = e
        if failures:
            raise BatchOperationError("stop", failures)
        return stopped
