# tests/managers/test_php_isolation.py
import errno
import json
import signal
import pytest
from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock

from magebox.core.exceptions import (
    BatchOperationError,
    FPMBinaryNotFoundError,
    FPMStartError,
    FPMStopError,
    IsolatedConfigError,
    ProjectNotIsolatedError,
    RegistryError,
)
from magebox.managers.php_isolation import (
    FPMState,
    IsolatedFPMController,
    IsolatedProject,
    IsolatedRegistry,
    JSONRegistryStore,
    RegistryStore,
    derive_state,
)

# ===================================================================
#  Fake OS process table
# ===================================================================

class FakeProcessTable:
    """Stands in for php-fpm + the kernel: run_command "spawns" a master, os.kill signals it."""

    def __init__(self):
        self.next_pid = 4000
        self.alive = set()
        self.commands = []
        self.signals = []
        self.ignores_sigterm = set()
        self.unkillable = set()
        self.fail_configs = set()

    def run_command(self, command):
        self.commands.append(command)
        config_path = Path(command[-1])
        if config_path.name in self.fail_configs:
            return 78, "", "ERROR: failed to open configuration file"
        pid_path = None
        for line in config_path.read_text().splitlines():
            if line.startswith("pid = "):
                pid_path = Path(line[len("pid = "):])
                break
        pid = self.next_pid
        self.next_pid += 1
        self.alive.add(pid)
        pid_path.write_text(f"{pid}\n")
        return 0, "", ""

    def kill(self, pid, sig):
        self.signals.append((pid, sig))
        if pid not in self.alive:
            raise ProcessLookupError(errno.ESRCH, "No such process")
        if sig == 0:
            return
        if pid in self.unkillable:
            return
        if sig == signal.SIGTERM and pid in self.ignores_sigterm:
            return
        self.alive.discard(pid)


@pytest.fixture
def processes(monkeypatch) -> FakeProcessTable:
    table = FakeProcessTable()
    monkeypatch.setattr("magebox.core.system_utils.run_command", table.run_command)
    monkeypatch.setattr("magebox.core.process_manager.os.kill", table.kill)
    monkeypatch.setattr("magebox.core.process_manager.time.sleep", lambda seconds: None)
    return table


@pytest.fixture
def controller(data_dir, template_loader, processes) -> IsolatedFPMController:
    return IsolatedFPMController(
        data_dir=data_dir,
        binary_resolver=lambda version: f"/usr/sbin/php-fpm{version}",
        template_loader=template_loader,
        stop_timeout=0,
    )


def _pid_of(controller, name):
    return int(Path(controller.registry.get(name).pid_path).read_text())


# ===================================================================
#  Registry
# ===================================================================
class TestRegistry:
    def _project(self, name="shop", version="8.3"):
        return IsolatedProject(
            project_name=name, project_path=f"/srv/{name}", php_version=version,
            socket_path=f"/run/{name}.sock", pid_path=f"/run/{name}.pid", config_path=f"/conf/{name}.conf",
            settings={"opcache.jit": "tracing"}, created_at=datetime(2024, 5, 1, 12, 30).astimezone(),
        )

    def test_missing_file_is_empty(self, data_dir):
        registry = IsolatedRegistry(JSONRegistryStore(data_dir / "isolated-projects.json"))
        assert registry.load() == {}
        assert registry.list() == []
        assert registry.get("shop") is None

    def test_round_trip(self, data_dir):
        path = data_dir / "isolated-projects.json"
        project = self._project()
        IsolatedRegistry(JSONRegistryStore(path)).add(project)

        reloaded = IsolatedRegistry(JSONRegistryStore(path)).get("shop")
        assert reloaded == project
        assert reloaded.created_at == project.created_at

    def test_file_is_pretty_printed_json(self, data_dir):
        path = data_dir / "isolated-projects.json"
        IsolatedRegistry(JSONRegistryStore(path)).add(self._project())

        text = path.read_text()
        assert text.startswith("{\n  ")
        assert json.loads(text)["shop"]["php_version"] == "8.3"
        assert not list(data_dir.glob("*.tmp.*"))

    def test_list_sorted_and_remove(self, data_dir):
        registry = IsolatedRegistry(JSONRegistryStore(data_dir / "isolated-projects.json"))
        for name in ("zeta", "alpha", "mid"):
            registry.add(self._project(name))
        assert [p.project_name for p in registry.list()] == ["alpha", "mid", "zeta"]

        registry.remove("mid")
        registry.remove("not-there")
        assert [p.project_name for p in registry.list()] == ["alpha", "zeta"]

    @pytest.mark.parametrize("content", ["{not json", "[1, 2]", '{"shop": {"php_version": "8.3"}}'])
    def test_malformed_registry_raises(self, data_dir, content):
        path = data_dir / "isolated-projects.json"
        path.write_text(content)
        with pytest.raises(RegistryError):
            JSONRegistryStore(path).load()

    def test_custom_store_is_used(self):
        store = MagicMock(spec=RegistryStore)
        store.load.return_value = {}
        registry = IsolatedRegistry(store)

        registry.add(self._project())

        saved = store.save.call_args[0][0]
        assert list(saved) == ["shop"]


# ===================================================================
#  Derived state
# ===================================================================
class TestDeriveState:
    def test_all_combinations(self):
        project = MagicMock(spec=IsolatedProject)
        assert derive_state(None, None, False) is FPMState.NOT_ISOLATED
        assert derive_state(project, None, False) is FPMState.STOPPED
        assert derive_state(project, 1234, False) is FPMState.STALE
        assert derive_state(project, 1234, True) is FPMState.RUNNING


# ===================================================================
#  Controller
# ===================================================================
class TestEnableDisable:
    def test_shop_end_to_end(self, controller, data_dir, processes):
        controller.enable("shop", "/srv/shop", "8.3", {"opcache.jit": "tracing"})

        assert controller.is_isolated("shop")
        assert controller.is_running("shop")
        config_path = data_dir / "php" / "isolated" / "shop-php8.3.conf"
        content = config_path.read_text()
        assert "[global]" in content
        assert f"pid = {data_dir}/run/shop-isolated-php8.3.pid" in content
        assert "[shop]" in content
        assert f"listen = {data_dir}/run/shop-isolated-php8.3.sock" in content

        system_block = content.split("; --- PHP_INI_SYSTEM settings")[1].split("; --- end PHP_INI_SYSTEM settings")[0]
        pool_block = content.split("; --- Pool settings ---")[1].split("; --- end pool settings ---")[0]
        assert "php_admin_value[opcache.jit] = tracing" in system_block
        assert "opcache.jit" not in pool_block

        assert processes.commands == [["/usr/sbin/php-fpm8.3", "-y", str(config_path)]]

        controller.disable("shop")

        assert not controller.is_isolated("shop")
        assert not config_path.exists()
        assert not (data_dir / "run" / "shop-isolated-php8.3.pid").exists()
        assert not (data_dir / "run" / "shop-isolated-php8.3.sock").exists()
        assert not processes.alive

    def test_pool_settings_rendered_as_values_and_flags(self, controller, data_dir):
        controller.enable("shop", "/srv/shop", "8.3", {"memory_limit": "2G", "display_errors": "Off"})
        content = (data_dir / "php" / "isolated" / "shop-php8.3.conf").read_text()
        assert "php_value[memory_limit] = 2G" in content
        assert "php_flag[display_errors] = Off" in content

    def test_enable_twice_updates_in_place(self, controller, data_dir, processes):
        first = controller.enable("shop", "/srv/shop", "8.2", {"opcache.enable": "0"})
        first_pid = _pid_of(controller, "shop")

        second = controller.enable("shop", "/srv/shop", "8.3", {"opcache.enable": "1"})

        projects = controller.registry.list()
        assert [p.php_version for p in projects] == ["8.3"]
        assert first_pid not in processes.alive
        assert controller.is_running("shop")
        assert second.created_at == first.created_at
        assert not Path(first.config_path).exists()
        assert Path(second.config_path).exists()

    def test_stale_socket_removed_before_start(self, controller, data_dir):
        run_dir = data_dir / "run"
        run_dir.mkdir()
        stale_socket = run_dir / "shop-isolated-php8.3.sock"
        stale_socket.write_text("")

        controller.enable("shop", "/srv/shop", "8.3", {})

        assert not stale_socket.exists()

    def test_missing_binary_leaves_registry_untouched(self, data_dir, template_loader, processes):
        controller = IsolatedFPMController(data_dir=data_dir, binary_resolver=lambda v: None,
                                           template_loader=template_loader)
        with pytest.raises(FPMBinaryNotFoundError) as exc_info:
            controller.enable("shop", "/srv/shop", "7.4", {})

        assert exc_info.value.project_name == "shop"
        assert exc_info.value.php_version == "7.4"
        assert not controller.is_isolated("shop")
        assert processes.commands == []

    def test_start_failure_leaves_registry_untouched(self, controller, processes):
        processes.fail_configs.add("shop-php8.3.conf")
        with pytest.raises(FPMStartError, match="shop"):
            controller.enable("shop", "/srv/shop", "8.3", {})
        assert not controller.is_isolated("shop")

    def test_unwritable_config_dir_raises(self, controller, data_dir, processes):
        (data_dir / "php").write_text("not a directory")
        with pytest.raises(IsolatedConfigError):
            controller.enable("shop", "/srv/shop", "8.3", {})
        assert processes.commands == []

    def test_disable_unknown_project(self, controller):
        with pytest.raises(ProjectNotIsolatedError):
            controller.disable("ghost")

    def test_relative_data_dir_renders_absolute_paths(self, tmp_path, monkeypatch, template_loader, processes):
        monkeypatch.chdir(tmp_path)
        controller = IsolatedFPMController(
            data_dir=Path("rel-data"),
            binary_resolver=lambda version: f"/usr/sbin/php-fpm{version}",
            template_loader=template_loader,
            stop_timeout=0,
        )

        project = controller.enable("shop", "/srv/shop", "8.3", {})

        content = Path(project.config_path).read_text()
        values = dict(line.split(" = ", 1) for line in content.splitlines()
                      if line.startswith(("pid = ", "listen = ")))
        run_dir = tmp_path / "rel-data" / "run"
        assert values["pid"] == str(run_dir / "shop-isolated-php8.3.pid")
        assert values["listen"] == str(run_dir / "shop-isolated-php8.3.sock")
        assert Path(project.pid_path).is_absolute()
        assert Path(project.socket_path).is_absolute()


class TestStop:
    def test_stop_is_idempotent(self, controller, data_dir, processes):
        controller.enable("shop", "/srv/shop", "8.3", {})
        pid = _pid_of(controller, "shop")

        controller.stop("shop")
        controller.stop("shop")

        assert pid not in processes.alive
        assert not (data_dir / "run" / "shop-isolated-php8.3.pid").exists()
        assert not (data_dir / "run" / "shop-isolated-php8.3.sock").exists()
        assert controller.get_state("shop") is FPMState.STOPPED
        assert controller.is_isolated("shop")

    def test_stop_unknown_project_is_noop(self, controller, processes):
        controller.stop("ghost")
        assert processes.signals == []

    def test_escalates_to_sigkill(self, controller, processes):
        controller.enable("shop", "/srv/shop", "8.3", {})
        pid = _pid_of(controller, "shop")
        processes.ignores_sigterm.add(pid)

        controller.stop("shop")

        assert (pid, signal.SIGKILL) in processes.signals
        assert pid not in processes.alive

    def test_unkillable_master_raises_after_cleanup(self, controller, data_dir, processes):
        controller.enable("shop", "/srv/shop", "8.3", {})
        pid = _pid_of(controller, "shop")
        processes.unkillable.add(pid)

        with pytest.raises(FPMStopError, match="shop"):
            controller.stop("shop")
        assert not (data_dir / "run" / "shop-isolated-php8.3.pid").exists()

    def test_stale_pid_is_cleaned_without_signals(self, controller, data_dir, processes):
        controller.enable("shop", "/srv/shop", "8.3", {})
        pid = _pid_of(controller, "shop")
        processes.alive.discard(pid)
        assert controller.get_state("shop") is FPMState.STALE

        processes.signals.clear()
        controller.stop("shop")

        assert all(sig == 0 for _, sig in processes.signals)
        assert controller.get_state("shop") is FPMState.STOPPED


class TestQueries:
    def test_socket_path_fallback(self, controller, data_dir):
        assert controller.get_socket_path("blog", "8.2") == data_dir / "run" / "blog-php8.2.sock"

        project = controller.enable("blog", "/srv/blog", "8.2", {})
        assert controller.get_socket_path("blog", "8.2") == Path(project.socket_path)

    def test_status(self, controller):
        assert controller.get_status("shop") is None

        controller.enable("shop", "/srv/shop", "8.3", {"opcache.jit": "tracing"})
        status = controller.get_status("shop")

        assert status["running"] is True
        assert status["state"] == "running"
        assert status["pid"] == controller.get_pid("shop")
        assert status["settings"] == {"opcache.jit": "tracing"}

    def test_get_pid_not_isolated(self, controller):
        assert controller.get_pid("ghost") is None
        assert controller.get_state("ghost") is FPMState.NOT_ISOLATED
        assert not controller.is_running("ghost")

    def test_restart_keeps_record(self, controller, processes):
        controller.enable("shop", "/srv/shop", "8.3", {})
        before = controller.registry.get("shop")
        old_pid = _pid_of(controller, "shop")

        controller.restart("shop")

        assert controller.registry.get("shop") == before
        assert old_pid not in processes.alive
        assert _pid_of(controller, "shop") != old_pid
        assert controller.is_running("shop")

    def test_restart_unknown(self, controller):
        with pytest.raises(ProjectNotIsolatedError):
            controller.restart("ghost")


class TestBatch:
    def test_start_all_skips_running(self, controller, processes):
        controller.enable("a", "/srv/a", "8.2", {})
        controller.enable("b", "/srv/b", "8.3", {})
        controller.stop("b")
        processes.commands.clear()

        started = controller.start_all_isolated()

        assert started == ["b"]
        assert len(processes.commands) == 1
        assert controller.is_running("a") and controller.is_running("b")

    def test_start_all_collects_failures(self, controller, processes):
        controller.enable("a", "/srv/a", "8.2", {})
        controller.enable("b", "/srv/b", "8.3", {})
        controller.stop_all_isolated()
        processes.fail_configs.add("a-php8.2.conf")

        with pytest.raises(BatchOperationError) as exc_info:
            controller.start_all_isolated()

        assert set(exc_info.value.failures) == {"a"}
        assert exc_info.value.operation == "start"
        assert controller.is_running("b")

    def test_stop_all_continues_after_failure(self, controller, processes):
        controller.enable("a", "/srv/a", "8.2", {})
        controller.enable("b", "/srv/b", "8.3", {})
        processes.unkillable.add(_pid_of(controller, "a"))

        with pytest.raises(BatchOperationError) as exc_info:
            controller.stop_all_isolated()

        assert list(exc_info.value.failures) == ["a"]
        assert not controller.is_running("b")
