import sys
import argparse
import logging
import logging.handlers
from pathlib import Path
from typing import Dict, List, Optional

from magebox.core import config
from magebox.core import system_utils
from magebox.core.exceptions import MageboxError, BatchOperationError
from magebox.managers.php_isolation import IsolatedFPMController
from magebox.managers.php_pool import FPMController, PoolGenerator
from magebox.managers.php_system_ini import (
    SystemINIManager,
    format_owner_warning,
    get_system_settings_list,
    separate_settings,
)

logger = logging.getLogger(__name__)


# --- Custom Log Formatter for Colors ---
class ColorLogFormatter(logging.Formatter):
    """Adds ANSI color codes to log messages based on level for console output."""

    GREY = "\x1b[38;20m"
    YELLOW = "\x1b[33;20m" # Warning
    RED = "\x1b[31;20m"    # Error
    BOLD_RED = "\x1b[31;1m" # Critical
    RESET = "\x1b[0m"

    BASE_FORMAT = '%(asctime)s [%(levelname)-7s] %(name)s: %(message)s'
    DATE_FORMAT = '%H:%M:%S'

    FORMATS = {
        logging.DEBUG: GREY + BASE_FORMAT + RESET,
        logging.INFO: BASE_FORMAT,
        logging.WARNING: YELLOW + BASE_FORMAT + RESET,
        logging.ERROR: RED + BASE_FORMAT + RESET,
        logging.CRITICAL: BOLD_RED + BASE_FORMAT + RESET
    }

    def format(self, record):
        log_fmt = self.FORMATS.get(record.levelno, self.BASE_FORMAT)
        formatter = logging.Formatter(log_fmt, datefmt=self.DATE_FORMAT)
        return formatter.format(record)
# --- End Custom Log Formatter ---

_installed_handlers: List[logging.Handler] = []

def setup_logging(data_dir: Optional[Path] = None, verbose: bool = False):
    """Console (stderr, colored) plus a rotating file log under the data root."""
    root_logger = logging.getLogger()
    for handler in _installed_handlers:
        root_logger.removeHandler(handler)
        handler.close()
    _installed_handlers.clear()
    root_logger.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(ColorLogFormatter())
    root_logger.addHandler(console_handler)
    _installed_handlers.append(console_handler)

    log_dir = config.logs_dir(data_dir)
    if not config.ensure_dir(log_dir):
        logger.warning(f"CLI: Log directory '{log_dir}' could not be ensured. Skipping file logging.")
        return

    log_file_path = log_dir / config.APP_LOG_FILE_NAME
    try:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file_path, maxBytes=5 * 1024 * 1024, backupCount=3, encoding='utf-8'
        )
    except OSError as log_e:
        logger.error(f"CLI: Failed to set up file logging at {log_file_path}: {log_e}", exc_info=True)
        return
    file_handler.setFormatter(logging.Formatter(ColorLogFormatter.BASE_FORMAT, datefmt=ColorLogFormatter.DATE_FORMAT))
    file_handler.setLevel(logging.DEBUG)
    root_logger.addHandler(file_handler)
    _installed_handlers.append(file_handler)
    logger.debug(f"CLI: File logging initialized at: {log_file_path}")


# --- Argument helpers ---
def parse_key_values(pairs: Optional[List[str]]) -> Dict[str, str]:
    """['a=1', 'b=2'] -> {'a': '1', 'b': '2'}"""
    result = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"expected key=value, got '{pair}'")
        result[key] = value.strip()
    return result

def build_isolation_settings(opcache_memory: Optional[str] = None, jit: Optional[str] = None,
                             preload: Optional[str] = None,
                             extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Settings for `php isolate enable` from its convenience flags."""
    settings = {}
    if opcache_memory:
        settings["opcache.memory_consumption"] = opcache_memory
    if jit:
        settings["opcache.jit"] = jit
        if jit not in ("off", "0"):
            settings["opcache.jit_buffer_size"] = "128M"
    if preload:
        settings["opcache.preload"] = preload
        settings["opcache.preload_user"] = system_utils.get_current_user()
    settings.update(extra or {})

    # Development default: no opcache unless something was asked for
    if not settings:
        settings["opcache.enable"] = "0"
    return settings


# --- Factories (patched in tests) ---
def get_isolation_controller(args) -> IsolatedFPMController:
    return IsolatedFPMController(data_dir=args.data_dir)

def get_system_ini_manager(args) -> SystemINIManager:
    return SystemINIManager(data_dir=args.data_dir)

def get_pool_generator(args) -> PoolGenerator:
    return PoolGenerator(data_dir=args.data_dir)

def get_fpm_controller(args) -> FPMController:
    return FPMController(args.version)


# --- php isolate ---
def cmd_isolate_enable(args) -> int:
    settings = build_isolation_settings(args.opcache_memory, args.jit, args.preload, parse_key_values(args.set))
    controller = get_isolation_controller(args)
    project = controller.enable(args.name, str(Path(args.path).resolve()), args.php, settings)

    print(f"Isolated PHP-FPM master enabled for {project.project_name} (PHP {project.php_version})")
    print(f"  Socket: {project.socket_path}")
    print(f"  Config: {project.config_path}")
    print("  Settings:")
    for key in sorted(project.settings):
        print(f"    {key} = {project.settings[key]}")
    print("\nRegenerate the vhost so nginx uses the new socket.")
    return 0

def cmd_isolate_disable(args) -> int:
    get_isolation_controller(args).disable(args.name)
    print(f"Isolation disabled for {args.name}; the project uses the shared PHP-FPM pool again.")
    return 0

def cmd_isolate_restart(args) -> int:
    get_isolation_controller(args).restart(args.name)
    print(f"Isolated PHP-FPM master for {args.name} restarted.")
    return 0

def cmd_isolate_status(args) -> int:
    status = get_isolation_controller(args).get_status(args.name)
    if status is None:
        print(f"{args.name} is not isolated (uses the shared PHP-FPM pool).")
        return 0

    print(f"Project:     {status['project_name']}")
    print(f"PHP version: {status['php_version']}")
    print(f"State:       {status['state']}" + (f" (PID {status['pid']})" if status['running'] else ""))
    print(f"Socket:      {status['socket_path']}")
    print(f"Config:      {status['config_path']}")
    print(f"Created:     {status['created_at'].strftime('%Y-%m-%d %H:%M:%S')}")
    if status['settings']:
        print("Settings:")
        for key in sorted(status['settings']):
            print(f"  {key} = {status['settings'][key]}")
    return 0

def cmd_isolate_list(args) -> int:
    controller = get_isolation_controller(args)
    projects = controller.get_registry().list()
    if not projects:
        print("No isolated projects.")
        return 0
    print(f"{'PROJECT':<24} {'PHP':<6} {'STATE':<10} SOCKET")
    for project in projects:
        state = controller.get_state(project.project_name)
        print(f"{project.project_name:<24} {project.php_version:<6} {state.value:<10} {project.socket_path}")
    return 0

def _report_batch(operation: str, names: List[str]):
    if names:
        print(f"{operation}: {', '.join(names)}")
    else:
        print(f"{operation}: nothing to do")

def cmd_isolate_start_all(args) -> int:
    _report_batch("Started", get_isolation_controller(args).start_all_isolated())
    return 0

def cmd_isolate_stop_all(args) -> int:
    _report_batch("Stopped", get_isolation_controller(args).stop_all_isolated())
    return 0


# --- php system ---
def cmd_system_show(args) -> int:
    print(get_system_ini_manager(args).format_system_settings_info(args.version), end="")
    return 0

def cmd_system_write(args) -> int:
    system_settings, pool_settings = separate_settings(parse_key_values(args.set))
    if pool_settings:
        print(f"Ignoring per-pool settings (not PHP_INI_SYSTEM): {', '.join(sorted(pool_settings))}", file=sys.stderr)
    if not system_settings:
        print("No PHP_INI_SYSTEM settings given; nothing written.")
        return 0

    manager = get_system_ini_manager(args)
    previous = manager.write_system_ini(args.version, args.name, str(Path(args.path).resolve()), system_settings)
    if previous is not None:
        print(format_owner_warning(previous, args.name, system_settings), end="")
    print(manager.format_activation_instructions(args.version, system_settings), end="")
    return 0

def cmd_system_clear(args) -> int:
    manager = get_system_ini_manager(args)
    owner = manager.get_current_owner(args.version)
    manager.clear_system_ini(args.version, args.name)
    if owner is not None and owner.project_name == args.name:
        print(f"Cleared PHP {args.version} system settings.")
        print(f"Remove the activation symlink with:\n  {manager.get_disable_command(args.version)}")
    else:
        print(f"{args.name} does not own the PHP {args.version} system settings; nothing cleared.")
    return 0

def cmd_system_enable_cmd(args) -> int:
    print(get_system_ini_manager(args).get_enable_command(args.version))
    return 0

def cmd_system_list(args) -> int:
    settings = get_system_settings_list()
    print("PHP_INI_SYSTEM settings (php.ini only, ignored per pool):\n")
    for setting in settings:
        print(f"  {setting}")
    print(f"\nTotal: {len(settings)} settings")
    return 0

def _print_restart_advice(version: str):
    print(f"\nRestart PHP-FPM to apply changes:\n  {config.CLI_NAME} php fpm reload {version}")

def cmd_system_enable(args) -> int:
    manager = get_system_ini_manager(args)
    if manager.get_current_owner(args.version) is None:
        print(f"No system settings to enable for PHP {args.version}.")
        return 0
    if manager.is_symlink_active(args.version):
        print(f"System settings already active for PHP {args.version}.")
        return 0

    symlink_path = manager.get_symlink_path(args.version)
    if symlink_path is None:
        print(f"Error: {manager.get_enable_command(args.version)}", file=sys.stderr)
        return 1
    ini_path = manager.get_system_ini_path(args.version)
    print(f"Creating symlink: {symlink_path} -> {ini_path}")
    return_code, _, stderr = system_utils.run_command(["sudo", "ln", "-sf", str(ini_path), str(symlink_path)])
    if return_code != 0:
        logger.error(f"CLI: Symlink for PHP {args.version} system settings failed (code {return_code}): {stderr}")
        print(f"Error: failed to create symlink: {stderr}", file=sys.stderr)
        print(f"\nTry running manually:\n  {manager.get_enable_command(args.version)}")
        return 1

    print(f"System settings enabled for PHP {args.version}.")
    _print_restart_advice(args.version)
    return 0

def cmd_system_disable(args) -> int:
    manager = get_system_ini_manager(args)
    if not manager.is_symlink_active(args.version):
        print(f"System settings already disabled for PHP {args.version}.")
        return 0

    symlink_path = manager.get_symlink_path(args.version)
    print(f"Removing symlink: {symlink_path}")
    return_code, _, stderr = system_utils.run_command(["sudo", "rm", "-f", str(symlink_path)])
    if return_code != 0:
        logger.error(f"CLI: Removing symlink for PHP {args.version} failed (code {return_code}): {stderr}")
        print(f"Error: failed to remove symlink: {stderr}", file=sys.stderr)
        print(f"\nTry running manually:\n  {manager.get_disable_command(args.version)}")
        return 1

    print(f"System settings disabled for PHP {args.version}.")
    _print_restart_advice(args.version)
    return 0


# --- php fpm ---
def cmd_fpm_action(args) -> int:
    controller = get_fpm_controller(args)
    getattr(controller, args.action)()
    print(f"PHP-FPM {controller.version}: {args.action} done.")
    return 0

def cmd_fpm_status(args) -> int:
    controller = get_fpm_controller(args)
    state = "running" if controller.is_running() else "stopped"
    print(f"PHP-FPM {controller.version}: {state}")
    return 0


# --- php pool ---
def cmd_pool_generate(args) -> int:
    pool_path = get_pool_generator(args).generate(
        args.name, str(Path(args.path).resolve()), args.php,
        env=parse_key_values(args.env), php_ini=parse_key_values(args.set), has_mailpit=args.mailpit,
    )
    print(f"Pool written to {pool_path}")
    return 0

def cmd_pool_remove(args) -> int:
    removed = get_pool_generator(args).remove(args.name)
    print(f"Removed {len(removed)} pool file(s) for {args.name}.")
    return 0

def cmd_pool_list(args) -> int:
    for pool_path in get_pool_generator(args).list_pools():
        print(pool_path)
    return 0

def cmd_pool_include(args) -> int:
    # Line for the [global] section of the shared php-fpm.conf
    print(f"include = {get_pool_generator(args).get_include_directive(args.version)}")
    return 0


def cmd_socket(args) -> int:
    print(get_isolation_controller(args).get_socket_path(args.name, args.php))
    return 0


# --- Parser ---
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=config.CLI_NAME, description=f"{config.APP_NAME} PHP-FPM management.")
    parser.add_argument('-v', '--verbose', action='store_true', help='Log debug output to stderr.')
    parser.add_argument('--data-dir', type=Path, default=None, help=f'Data root (default: {config.MAGEBOX_DIR}).')
    commands = parser.add_subparsers(dest='command', required=True)

    php = commands.add_parser('php', help='PHP-FPM pools, isolated masters and system settings.')
    php_commands = php.add_subparsers(dest='php_command', required=True)

    # php isolate
    isolate = php_commands.add_parser('isolate', help='Dedicated PHP-FPM master per project.')
    isolate_commands = isolate.add_subparsers(dest='isolate_command', required=True)

    enable = isolate_commands.add_parser('enable', help='Start an isolated master for a project.')
    enable.add_argument('name')
    enable.add_argument('--path', required=True, help='Project root.')
    enable.add_argument('--php', required=True, metavar='VERSION')
    enable.add_argument('--opcache-memory', metavar='MB', help='opcache.memory_consumption')
    enable.add_argument('--jit', metavar='MODE', help='opcache.jit (off, tracing, function)')
    enable.add_argument('--preload', metavar='FILE', help='opcache.preload script')
    enable.add_argument('--set', action='append', metavar='KEY=VALUE', help='Extra INI setting (repeatable).')
    enable.set_defaults(func=cmd_isolate_enable)

    for name, func, help_text in (
        ('disable', cmd_isolate_disable, 'Stop the isolated master and return to the shared pool.'),
        ('restart', cmd_isolate_restart, 'Restart the isolated master.'),
        ('status', cmd_isolate_status, 'Show isolation status.'),
    ):
        sub = isolate_commands.add_parser(name, help=help_text)
        sub.add_argument('name')
        sub.set_defaults(func=func)

    isolate_commands.add_parser('list', help='List isolated projects.').set_defaults(func=cmd_isolate_list)
    isolate_commands.add_parser('start-all', help='Start every isolated master.').set_defaults(func=cmd_isolate_start_all)
    isolate_commands.add_parser('stop-all', help='Stop every isolated master.').set_defaults(func=cmd_isolate_stop_all)

    # php system
    system = php_commands.add_parser('system', help='Shared PHP_INI_SYSTEM settings per PHP version.')
    system_commands = system.add_subparsers(dest='system_command', required=True)

    show = system_commands.add_parser('show', help='Show system settings and owner.')
    show.add_argument('version')
    show.set_defaults(func=cmd_system_show)

    write = system_commands.add_parser('write', help='Write system settings for a project.')
    write.add_argument('version')
    write.add_argument('name')
    write.add_argument('--path', required=True, help='Project root.')
    write.add_argument('--set', action='append', metavar='KEY=VALUE', required=True)
    write.set_defaults(func=cmd_system_write)

    clear = system_commands.add_parser('clear', help="Remove system settings if the project owns them.")
    clear.add_argument('version')
    clear.add_argument('name')
    clear.set_defaults(func=cmd_system_clear)

    enable_cmd = system_commands.add_parser('enable-cmd', help='Print the symlink command that activates the system INI.')
    enable_cmd.add_argument('version')
    enable_cmd.set_defaults(func=cmd_system_enable_cmd)

    for name, func, help_text in (
        ('enable', cmd_system_enable, 'Symlink the system INI into the PHP scan directory (sudo).'),
        ('disable', cmd_system_disable, 'Remove the system INI symlink (sudo).'),
    ):
        sub = system_commands.add_parser(name, help=help_text)
        sub.add_argument('version')
        sub.set_defaults(func=func)

    system_commands.add_parser('list', help='List all PHP_INI_SYSTEM setting names.').set_defaults(func=cmd_system_list)

    # php pool
    pool = php_commands.add_parser('pool', help='Pools of the shared PHP-FPM masters.')
    pool_commands = pool.add_subparsers(dest='pool_command', required=True)

    generate = pool_commands.add_parser('generate', help='Write the pool config for a project.')
    generate.add_argument('name')
    generate.add_argument('--path', required=True, help='Project root.')
    generate.add_argument('--php', required=True, metavar='VERSION')
    generate.add_argument('--env', action='append', metavar='KEY=VALUE')
    generate.add_argument('--set', action='append', metavar='KEY=VALUE')
    generate.add_argument('--mailpit', action='store_true', help='Route mail() to Mailpit.')
    generate.set_defaults(func=cmd_pool_generate)

    remove = pool_commands.add_parser('remove', help='Remove the pool config for a project.')
    remove.add_argument('name')
    remove.set_defaults(func=cmd_pool_remove)

    pool_commands.add_parser('list', help='List pool configs.').set_defaults(func=cmd_pool_list)

    include = pool_commands.add_parser('include', help='Print the include line for a shared master.')
    include.add_argument('version')
    include.set_defaults(func=cmd_pool_include)

    # php fpm
    fpm = php_commands.add_parser('fpm', help='Shared PHP-FPM service per PHP version.')
    fpm_commands = fpm.add_subparsers(dest='fpm_command', required=True)
    for action in ('start', 'stop', 'reload'):
        sub = fpm_commands.add_parser(action, help=f'{action.capitalize()} the shared PHP-FPM service.')
        sub.add_argument('version')
        sub.set_defaults(func=cmd_fpm_action, action=action)
    fpm_status = fpm_commands.add_parser('status', help='Show whether the shared PHP-FPM service runs.')
    fpm_status.add_argument('version')
    fpm_status.set_defaults(func=cmd_fpm_status)

    # php socket
    socket = php_commands.add_parser('socket', help='Print the FastCGI socket for a project.')
    socket.add_argument('name')
    socket.add_argument('--php', required=True, metavar='VERSION')
    socket.set_defaults(func=cmd_socket)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    base_dirs_ok = config.ensure_base_dirs(args.data_dir)
    setup_logging(args.data_dir, args.verbose)
    if not base_dirs_ok:
        logger.warning(f"CLI: Some directories under {config.data_dir(args.data_dir)} could not be created.")

    try:
        return args.func(args)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
    except BatchOperationError as e:
        logger.error(f"CLI: {e}")
        print(f"Error: {e.operation} failed for:", file=sys.stderr)
        for name, err in sorted(e.failures.items()):
            print(f"  {name}: {err}", file=sys.stderr)
        return 1
    except MageboxError as e:
        logger.error(f"CLI: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
