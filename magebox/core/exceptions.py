# magebox/core/exceptions.py

# --- Base ---
class MageboxError(Exception):
    """Base class for every error magebox reports to its callers."""
    pass

# --- Templates ---
class TemplateNotFoundError(MageboxError):
    """No local, library or embedded copy of a template exists."""
    pass

# --- Persistence ---
class RegistryError(MageboxError):
    """The isolated-projects registry could not be read or written."""
    pass

class SystemINIError(MageboxError):
    """A system INI file or its owner record could not be read or written."""
    pass

# --- Isolated PHP-FPM masters ---
class IsolationError(MageboxError):
    """Base class for isolated PHP-FPM master failures."""

    def __init__(self, message, project_name=None, php_version=None):
        super().__init__(message)
        self.project_name = project_name
        self.php_version = php_version

class ProjectNotIsolatedError(IsolationError):
    """The project has no isolated master registered."""

    def __init__(self, project_name):
        super().__init__(f"project {project_name} is not isolated", project_name=project_name)

class FPMBinaryNotFoundError(IsolationError):
    """No PHP-FPM binary could be located for the requested version."""
    pass

class IsolatedConfigError(IsolationError):
    """Rendering or writing the isolated master config failed."""
    pass

class FPMStartError(IsolationError):
    """The PHP-FPM master process could not be started."""
    pass

class FPMStopError(IsolationError):
    """Neither SIGTERM nor SIGKILL managed to stop the master."""
    pass

class BatchOperationError(IsolationError):
    """One or more projects failed during a start-all/stop-all run."""

    def __init__(self, operation, failures):
        self.operation = operation
        self.failures = dict(failures)
        details = "; ".join(f"{name}: {err}" for name, err in sorted(self.failures.items()))
        super().__init__(f"failed to {operation} {len(self.failures)} isolated project(s): {details}")

# --- Shared pools ---
class PoolError(MageboxError):
    """A shared-master pool config could not be generated or removed."""
    pass
