"""Task runner exception hierarchy."""


class GulpTaskError(Exception):
    """Base error type for all task runner failures."""


class SettingsMissingError(GulpTaskError):
    """Settings file is absent and the rebuild task is not running."""

    def __init__(self, path):
        super().__init__(f"{path} is missing (settings file).")
        self.path = path


class SettingsInvalidError(GulpTaskError):
    """Settings file exists but does not validate."""


class RegistryError(GulpTaskError):
    """Internal registry file is corrupt or cannot be written."""


class NoFreePortError(GulpTaskError):
    """No bindable port exists in the configured range."""


class ResourceUnavailableError(GulpTaskError):
    """A file or directory the task needs does not exist."""


class CollaboratorError(GulpTaskError):
    """An external tool invoked by a task failed."""

    def __init__(self, message: str, *, returncode: int | None = None, output: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class CompileError(CollaboratorError):
    """Bundler compilation failed; fatal to startup."""
