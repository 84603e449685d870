"""Exception types raised by xcompress."""


class XcompressError(Exception):
    """Base class for all xcompress errors."""


class ConfigError(XcompressError):
    """Configuration file could not be read or parsed."""


class ConfigValidationError(ConfigError):
    """One or more jobs in a configuration failed validation.

    All violations are collected before raising so they can be fixed in one pass.
    """

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Configuration validation failed:\n" + "\n".join(self.errors))


class StagingError(XcompressError):
    """Copying sources into a staging directory failed for at least one source."""

    def __init__(self, staging_path, failures: list[str]):
        self.staging_path = staging_path
        self.failures = list(failures)
        super().__init__(
            f"Staging into {staging_path} failed:\n" + "\n".join(self.failures)
        )


class EngineError(XcompressError):
    """The restic process could not be run or exited with a non-zero code."""

    def __init__(self, message: str, output: str = "", returncode: int | None = None):
        self.output = output
        self.returncode = returncode
        super().__init__(message)


class EngineInitError(EngineError):
    """Repository initialization failed."""


class EngineBackupError(EngineError):
    """A single backup invocation failed."""


class EngineRestoreError(EngineError):
    """A restore invocation failed."""


class SnapshotNotFoundError(XcompressError):
    """No snapshot matched the requested selector."""

    def __init__(self, selector: str, repository=None):
        self.selector = selector
        self.repository = repository
        where = f" in {repository}" if repository else ""
        super().__init__(f"Snapshot not found{where}: {selector}")
