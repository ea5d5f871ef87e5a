class BootstrapError(Exception):
    """Base class for provisioning failures."""


class BootstrapFatalError(BootstrapError):
    """A failure that aborts the run with a non-zero exit status."""


class ConfigError(BootstrapFatalError):
    pass


class DockerUnavailableError(BootstrapFatalError):
    pass


class MissingIdentityError(BootstrapFatalError):
    def __init__(self, missing):
        self.missing = list(missing)
        super().__init__(f"required environment variables are missing: {', '.join(self.missing)}")


class ScriptWriteError(BootstrapFatalError):
    pass
