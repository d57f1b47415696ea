"""Exception hierarchy shared by every preflight layer."""


class PreflightError(Exception):
    """Base class for all preflight errors."""


class ConstructionError(PreflightError):
    """An engine could not be built from the requested checks."""


class NoChecksEnabledError(ConstructionError):
    """Engine construction was requested with an empty list of checks."""

    def __init__(self, msg="no checks have been enabled"):
        super().__init__(msg)


class CheckNotFoundError(ConstructionError):
    """A requested check name is absent from the registry."""

    def __init__(self, name):
        self.name = name
        super().__init__(f"requested check not found: {name}")


class DuplicateCheckNameError(ConstructionError):
    """A check name was requested more than once."""

    def __init__(self, name):
        self.name = name
        super().__init__(f"check requested more than once: {name}")


class RegistryError(PreflightError):
    """Misuse of a CheckRegistry, always a programming error."""


class DuplicateCheckError(RegistryError):
    """Two checks were registered under the same name."""


class RegistryFrozenError(RegistryError):
    """A check was registered after the registry was frozen."""


class PolicyNotFoundError(RegistryError):
    """A policy name is unknown to the registry."""


class ConfigurationError(PreflightError):
    """Invalid runtime configuration."""


class ContainerEngineError(PreflightError):
    """
    A podman invocation failed.

    The report attribute carries the captured output of the failed command
    (or None if the binary could not be executed at all).
    """

    def __init__(self, msg, report=None):
        self.report = report
        if report is not None and report.output.strip():
            msg = f"{msg}: {report.output.strip()}"
        super().__init__(msg)


class AcquisitionError(ContainerEngineError):
    """The target image filesystem could not be acquired."""


class PullFailedError(AcquisitionError):
    """Pulling the image into the local storage failed."""


class SaveFailedError(AcquisitionError):
    """Saving the image to a tarball failed."""


class ExtractTarballError(AcquisitionError):
    """The image tarball could not be extracted."""


class CreateTempDirError(AcquisitionError):
    """A temporary directory for the image could not be created."""


class MountFailedError(AcquisitionError):
    """Mounting a container or image filesystem failed."""


class CreateFailedError(ContainerEngineError):
    """Creating a stopped container failed."""


class CopyFailedError(ContainerEngineError):
    """Copying out of a container failed."""


class CleanupError(ContainerEngineError):
    """Releasing a resource failed.  Only ever logged."""


class UnmountFailedError(CleanupError):
    """Unmounting a container or image filesystem failed."""


class RemoveFailedError(CleanupError):
    """Removing a container failed."""


class SandboxError(PreflightError):
    """Running a check inside the unshare sandbox failed."""


class SandboxFatalError(SandboxError):
    """The sandboxed child reported a fatal error on stderr (or timed out)."""

    def __init__(self, msg, report=None):
        self.report = report
        super().__init__(msg)


class SandboxPayloadError(SandboxError):
    """The sandboxed child wrote something other than a Results document."""

    def __init__(self, msg, report=None):
        self.report = report
        super().__init__(msg)


class SandboxRecursionError(SandboxError):
    """A sandbox was requested while already running inside one."""

    def __init__(self, msg="already running inside podman unshare"):
        super().__init__(msg)


class MissingSandboxEnvError(SandboxError):
    """A required sandbox environment variable was not provided."""

    def __init__(self, var):
        self.var = var
        super().__init__(f"required environment variable {var} not specified")
