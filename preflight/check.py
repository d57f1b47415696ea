"""The Check abstraction and the image reference checks validate."""

import abc
from dataclasses import dataclass

# Documentation links shared by the bundled checks.
POLICY_GUIDE_URL = "https://connect.redhat.com/zones/containers/container-certification-policy-guide"


@dataclass(frozen=True)
class Metadata:
    """Descriptive information about a check."""

    description: str
    level: str = "best"
    knowledge_base_url: str = POLICY_GUIDE_URL
    check_url: str = POLICY_GUIDE_URL


@dataclass(frozen=True)
class HelpText:
    """What to tell a user when a check does not pass."""

    message: str
    suggestion: str


@dataclass(frozen=True)
class ImageReference:
    """
    The target of a run.

    image_uri is what the user asked for: a registry coordinate or, for
    mounted runs, a local directory.  image_fs_path is the local filesystem
    a check should look at (extracted archive or mountpoint), empty when
    nothing has been resolved yet.
    """

    image_uri: str
    image_fs_path: str = ""


class Check(abc.ABC):
    """
    A single named certification test.

    Implementations must be stateless: one instance lives for the whole
    process and may be validated against any number of targets.
    """

    # When True the check needs the image filesystem mounted, which for an
    # unprivileged user is only possible inside 'podman unshare'.
    needs_mount = False

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Unique check name."""

    @abc.abstractmethod
    def validate(self, target: ImageReference) -> bool:
        """Return True if target passes, False if not, raise if it can't tell."""

    @abc.abstractmethod
    def metadata(self) -> Metadata:
        """Return descriptive Metadata."""

    @abc.abstractmethod
    def help(self) -> HelpText:
        """Return HelpText shown for failures and errors."""

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.name!r}>"


class GenericCheck(Check):
    """A check built from a plain validator function."""

    def __init__(self, name, validator, metadata, help_text, needs_mount=False):
        self._name = name
        self._validator = validator
        self._metadata = metadata
        self._help_text = help_text
        self.needs_mount = needs_mount

    @property
    def name(self):
        return self._name

    def validate(self, target):
        return self._validator(target)

    def metadata(self):
        return self._metadata

    def help(self):
        return self._help_text
