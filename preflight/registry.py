"""Named checks, grouped into policies."""

import logging
import threading

from preflight.errors import DuplicateCheckError, PolicyNotFoundError, RegistryFrozenError

logger = logging.getLogger(__name__)


class CheckRegistry:
    """
    Map check names to Check instances, and policies to ordered check names.

    Registration happens once at startup.  After freeze() the registry is
    read-only and safe to share between any number of engines and threads.
    """

    def __init__(self):
        self._checks = {}
        self._policies = {}
        self._frozen = False
        self._lock = threading.Lock()

    @property
    def frozen(self):
        return self._frozen

    def register(self, check, *policies):
        """Add check under its name, and to every named policy in order."""
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(f"cannot register {check.name}, registry is frozen")
            if check.name in self._checks:
                raise DuplicateCheckError(f"check {check.name} is already registered")
            if len(set(policies)) != len(policies):
                raise DuplicateCheckError(f"check {check.name} listed twice in one policy")
            self._checks[check.name] = check
            for policy in policies:
                self._policies.setdefault(policy, []).append(check.name)
        logger.debug("registered check %s for policies %s", check.name, list(policies))
        return check

    def freeze(self):
        with self._lock:
            self._frozen = True
        return self

    def lookup(self, name):
        """Return the Check registered as name, or None."""
        return self._checks.get(name)

    def names(self):
        """Return every registered check name, in registration order."""
        return list(self._checks)

    def policies(self):
        return list(self._policies)

    def list_by_policy(self, policy):
        """Return the ordered check names of policy."""
        try:
            return list(self._policies[policy])
        except KeyError as xcpt:
            raise PolicyNotFoundError(f"unknown policy {policy}") from xcpt

    def __contains__(self, name):
        return name in self._checks

    def __len__(self):
        return len(self._checks)
