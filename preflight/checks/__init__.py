"""The bundled checks and the policies grouping them."""

from preflight.checks.container import (HasLicense, HasNoProhibitedPackages, HasRequiredLabels,
                                        HasUniqueTag, LayerCountAcceptable, RunAsNonRoot)
from preflight.checks.operator import BundleHasRequiredAnnotations
from preflight.registry import CheckRegistry

CONTAINER_POLICY = "container"
ROOT_POLICY = "root"
SCRATCH_POLICY = "scratch"
OPERATOR_POLICY = "operator"

ALL_CONTAINER = (CONTAINER_POLICY, ROOT_POLICY, SCRATCH_POLICY)


def build_registry():
    """Return a frozen registry holding every bundled check."""
    registry = CheckRegistry()
    registry.register(HasLicense(), CONTAINER_POLICY, ROOT_POLICY)
    registry.register(HasUniqueTag(), *ALL_CONTAINER)
    registry.register(LayerCountAcceptable(), *ALL_CONTAINER)
    registry.register(HasNoProhibitedPackages(), CONTAINER_POLICY, ROOT_POLICY)
    registry.register(HasRequiredLabels(), *ALL_CONTAINER)
    registry.register(RunAsNonRoot(), CONTAINER_POLICY, SCRATCH_POLICY)
    registry.register(BundleHasRequiredAnnotations(), OPERATOR_POLICY)
    return registry.freeze()
