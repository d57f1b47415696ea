"""Operator bundle policy checks."""

import logging
import os

# Ref: https://pyyaml.org/wiki/PyYAMLDocumentation
import yaml

from preflight.check import Check, HelpText, Metadata

logger = logging.getLogger(__name__)

PACKAGE_KEY = "operators.operatorframework.io.bundle.package.v1"
CHANNEL_KEY = "operators.operatorframework.io.bundle.channel.default.v1"

REQUIRED_ANNOTATIONS = (PACKAGE_KEY, CHANNEL_KEY)


def bundle_annotations(bundle_dir):
    """Return the 'annotations' mapping from a bundle's metadata/annotations.yaml."""
    annotations_path = os.path.join(bundle_dir, "metadata", "annotations.yaml")
    logger.debug("reading annotations file %s", annotations_path)
    with open(annotations_path) as annotations_file:
        doc = yaml.safe_load(annotations_file)
    if not isinstance(doc, dict) or not isinstance(doc.get("annotations"), dict):
        raise ValueError("metadata/annotations.yaml found but is malformed")
    return doc["annotations"]


class BundleHasRequiredAnnotations(Check):
    name = "BundleHasRequiredAnnotations"
    needs_mount = True

    def validate(self, target):
        annotations = bundle_annotations(target.image_fs_path)
        missing = [key for key in REQUIRED_ANNOTATIONS if not annotations.get(key)]
        if missing:
            logger.debug("bundle annotations missing: %s", missing)
        return not missing

    def metadata(self):
        return Metadata(description="Checking that the bundle declares its package name and"
                                    " default channel in metadata/annotations.yaml.")

    def help(self):
        return HelpText(message="Check BundleHasRequiredAnnotations encountered an error."
                                " Please review the preflight.log file for more information.",
                        suggestion="Add " + " and ".join(REQUIRED_ANNOTATIONS)
                                   + " to metadata/annotations.yaml")
