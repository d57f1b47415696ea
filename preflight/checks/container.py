"""
Container policy checks.

Archive checks look at the directory 'podman save' produced and
acquired_image() extracted: a docker-archive with a top level
manifest.json listing the image config blob, tags and layers.
Filesystem checks need the image mounted and only ever run in a worker.
"""

import json
import logging
import os
import subprocess

from preflight.check import Check, HelpText, Metadata

logger = logging.getLogger(__name__)

REQUIRED_LABELS = ("name", "vendor", "version", "release", "summary", "description")

ACCEPTABLE_LAYER_MAX = 40

LICENSE_DIR = "licenses"

PROHIBITED_PACKAGES = frozenset([
    "grub", "grub2",
    "kernel", "kernel-core", "kernel-debug", "kernel-debug-core", "kernel-debug-modules",
    "kernel-debug-modules-extra", "kernel-debug-devel", "kernel-devel", "kernel-doc",
    "kernel-modules", "kernel-modules-extra", "kernel-tools", "kernel-tools-libs",
    "kmod-kvdo", "linux-firmware",
])

# Matched as name prefixes
PROHIBITED_PACKAGE_PREFIXES = ("kpatch",)

ROOT_USERS = ("", "0", "root", "0:0", "root:root")


def _error_help(name, suggestion):
    return HelpText(message=f"Check {name} encountered an error. "
                            "Please review the preflight.log file for more information.",
                    suggestion=suggestion)


def read_manifest(archive_dir):
    """Return the single image entry of an extracted archive's manifest.json."""
    with open(os.path.join(archive_dir, "manifest.json")) as manifest_file:
        manifest = json.load(manifest_file)
    if not isinstance(manifest, list) or len(manifest) != 1:
        raise ValueError(f"expected exactly one image in {archive_dir}/manifest.json")
    return manifest[0]


def read_config(archive_dir):
    """Return the image config blob named by the archive manifest."""
    config_name = read_manifest(archive_dir)["Config"]
    with open(os.path.join(archive_dir, config_name)) as config_file:
        return json.load(config_file)


def image_labels(archive_dir):
    config = read_config(archive_dir).get("config") or {}
    return config.get("Labels") or {}


class HasRequiredLabels(Check):
    name = "HasRequiredLabel"

    def validate(self, target):
        labels = image_labels(target.image_fs_path)
        missing = [label for label in REQUIRED_LABELS if not labels.get(label)]
        if missing:
            logger.debug("expected labels are missing: %s", missing)
        return not missing

    def metadata(self):
        return Metadata(description="Checking if the required labels (name, vendor, version,"
                                    " release, summary, description) are present in the"
                                    " container metadata.",
                        level="good")

    def help(self):
        return _error_help(self.name, "Add the following labels to your Dockerfile or"
                                      " Containerfile: " + ", ".join(REQUIRED_LABELS))


class LayerCountAcceptable(Check):
    name = "LayerCountAcceptable"

    def validate(self, target):
        layers = read_manifest(target.image_fs_path).get("Layers") or []
        logger.debug("detected %d layers in image", len(layers))
        return len(layers) <= ACCEPTABLE_LAYER_MAX

    def metadata(self):
        return Metadata(description=f"Checking if container has less than {ACCEPTABLE_LAYER_MAX}"
                                    " layers.  Too many layers within the container images can"
                                    " degrade container performance.",
                        level="better")

    def help(self):
        return _error_help(self.name, "Optimize your Dockerfile to consolidate and minimize the"
                                      " number of layers. Each RUN command will produce a new"
                                      " layer. Try combining RUN commands using && where possible.")


class RunAsNonRoot(Check):
    name = "RunAsNonRoot"

    def validate(self, target):
        config = read_config(target.image_fs_path).get("config") or {}
        user = str(config.get("User") or "").strip()
        if user in ROOT_USERS:
            logger.debug("detected user specified as root: '%s'", user)
            return False
        logger.debug("user specified that was not root: %s", user)
        return True

    def metadata(self):
        return Metadata(description="Checking if container runs as the root user because a"
                                    " container that does not specify a non-root user will fail"
                                    " the automatic certification, and will be subject to a"
                                    " manual review before the container can be approved for"
                                    " publication")

    def help(self):
        return _error_help(self.name,
                           "Indicate a specific USER in the dockerfile or containerfile")


class HasUniqueTag(Check):
    name = "HasUniqueTag"

    def validate(self, target):
        repo_tags = read_manifest(target.image_fs_path).get("RepoTags") or []
        tags = {ref.rsplit(":", 1)[-1] for ref in repo_tags if ":" in ref.rsplit("/", 1)[-1]}
        logger.debug("found tags %s", sorted(tags))
        return bool(tags - {"latest"})

    def metadata(self):
        return Metadata(description="Checking if container has a tag other than 'latest', so"
                                    " that the image can be uniquely identified.")

    def help(self):
        return _error_help(self.name, "Add a tag to your image. Consider using Semantic"
                                      " Versioning. https://semver.org/")


class HasLicense(Check):
    name = "HasLicense"
    needs_mount = True

    def validate(self, target):
        license_path = os.path.join(target.image_fs_path, LICENSE_DIR)
        if not os.path.exists(license_path):
            logger.debug("%s does not exist", license_path)
            return False
        if not os.path.isdir(license_path):
            raise NotADirectoryError(f"/{LICENSE_DIR} is not a directory")
        found = os.listdir(license_path)
        logger.debug("%d files found in /%s", len(found), LICENSE_DIR)
        return bool(found)

    def metadata(self):
        return Metadata(description="Checking if terms and conditions applicable to the software"
                                    " including open source licensing information are present."
                                    f" The license must be at /{LICENSE_DIR}")

    def help(self):
        return _error_help(self.name, f"Create a directory named /{LICENSE_DIR} and include all"
                                      " relevant licensing and/or terms and conditions as text"
                                      " file(s) in that directory.")


def installed_packages(root):
    """Return the names of every rpm installed under root."""
    cmd = ["rpm", "--root", root, "-qa", "--qf", "%{NAME}\n"]
    logger.debug("Running rpm with the following invocation: %s", cmd)
    proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                          encoding="utf-8", errors="replace", check=False)
    if proc.returncode != 0:
        raise RuntimeError(f"could not get rpm list: {proc.stderr.strip()}")
    return [line.strip() for line in proc.stdout.splitlines() if line.strip()]


def prohibited(packages):
    return sorted(pkg for pkg in set(packages)
                  if pkg in PROHIBITED_PACKAGES or pkg.startswith(PROHIBITED_PACKAGE_PREFIXES))


class HasNoProhibitedPackages(Check):
    name = "HasNoProhibitedPackages"
    needs_mount = True

    def validate(self, target):
        found = prohibited(installed_packages(target.image_fs_path))
        if found:
            logger.debug("found the following prohibited packages: %s", found)
        return not found

    def metadata(self):
        return Metadata(description="Checks to ensure that the image in use does not include"
                                    " prohibited packages, such as Red Hat Enterprise Linux"
                                    " (RHEL) kernel packages.")

    def help(self):
        return _error_help(self.name, "Remove any RHEL packages that are not distributable"
                                      " outside of UBI")
