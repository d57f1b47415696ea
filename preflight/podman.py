"""
Acquire and release image resources by shelling out to podman.

Every resource handed out here (temporary directories, tarballs, extracted
trees, mounts, containers) has a context manager which guarantees its
release, whatever happens inside the managed block.  Release failures are
logged, they never replace the outcome of the block.
"""

import logging
import os
import re
import shutil
import subprocess
import tarfile
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional, Sequence

from preflight.errors import (ContainerEngineError, CopyFailedError, CreateFailedError,
                              CreateTempDirError, ExtractTarballError, MountFailedError,
                              PullFailedError, RemoveFailedError, SaveFailedError,
                              UnmountFailedError)

logger = logging.getLogger(__name__)

TAR_SUFFIX = ".tar"

# Last line of 'podman pull' output, the local image ID
_IMAGE_ID_RX = re.compile(r"^[0-9A-Za-z]+$")


@dataclass(frozen=True)
class PodmanReport:
    """Captured result of one podman invocation."""

    args: Sequence[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def output(self):
        """Return stdout and stderr together, for diagnostics."""
        return "\n".join(out for out in (self.stdout, self.stderr) if out)


def image_id_from_pull(output):
    """Return the image ID podman prints as the last line of pull output."""
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if not lines or not _IMAGE_ID_RX.match(lines[-1]):
        raise PullFailedError(f"could not determine image ID from pull output {output!r}")
    return lines[-1]


def extract_tar(tar_path):
    """
    Extract tar_path next to itself, return the extraction directory.

    The tarball's file name is expected to look like '<image ID>.tar', with
    the '.tar' suffix appearing exactly once.  The directory is the name
    with that suffix removed.  Names that don't fit are refused before
    anything is written.
    """
    base = os.path.basename(tar_path)
    parts = base.split(TAR_SUFFIX)
    if len(parts) != 2 or not parts[0]:
        raise ExtractTarballError(
            f"received an improper container tarball name to extract: {tar_path}")

    output_dir = os.path.join(os.path.dirname(tar_path), parts[0])
    try:
        os.mkdir(output_dir, 0o755)
    except OSError as xcpt:
        raise ExtractTarballError(f"failed to create extraction directory {output_dir}") from xcpt

    try:
        with tarfile.open(tar_path) as tar:
            tar.extractall(output_dir, filter="data")
    except (tarfile.TarError, OSError) as xcpt:
        shutil.rmtree(output_dir, ignore_errors=True)
        raise ExtractTarballError(f"failed to extract tarball {tar_path}: {xcpt}") from xcpt

    logger.debug("extracted %s into %s", tar_path, output_dir)
    return output_dir


def _remove_tree(path):
    try:
        shutil.rmtree(path)
    except OSError as xcpt:
        logger.error("unable to clean up temporary directory %s: %s", path, xcpt)


class PodmanEngine:
    """Image resource manager backed by the podman CLI."""

    def __init__(self, binary="podman"):
        self.binary = binary

    def _run(self, *args, env=None, combined=False, timeout=None):
        """Run podman with args, return a PodmanReport whatever the exit code."""
        cmd = [self.binary, *args]
        logger.debug("Running podman with the following invocation: %s", cmd)
        try:
            proc = subprocess.run(cmd,
                                  stdout=subprocess.PIPE,
                                  stderr=subprocess.STDOUT if combined else subprocess.PIPE,
                                  env=env,
                                  encoding="utf-8",
                                  errors="replace",
                                  timeout=timeout,
                                  check=False)
        except FileNotFoundError as xcpt:
            raise ContainerEngineError(f"podman binary '{self.binary}' not found") from xcpt
        report = PodmanReport(args=tuple(cmd),
                              returncode=proc.returncode,
                              stdout=proc.stdout or "",
                              stderr=proc.stderr or "")
        if report.returncode != 0:
            logger.debug("podman exit(%d) output: %s", report.returncode, report.output)
        return report

    def pull(self, ref):
        """Pull ref into local storage, return the report."""
        report = self._run("pull", ref, combined=True)
        if report.returncode != 0:
            raise PullFailedError(f"failed to pull remote container {ref}", report)
        return report

    def save(self, ref, dest_path):
        """Write the locally stored ref to a tarball at dest_path."""
        report = self._run("save", ref, "--output", dest_path, combined=True)
        if report.returncode != 0:
            raise SaveFailedError(f"failed to save container tarball {dest_path}", report)
        return report

    def extract_tar(self, tar_path):
        return extract_tar(tar_path)

    def mount(self, container_id):
        """Mount a container filesystem, return the mountpoint."""
        report = self._run("mount", container_id)
        if report.returncode != 0:
            raise MountFailedError(f"could not mount container {container_id}", report)
        return report.stdout.strip()

    def unmount(self, container_id):
        report = self._run("unmount", container_id)
        if report.returncode != 0:
            raise UnmountFailedError(f"could not unmount container {container_id}", report)
        return report

    def mount_image(self, image_id):
        """Mount an image filesystem, return the mountpoint."""
        report = self._run("image", "mount", image_id)
        if report.returncode != 0:
            raise MountFailedError(f"could not mount image {image_id}", report)
        return report.stdout.strip()

    def unmount_image(self, image_id):
        report = self._run("image", "unmount", image_id)
        if report.returncode != 0:
            raise UnmountFailedError(f"could not unmount image {image_id}", report)
        return report

    def create(self, ref, entrypoint: Optional[str] = None):
        """
        Create a stopped container from ref, return its ID.

        The caller owns the container and must remove() it, see
        created_container().
        """
        args = ["create"]
        if entrypoint:
            args.extend(["--entrypoint", entrypoint])
        args.append(ref)
        report = self._run(*args)
        container_id = report.stdout.strip()
        if report.returncode != 0 or not container_id:
            raise CreateFailedError(f"could not create container from {ref}", report)
        return container_id

    def copy_from(self, container_id, source_path, destination_path):
        """Copy source_path out of container_id to destination_path."""
        report = self._run("cp", f"{container_id}:{source_path}", destination_path)
        if report.returncode != 0:
            raise CopyFailedError(f"could not copy {source_path} from container {container_id}",
                                  report)
        return report

    def remove(self, container_id):
        report = self._run("rm", container_id)
        if report.returncode != 0:
            raise RemoveFailedError(f"could not remove container {container_id}", report)
        return report

    def unshare(self, env, *command, timeout=None):
        """
        Run command inside 'podman unshare' with exactly env as its environment.

        Output is fully buffered and returned once the child exits.  A
        non-zero exit is not an error here, callers classify the report.
        """
        return self._run("unshare", *command, env=env, timeout=timeout)

    @contextmanager
    def acquired_image(self, ref):
        """
        Pull, save and extract ref, yield the extracted directory.

        Steps run strictly in order and the first failure stops the rest.
        The temporary directory holding the tarball and the extracted tree
        is always removed on exit.
        """
        try:
            tmpdir = tempfile.mkdtemp(prefix="preflight-")
        except OSError as xcpt:
            raise CreateTempDirError("failed to create temporary directory") from xcpt
        logger.debug("temporary directory is %s", tmpdir)

        try:
            logger.debug("pulling image %s", ref)
            image_id = image_id_from_pull(self.pull(ref).output)
            tar_path = os.path.join(tmpdir, f"{image_id}{TAR_SUFFIX}")
            self.save(ref, tar_path)
            yield self.extract_tar(tar_path)
        finally:
            _remove_tree(tmpdir)

    @contextmanager
    def mounted_image(self, image_id):
        """Yield the mountpoint of image_id, unmounting it on exit."""
        mountpoint = self.mount_image(image_id)
        logger.debug("image %s mounted at %s", image_id, mountpoint)
        try:
            yield mountpoint
        finally:
            try:
                self.unmount_image(image_id)
            except ContainerEngineError as xcpt:
                logger.error("%s", xcpt)

    @contextmanager
    def created_container(self, ref, entrypoint=None):
        """Yield the ID of a stopped container made from ref, removing it on exit."""
        container_id = self.create(ref, entrypoint=entrypoint)
        try:
            yield container_id
        finally:
            try:
                self.remove(container_id)
            except ContainerEngineError as xcpt:
                logger.error("%s", xcpt)

    @contextmanager
    def mounted_container(self, container_id):
        """Yield the mountpoint of container_id, unmounting it on exit."""
        mountpoint = self.mount(container_id)
        try:
            yield mountpoint
        finally:
            try:
                self.unmount(container_id)
            except ContainerEngineError as xcpt:
                logger.error("%s", xcpt)
