#!/usr/bin/env python3

"""Verify the bundled container and operator checks against fake image trees."""

import json
import os
import subprocess
import unittest
from tempfile import TemporaryDirectory
from unittest.mock import patch

import yaml

from preflight.check import ImageReference
from preflight.checks import container, operator

GOOD_LABELS = {"name": "thing", "vendor": "Example", "version": "1.0", "release": "1",
               "summary": "A thing", "description": "A thing for testing"}


class TestBase(unittest.TestCase):

    def setUp(self):
        self._tmp = TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.tmpdir = self._tmp.name
        self.target = ImageReference("quay.io/example/thing:1.0", self.tmpdir)

    def write_archive(self, labels=None, user="1001", layers=3,
                      repo_tags=("quay.io/example/thing:1.0",)):
        """Lay out a minimal extracted 'podman save' archive in tmpdir."""
        manifest = [{"Config": "c0ffee.json",
                     "RepoTags": list(repo_tags),
                     "Layers": [f"layer{n}.tar" for n in range(layers)]}]
        config = {"config": {"Labels": labels if labels is not None else GOOD_LABELS,
                             "User": user}}
        with open(os.path.join(self.tmpdir, "manifest.json"), "w") as manifest_file:
            json.dump(manifest, manifest_file)
        with open(os.path.join(self.tmpdir, "c0ffee.json"), "w") as config_file:
            json.dump(config, config_file)


class TestArchiveChecks(TestBase):

    def test_labels(self):
        self.write_archive()
        self.assertTrue(container.HasRequiredLabels().validate(self.target))

    def test_labels_missing(self):
        labels = dict(GOOD_LABELS, vendor="")
        del labels["summary"]
        self.write_archive(labels=labels)
        self.assertFalse(container.HasRequiredLabels().validate(self.target))

    def test_labels_null(self):
        self.write_archive(labels={})
        self.assertFalse(container.HasRequiredLabels().validate(self.target))

    def test_no_manifest(self):
        self.assertRaises(FileNotFoundError, container.HasRequiredLabels().validate, self.target)

    def test_layers(self):
        for layers, expected in ((1, True), (container.ACCEPTABLE_LAYER_MAX, True),
                                 (container.ACCEPTABLE_LAYER_MAX + 1, False)):
            with self.subTest(layers=layers):
                self.write_archive(layers=layers)
                self.assertEqual(container.LayerCountAcceptable().validate(self.target), expected)

    def test_non_root(self):
        for user, expected in (("1001", True), ("app", True), ("", False), ("root", False),
                               ("0", False), ("0:0", False)):
            with self.subTest(user=user):
                self.write_archive(user=user)
                self.assertEqual(container.RunAsNonRoot().validate(self.target), expected)

    def test_unique_tag(self):
        cases = ((("quay.io/example/thing:1.0",), True),
                 (("quay.io/example/thing:latest",), False),
                 (("quay.io/example/thing:latest", "quay.io/example/thing:v2"), True),
                 (("localhost:5000/thing",), False),
                 ((), False))
        for tags, expected in cases:
            with self.subTest(tags=tags):
                self.write_archive(repo_tags=tags)
                self.assertEqual(container.HasUniqueTag().validate(self.target), expected)

    def test_metadata_and_help(self):
        for check in (container.HasRequiredLabels(), container.LayerCountAcceptable(),
                      container.RunAsNonRoot(), container.HasUniqueTag(),
                      container.HasLicense(), container.HasNoProhibitedPackages(),
                      operator.BundleHasRequiredAnnotations()):
            with self.subTest(check=check):
                self.assertTrue(check.metadata().description)
                self.assertIn(check.name, check.help().message)
                self.assertTrue(check.help().suggestion)


class TestFilesystemChecks(TestBase):

    def test_needs_mount(self):
        self.assertTrue(container.HasLicense.needs_mount)
        self.assertTrue(container.HasNoProhibitedPackages.needs_mount)
        self.assertTrue(operator.BundleHasRequiredAnnotations.needs_mount)
        self.assertFalse(container.HasRequiredLabels.needs_mount)

    def test_license(self):
        check = container.HasLicense()
        self.assertFalse(check.validate(self.target))
        os.mkdir(os.path.join(self.tmpdir, "licenses"))
        self.assertFalse(check.validate(self.target))
        with open(os.path.join(self.tmpdir, "licenses", "LICENSE"), "w") as license_file:
            license_file.write("Apache-2.0\n")
        self.assertTrue(check.validate(self.target))

    def test_license_not_a_directory(self):
        with open(os.path.join(self.tmpdir, "licenses"), "w") as license_file:
            license_file.write("oops\n")
        self.assertRaises(NotADirectoryError, container.HasLicense().validate, self.target)

    def test_prohibited_packages(self):
        for packages, expected in ((["bash", "glibc"], True),
                                   (["bash", "kernel-core"], False),
                                   (["kpatch-patch-4_18"], False),
                                   (["grub2-tools"], True)):
            with self.subTest(packages=packages):
                stdout = "".join(f"{pkg}\n" for pkg in packages)
                with patch("preflight.checks.container.subprocess.run") as run:
                    run.return_value = subprocess.CompletedProcess([], 0, stdout, "")
                    self.assertEqual(container.HasNoProhibitedPackages().validate(self.target),
                                     expected)
                self.assertEqual(run.call_args[0][0],
                                 ["rpm", "--root", self.tmpdir, "-qa", "--qf", "%{NAME}\n"])

    def test_rpm_failure(self):
        with patch("preflight.checks.container.subprocess.run") as run:
            run.return_value = subprocess.CompletedProcess([], 1, "", "no rpmdb")
            self.assertRaises(RuntimeError, container.HasNoProhibitedPackages().validate,
                              self.target)

    def write_annotations(self, doc):
        os.mkdir(os.path.join(self.tmpdir, "metadata"))
        with open(os.path.join(self.tmpdir, "metadata", "annotations.yaml"), "w") as ann_file:
            if isinstance(doc, str):
                ann_file.write(doc)
            else:
                yaml.safe_dump(doc, ann_file)

    def test_annotations(self):
        self.write_annotations({"annotations": {operator.PACKAGE_KEY: "thing",
                                                operator.CHANNEL_KEY: "stable"}})
        self.assertTrue(operator.BundleHasRequiredAnnotations().validate(self.target))

    def test_annotations_missing_key(self):
        self.write_annotations({"annotations": {operator.PACKAGE_KEY: "thing"}})
        self.assertFalse(operator.BundleHasRequiredAnnotations().validate(self.target))

    def test_annotations_malformed(self):
        self.write_annotations("- just\n- a list\n")
        self.assertRaises(ValueError, operator.BundleHasRequiredAnnotations().validate,
                          self.target)

    def test_annotations_absent(self):
        self.assertRaises(FileNotFoundError, operator.BundleHasRequiredAnnotations().validate,
                          self.target)


if __name__ == "__main__":
    unittest.main()
