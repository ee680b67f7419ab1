#!/usr/bin/env python3
"""
Tests for the frameworks, XCFrameworks and package.

Run with: python3 -m pytest xcldap/build_scripts/test_build_framework.py
"""

import os
import plistlib
import stat
import tempfile
import unittest
import zipfile
from pathlib import Path
from unittest.mock import Mock

from xcldap.build_scripts.build_framework import (
    FrameworkInfo,
    UnbuiltDynamicXCFramework,
    UnbuiltFramework,
    UnbuiltXCFrameworkPackage,
    zip_directory,
)
from xcldap.build_scripts.build_utils import XCRUN
from xcldap.model.build_paths import BuildPaths
from xcldap.utils.context.context import BuildContext
from xcldap.utils.download.download_util import calculate_checksum

SLICE = "      cmd LC_BUILD_VERSION\n    minos {}\n      sdk 17.0\n"


def otool(executable, args, cwd=None, env=None):
    """otool -l prints the host slice only, unless all the archs are asked for."""
    lines = Path(args[-1]).read_text().splitlines(keepends=True)
    if args[1:3] == ["-arch", "all"]:
        return "".join(lines)
    return "".join(lines[:3])


def framework_info(platform, minimum_os_version=None):
    return FrameworkInfo(
        platform=platform,
        executable="COpenLDAP",
        identifier="com.xcode-actions.COpenLDAP",
        name="COpenLDAP",
        marketing_version="2.5.5",
        build_version="1",
        minimum_os_version=minimum_os_version,
    )


class TestFramework(unittest.TestCase):
    """Test the framework bundle creation."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.root = Path(self.tmpdir.name)
        self.dylib = self.root / "libCOpenLDAP.dylib"
        self.dylib.write_text("".join(SLICE.format(v) for v in ["14.0", "11.0", "12.0"]))
        self.headers = self.root / "headers"
        self.headers.mkdir()
        (self.headers / "ldap.h").write_text("#include <COpenLDAP/lber.h>\n")
        (self.headers / "COpenLDAP.h").write_text("#import <COpenLDAP/ldap.h>\n")
        self.runner = Mock(side_effect=otool)
        self.templates = BuildPaths.default_files_path() / "templates" / "dynamic-lib"

    def unbuilt_framework(self, platform, version=None, minimum_os_version=None):
        return UnbuiltFramework(
            version=version,
            info=framework_info(platform, minimum_os_version),
            lib_path=self.dylib,
            headers=[(self.headers, "ldap.h"), (self.headers, "COpenLDAP.h")],
            modules_template_dir=self.templates,
        )

    def test_minimum_os_version_is_min_of_slices(self):
        """Test the declared minimum OS is the smallest of the slices minimums."""
        framework = self.unbuilt_framework("iOS")
        self.assertEqual(framework.minimum_os_version(BuildContext(runner=self.runner)), "11.0")
        self.runner.assert_called_once_with(XCRUN, ["otool", "-arch", "all", "-l", str(self.dylib)], cwd=None, env=None)

    def test_explicit_minimum_os_version(self):
        """Test an explicit minimum OS version does not query the binary."""
        framework = self.unbuilt_framework("iOS", minimum_os_version="13.0")
        self.assertEqual(framework.minimum_os_version(BuildContext(runner=self.runner)), "13.0")
        self.runner.assert_not_called()

    def test_flat_framework(self):
        """Test the iOS framework layout and Info.plist."""
        dest = self.root / "iOS" / "COpenLDAP.framework"
        self.unbuilt_framework("iOS").build_framework(dest, BuildContext(runner=self.runner))
        self.assertEqual((dest / "COpenLDAP").read_text(), self.dylib.read_text())
        self.assertTrue((dest / "Headers" / "ldap.h").is_file())
        self.assertIn("framework module COpenLDAP", (dest / "Modules" / "module.modulemap").read_text())
        with open(dest / "Info.plist", "rb") as f:
            info = plistlib.load(f)
        self.assertEqual(info["MinimumOSVersion"], "11.0")
        self.assertEqual(info["CFBundlePackageType"], "FMWK")
        self.assertEqual(info["CFBundleSupportedPlatforms"], ["iPhoneOS"])
        self.assertNotIn("LSMinimumSystemVersion", info)

    def test_versioned_framework(self):
        """Test the macOS framework layout."""
        dest = self.root / "macOS" / "COpenLDAP.framework"
        self.unbuilt_framework("macOS", version="A").build_framework(dest, BuildContext(runner=self.runner))
        self.assertEqual(os.readlink(dest / "Versions" / "Current"), "A")
        for name in ["COpenLDAP", "Headers", "Modules", "Resources"]:
            self.assertEqual(os.readlink(dest / name), f"Versions/Current/{name}")
        with open(dest / "Versions" / "A" / "Resources" / "Info.plist", "rb") as f:
            info = plistlib.load(f)
        self.assertEqual(info["LSMinimumSystemVersion"], "11.0")
        self.assertFalse((dest / "Versions" / "A" / "Info.plist").exists())

    def test_skip_existing_framework(self):
        """Test an existing framework is kept without running any command."""
        dest = self.root / "COpenLDAP.framework"
        dest.mkdir()
        ctx = BuildContext(skip_existing_artifacts=True, runner=self.runner)
        self.unbuilt_framework("iOS").build_framework(dest, ctx)
        self.runner.assert_not_called()
        self.assertEqual(os.listdir(dest), [])


class TestXCFramework(unittest.TestCase):
    """Test the XCFramework creation."""

    def test_existing_xcframework_is_replaced(self):
        """Test xcodebuild gets a free output path."""
        with tempfile.TemporaryDirectory() as tmpdir:
            dest = Path(tmpdir) / "COpenLDAP-dynamic.xcframework"
            dest.mkdir()
            seen = []
            runner = Mock(side_effect=lambda executable, args, cwd=None, env=None: seen.append(dest.exists()) or "")
            UnbuiltDynamicXCFramework([Path(tmpdir) / "COpenLDAP.framework"]).build_xcframework(
                dest, BuildContext(runner=runner)
            )
            self.assertEqual(seen, [False])


class TestPackage(unittest.TestCase):
    """Test the zips and Package.swift."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.root = Path(self.tmpdir.name)
        self.build_paths = BuildPaths(BuildPaths.default_files_path(), self.root / "work", self.root / "result")
        for xcframework in [self.build_paths.result_xcframework_static, self.build_paths.result_xcframework_dynamic]:
            (xcframework / "macos-arm64" / "Versions" / "A").mkdir(parents=True)
            (xcframework / "Info.plist").write_text("plist\n")
            (xcframework / "macos-arm64" / "Versions" / "A" / "COpenLDAP").write_text("binary\n")
            os.symlink("A", xcframework / "macos-arm64" / "Versions" / "Current")

    def test_zip_keeps_symlinks(self):
        """Test symlinks are archived as symlinks."""
        archive = zip_directory(self.build_paths.result_xcframework_dynamic, self.root / "out.zip")
        with zipfile.ZipFile(archive) as zf:
            info = zf.getinfo("COpenLDAP-dynamic.xcframework/macos-arm64/Versions/Current")
            self.assertTrue(stat.S_ISLNK(info.external_attr >> 16))
            self.assertEqual(zf.read(info), b"A")
            self.assertEqual(zf.read("COpenLDAP-dynamic.xcframework/Info.plist"), b"plist\n")

    def test_zip_is_deterministic(self):
        """Test zipping the same tree twice gives the same archive."""
        xcframework = self.build_paths.result_xcframework_static
        first = zip_directory(xcframework, self.root / "first.zip")
        os.utime(xcframework / "Info.plist", (0, 0))
        second = zip_directory(xcframework, self.root / "second.zip")
        self.assertEqual(first.read_bytes(), second.read_bytes())

    def test_package_with_base_url(self):
        """Test Package.swift uses URLs and checksums when a base URL is given."""
        package = UnbuiltXCFrameworkPackage(self.build_paths, "2.5.5", base_url="https://example.com/releases/")
        manifest = package.build_xcframework_package(BuildContext())
        content = manifest.read_text()
        static_zip = self.root / "result" / "COpenLDAP-static.xcframework.zip"
        dynamic_zip = self.root / "result" / "COpenLDAP-dynamic.xcframework.zip"
        self.assertIn(
            f'.binaryTarget(name: "COpenLDAP-static", url: "https://example.com/releases/COpenLDAP-static.xcframework.zip", '
            f'checksum: "{calculate_checksum(static_zip)}"),',
            content,
        )
        self.assertIn(f'checksum: "{calculate_checksum(dynamic_zip)}")\n\t]', content)
        self.assertIn('.library(name: "COpenLDAP-dynamic", targets: ["COpenLDAP-dynamic"])\n\t]', content)
        self.assertIn("OpenLDAP 2.5.5", content)

    def test_package_with_local_paths(self):
        """Test Package.swift uses the zips paths without base URL."""
        manifest = UnbuiltXCFrameworkPackage(self.build_paths, "2.5.5").build_xcframework_package(BuildContext())
        content = manifest.read_text()
        self.assertIn('path: "COpenLDAP-static.xcframework.zip"', content)
        self.assertNotIn("checksum", content)


if __name__ == "__main__":
    unittest.main()
