#!/usr/bin/env python3
"""
Tests for the whole build, with a fake toolchain.

Run with: python3 -m pytest xcldap/build_scripts/test_build_pipeline.py
"""

import io
import os
import plistlib
import tarfile
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest.mock import Mock

from xcldap.build_scripts.build_pipeline import (
    build_all,
    check_targets_consistency,
    group_targets_by_platform_and_sdk,
    resolve_sdk_versions,
)
from xcldap.build_scripts.build_target import BuiltTarget
from xcldap.build_scripts.build_utils import XCRUN
from xcldap.config import BuildConfig
from xcldap.errors import IncompatibleHeadersError, IncompatibleLibsError, UnsupportedTargetError
from xcldap.model.target import Target
from xcldap.utils.context.context import BuildContext

INSTALLED_HEADERS = {
    "include/lber.h": "#include <lber_types.h>\n",
    "include/lber_types.h": "typedef int ber_int_t;\n",
    "include/ldap.h": "#include <ldap_cdefs.h>\n#include <lber.h>\n",
    "include/ldap_cdefs.h": "#define LDAP_CDEFS\n",
    "include/ldif.h": "#include <ldap_cdefs.h>\nint ldif_fetch_url(FILE *fp);\n",
}
INSTALLED_LIBS = ["lib/liblber.a", "lib/libldap.a"]


class FakeToolchain:
    """
    Emulates the commands run by the build, recording them.

    - make install: installs INSTALLED_LIBS and INSTALLED_HEADERS in DESTDIR
    - clang: writes an otool-like description of the slice as the dylib
    - lipo, libtool: concatenate their inputs
    - otool: returns the slices of the binary, only the first one (host)
      unless all the archs are asked for
    - xcodebuild: creates the XCFramework with an Info.plist
    """

    def __init__(self, min_versions=None, extra_headers=None, extra_libs=None):
        self.min_versions = min_versions or {}
        self.extra_headers = extra_headers or {}
        self.extra_libs = extra_libs or {}
        self.calls = []
        self.configure_envs = []

    def __call__(self, executable, args, cwd=None, env=None):
        self.calls.append([str(executable)] + list(args))
        if str(executable).endswith("configure"):
            self.configure_envs.append(env)
            return "configure: creating ./config.status\n"
        if executable == "make":
            if args[0] == "install":
                self._make_install(args[1][len("DESTDIR="):], env)
            return ""
        if executable == XCRUN:
            return self._xcrun(list(args))
        raise AssertionError(f"Unexpected command {executable} {args}")

    @staticmethod
    def _arch(env_or_args):
        flags = env_or_args["CFLAGS"].split() if isinstance(env_or_args, dict) else env_or_args
        return flags[flags.index("-target") + 1].split("-")[0]

    def _make_install(self, destdir, env):
        arch = self._arch(env)
        for lib in INSTALLED_LIBS + self.extra_libs.get(arch, []):
            path = Path(destdir) / lib
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(f"{arch} {lib}\n")
        headers = dict(INSTALLED_HEADERS)
        headers.update({h: "" for h in self.extra_headers.get(arch, [])})
        for header, content in headers.items():
            path = Path(destdir) / header
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)

    def _xcrun(self, args):
        if args[0] == "--sdk" and args[2] == "--show-sdk-version":
            return "99.0\n"
        if args[0] == "--sdk" and args[2] == "--show-sdk-path":
            return f"/sdks/{args[1]}.sdk\n"
        if args[0] == "--sdk" and args[2] == "clang":
            arch = self._arch(args)
            minos = self.min_versions.get(arch, "11.0")
            output = args[args.index("-o") + 1]
            Path(output).write_text(f"      cmd LC_BUILD_VERSION\n    minos {minos}\n      sdk 14.0\n")
            return ""
        if args[0] == "lipo":
            return self._concatenate(args[2:args.index("-output")], args[-1])
        if args[0] == "libtool":
            output_index = args.index("-o") + 1
            return self._concatenate(args[output_index + 1:], args[output_index])
        if args[0] == "otool":
            lines = Path(args[-1]).read_text().splitlines(keepends=True)
            if args[1:3] == ["-arch", "all"]:
                return "".join(lines)
            return "".join(lines[:3])
        if args[0] == "xcodebuild":
            output = Path(args[args.index("-output") + 1])
            output.mkdir(parents=True)
            inputs = [a for i, a in enumerate(args) if i > 0 and args[i - 1] in ("-library", "-framework")]
            with open(output / "Info.plist", "wb") as f:
                plistlib.dump({"CFBundlePackageType": "XFWK", "Inputs": [Path(i).parent.name for i in inputs]}, f)
            return ""
        raise AssertionError(f"Unexpected xcrun command {args}")

    @staticmethod
    def _concatenate(inputs, output):
        with open(output, "w") as out:
            for path in inputs:
                out.write(Path(path).read_text())
        return ""


def write_openssl_xcframework(path):
    libraries = [
        ("macos-arm64_x86_64", "macos", None, ["arm64", "x86_64"]),
        ("ios-arm64", "ios", None, ["arm64"]),
        ("ios-arm64_x86_64-simulator", "ios", "simulator", ["arm64", "x86_64"]),
        ("ios-arm64_x86_64-maccatalyst", "ios", "maccatalyst", ["arm64", "x86_64"]),
    ]
    info = {"CFBundlePackageType": "XFWK", "XCFrameworkFormatVersion": "1.0", "AvailableLibraries": []}
    for identifier, platform, variant, archs in libraries:
        entry = {
            "LibraryIdentifier": identifier,
            "LibraryPath": "OpenSSL.framework",
            "SupportedArchitectures": archs,
            "SupportedPlatform": platform,
        }
        if variant:
            entry["SupportedPlatformVariant"] = variant
        info["AvailableLibraries"].append(entry)
        (path / identifier / "OpenSSL.framework" / "Headers").mkdir(parents=True)
    with open(path / "Info.plist", "wb") as f:
        plistlib.dump(info, f)


def write_openldap_tarball(path):
    source = path.parent / "openldap-src" / "openldap-2.5.5"
    source.mkdir(parents=True)
    (source / "configure").write_text("#!/bin/sh\n")
    with tarfile.open(path, "w:gz") as tar:
        tar.add(source, arcname="openldap-2.5.5")


def snapshot(root):
    """Content of all the files (and symlinks) under root."""
    result = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            path = os.path.join(dirpath, name)
            if os.path.islink(path):
                result[os.path.relpath(path, root)] = ("link", os.readlink(path))
            elif os.path.isfile(path):
                with open(path, "rb") as f:
                    result[os.path.relpath(path, root)] = ("file", f.read())
    return result


class PipelineTestCase(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.root = Path(self.tmpdir.name)
        self.openssl = self.root / "OpenSSL.xcframework"
        write_openssl_xcframework(self.openssl)
        write_openldap_tarball(self.root / "downloads" / "openldap-2.5.5.tgz")

    def config(self, targets, **kwargs):
        values = dict(
            openssl_xcframework_url=str(self.openssl),
            openldap_base_url=str(self.root / "downloads" / "openldap-{{ version }}.tgz"),
            openldap_version="2.5.5",
            workdir=str(self.root / "work"),
            resultdir=str(self.root / "result"),
            targets=[Target.parse(t) for t in targets],
            macos_sdk_version="14.0",
            macos_min_sdk_version="11.0",
            ios_sdk_version="17.0",
            ios_min_sdk_version="12.0",
            skip_existing_artifacts=True,
            jobs=2,
        )
        values.update(kwargs)
        return BuildConfig(**values)

    def build(self, config, toolchain):
        ctx = BuildContext(skip_existing_artifacts=config.skip_existing_artifacts, runner=toolchain)
        out = io.StringIO()
        with redirect_stdout(out):
            manifest = build_all(config, ctx)
        return manifest, out.getvalue()


class TestBuildAll(PipelineTestCase):
    """Test the full build."""

    TARGETS = ["macOS-macOS-arm64", "macOS-macOS-x86_64", "iOS-iOS-arm64"]

    def test_full_build(self):
        """Test the outputs of a full build."""
        toolchain = FakeToolchain(min_versions={"x86_64": "10.13"})
        manifest, _ = self.build(self.config(self.TARGETS), toolchain)
        work = self.root / "work"
        result = self.root / "result"

        self.assertEqual(manifest, result / "Package.swift")
        for name in [
            "COpenLDAP-static.xcframework",
            "COpenLDAP-dynamic.xcframework",
            "COpenLDAP-static.xcframework.zip",
            "COpenLDAP-dynamic.xcframework.zip",
        ]:
            self.assertTrue((result / name).exists(), name)
        package = manifest.read_text()
        self.assertIn('.binaryTarget(name: "COpenLDAP-static", path: "COpenLDAP-static.xcframework.zip")', package)
        self.assertIn('.binaryTarget(name: "COpenLDAP-dynamic", path: "COpenLDAP-dynamic.xcframework.zip")', package)

        # Each target is configured and installed once, in order
        configure_calls = [c for c in toolchain.calls if c[0].endswith("configure")]
        self.assertEqual([c[1] for c in configure_calls], [
            "--host=aarch64-apple-darwin", "--host=x86_64-apple-darwin", "--host=aarch64-apple-darwin",
        ])

        # Libs: lipo per lib, then libtool
        merged = work / "step6.merged-fat-static-libs" / "macOS-macOS" / "libCOpenLDAP.a"
        self.assertEqual(merged.read_text(), "".join([
            "arm64 lib/liblber.a\n", "x86_64 lib/liblber.a\n",
            "arm64 lib/libldap.a\n", "x86_64 lib/libldap.a\n",
        ]))
        lipo_calls = [c for c in toolchain.calls if c[1] == "lipo"]
        self.assertEqual(len(lipo_calls), 2 * 2 + 2)

        # Headers
        dynamic_ldif = (work / "step4.merged-dynamic-headers" / "macOS-macOS" / "ldif.h").read_text()
        self.assertIn("#include <COpenLDAP/ldap_cdefs.h>\n#include <stdio.h>\n", dynamic_ldif)
        static_headers = work / "step7.final-static-libs-and-headers" / "macOS-macOS" / "include"
        static_ldif = (static_headers / "COpenLDAP" / "ldif.h").read_text()
        self.assertNotIn("stdio.h", static_ldif)
        self.assertIn("#include <COpenLDAP/lber.h>", (static_headers / "COpenLDAP" / "ldap.h").read_text())
        self.assertIn('umbrella header "COpenLDAP/COpenLDAP.h"', (static_headers / "module.modulemap").read_text())
        self.assertIn("#include <COpenLDAP/ldif.h>", (static_headers / "COpenLDAP" / "COpenLDAP.h").read_text())

        # macOS framework: versioned layout, min OS is the min of the slices
        framework = work / "step7.final-frameworks" / "macOS-macOS" / "COpenLDAP.framework"
        self.assertEqual(os.readlink(framework / "Versions" / "Current"), "A")
        self.assertEqual(os.readlink(framework / "COpenLDAP"), "Versions/Current/COpenLDAP")
        with open(framework / "Versions" / "A" / "Resources" / "Info.plist", "rb") as f:
            info = plistlib.load(f)
        self.assertEqual(info["LSMinimumSystemVersion"], "10.13")
        self.assertEqual(info["CFBundleExecutable"], "COpenLDAP")
        self.assertEqual(info["CFBundleShortVersionString"], "2.5.5")
        self.assertIn(
            "#import <COpenLDAP/ldap.h>",
            (framework / "Versions" / "A" / "Headers" / "COpenLDAP.h").read_text(),
        )
        self.assertTrue((framework / "Versions" / "A" / "Modules" / "module.modulemap").is_file())

        # iOS framework: flat layout
        ios_framework = work / "step7.final-frameworks" / "iOS-iOS" / "COpenLDAP.framework"
        with open(ios_framework / "Info.plist", "rb") as f:
            self.assertEqual(plistlib.load(f)["MinimumOSVersion"], "11.0")
        self.assertFalse((ios_framework / "Versions").exists())

        # XCFrameworks get one input per platform/sdk, in order of first appearance
        with open(result / "COpenLDAP-dynamic.xcframework" / "Info.plist", "rb") as f:
            self.assertEqual(plistlib.load(f)["Inputs"], ["macOS-macOS", "iOS-iOS"])

    def test_second_run_is_a_no_op(self):
        """Test a second run with the same inputs runs no command and changes nothing."""
        config = self.config(self.TARGETS)
        self.build(config, FakeToolchain())
        before = snapshot(self.root)

        toolchain = FakeToolchain()
        _, output = self.build(config, toolchain)
        self.assertEqual(toolchain.calls, [])
        self.assertEqual(snapshot(self.root), before)
        self.assertIn("Skipping build of macOS-macOS-arm64", output)

    def test_second_run_without_sdk_versions(self):
        """Test a second run without explicit sdk versions only queries the installed sdks."""
        config = self.config(self.TARGETS, macos_sdk_version=None, ios_sdk_version=None)
        self.build(config, FakeToolchain())
        before = snapshot(self.root)

        toolchain = FakeToolchain()
        self.build(config, toolchain)
        self.assertEqual(toolchain.calls, [
            [XCRUN, "--sdk", "macosx", "--show-sdk-version"],
            [XCRUN, "--sdk", "macosx", "--show-sdk-version"],
            [XCRUN, "--sdk", "iphoneos", "--show-sdk-version"],
        ])
        self.assertEqual(snapshot(self.root), before)

    def test_dylib_link(self):
        """Test the per-target dylib is linked from all the static libs."""
        toolchain = FakeToolchain()
        self.build(self.config(["iOS-iOS-arm64"], disable_bitcode=False), toolchain)
        clang = [c for c in toolchain.calls if "clang" in c][0]
        self.assertIn("-dynamiclib", clang)
        self.assertIn("@rpath/COpenLDAP.framework/COpenLDAP", clang)
        self.assertIn("-fembed-bitcode", clang)
        self.assertEqual(clang[clang.index("-target") + 1], "arm64-apple-ios12.0")
        self.assertEqual(clang[clang.index("-current_version") + 1], "2.5.5")
        self.assertEqual(clang[clang.index("-framework") + 1], "OpenSSL")
        all_load = clang.index("-Wl,-all_load")
        self.assertTrue(clang[all_load + 1].endswith("lib/liblber.a"))
        self.assertTrue(clang[all_load + 2].endswith("lib/libldap.a"))

    def test_mac_catalyst_build(self):
        """Test Mac Catalyst compiles and links against the macOS sdk with a macabi target."""
        toolchain = FakeToolchain(min_versions={"x86_64": "13.1"})
        targets = ["iOS-macOS-arm64", "iOS-macOS-x86_64"]
        self.build(self.config(targets, catalyst_sdk_version="14.0", catalyst_min_sdk_version="14.0"), toolchain)

        sdk_path_queries = [c[2] for c in toolchain.calls if c[0] == XCRUN and c[3] == "--show-sdk-path"]
        self.assertEqual(sdk_path_queries, ["macosx"] * 4)
        for env in toolchain.configure_envs:
            self.assertEqual(env["CC"], f"{XCRUN} --sdk macosx clang")
            self.assertIn("-isysroot /sdks/macosx.sdk", env["CFLAGS"])
            self.assertNotIn("-fembed-bitcode", env["CFLAGS"])
        self.assertIn("-target arm64-apple-ios14.0-macabi", toolchain.configure_envs[0]["CFLAGS"])

        clang = [c for c in toolchain.calls if c[0] == XCRUN and c[3] == "clang"][0]
        self.assertEqual(clang[2], "macosx")
        self.assertEqual(clang[clang.index("-target") + 1], "arm64-apple-ios14.0-macabi")
        self.assertEqual(clang[clang.index("-isysroot") + 1], "/sdks/macosx.sdk")
        self.assertNotIn("-fembed-bitcode", clang)

        framework = self.root / "work" / "step7.final-frameworks" / "iOS-macOS" / "COpenLDAP.framework"
        with open(framework / "Versions" / "A" / "Resources" / "Info.plist", "rb") as f:
            self.assertEqual(plistlib.load(f)["LSMinimumSystemVersion"], "11.0")
        with open(self.root / "result" / "COpenLDAP-dynamic.xcframework" / "Info.plist", "rb") as f:
            self.assertEqual(plistlib.load(f)["Inputs"], ["iOS-macOS"])

    def test_unsupported_target(self):
        """Test a target missing from the OpenSSL XCFramework stops the build."""
        toolchain = FakeToolchain()
        with self.assertRaises(UnsupportedTargetError) as cm:
            self.build(self.config(["macOS-macOS-arm64", "tvOS-tvOS-arm64"]), toolchain)
        self.assertEqual(cm.exception.target, Target.parse("tvOS-tvOS-arm64"))

    def test_incompatible_headers(self):
        """Test archs of one platform/sdk with different headers stop the build."""
        toolchain = FakeToolchain(extra_headers={"x86_64": ["include/extra.h"]})
        with self.assertRaises(IncompatibleHeadersError) as cm:
            self.build(self.config(["macOS-macOS-arm64", "macOS-macOS-x86_64"]), toolchain)
        self.assertEqual(cm.exception.current_target, Target.parse("macOS-macOS-x86_64"))
        self.assertIn("include/extra.h", cm.exception.current_list)
        self.assertNotIn("include/extra.h", cm.exception.ref_list)
        self.assertFalse(any(c[1] == "lipo" for c in toolchain.calls if c[0] == XCRUN))

    def test_toolchain_failure(self):
        """Test a failing command stops the build."""
        from xcldap.errors import ToolchainError

        toolchain = Mock(side_effect=ToolchainError(["make"], 2, "error: boom"))
        with self.assertRaises(ToolchainError):
            self.build(self.config(["macOS-macOS-arm64"]), toolchain)


class TestPipelineSteps(unittest.TestCase):
    """Test the pipeline helpers."""

    def test_consistency_ok(self):
        """Test identical lists pass."""
        targets = [Target.parse("iOS-macOS-arm64"), Target.parse("iOS-macOS-x86_64")]
        built = {t: BuiltTarget(t, "/install", ["lib/libldap.a"], ["include/ldap.h"]) for t in targets}
        check_targets_consistency(targets, built)

    def test_consistency_libs(self):
        """Test a lib difference names both targets and lists."""
        a, b = Target.parse("iOS-macOS-arm64"), Target.parse("iOS-macOS-x86_64")
        built = {
            a: BuiltTarget(a, "/install", ["lib/liblber.a", "lib/libldap.a"], ["include/ldap.h"]),
            b: BuiltTarget(b, "/install", ["lib/libldap.a", "lib/liblber.a"], ["include/ldap.h"]),
        }
        with self.assertRaises(IncompatibleLibsError) as cm:
            check_targets_consistency([a, b], built)
        self.assertEqual(cm.exception.ref_target, a)
        self.assertEqual(cm.exception.current_target, b)
        self.assertEqual(cm.exception.context["current_libs"], ["lib/libldap.a", "lib/liblber.a"])
        self.assertIn("iOS-macOS-x86_64", str(cm.exception))

    def test_group_order(self):
        """Test groups keep the order of first appearance."""
        targets = [Target.parse(t) for t in ["iOS-iOS-arm64", "macOS-macOS-arm64", "iOS-iOS-arm64e"]]
        groups = group_targets_by_platform_and_sdk(targets)
        self.assertEqual([str(k) for k in groups], ["iOS-iOS", "macOS-macOS"])
        self.assertEqual([t.arch for t in groups[targets[0].platform_and_sdk]], ["arm64", "arm64e"])

    def test_sdk_versions(self):
        """Test the sdk versions of each kind of target."""
        runner = Mock(side_effect=lambda executable, args, cwd=None, env=None: {"macosx": "14.2\n", "iphoneos": "17.2\n"}[args[1]])
        ctx = BuildContext(runner=runner)
        self.assertEqual(resolve_sdk_versions(Target.parse("iOS-macOS-arm64"), {}, ctx), ("14.2", "17.2"))
        self.assertEqual(
            resolve_sdk_versions(Target.parse("iOS-macOS-arm64"), {"catalyst_min_sdk_version": "14.0"}, ctx),
            ("14.2", "14.0"),
        )
        self.assertEqual(
            resolve_sdk_versions(Target.parse("iOS-iOS_Simulator-arm64"), {"ios_min_sdk_version": "12.0"}, ctx),
            ("17.2", "12.0"),
        )
        runner.reset_mock()
        self.assertEqual(
            resolve_sdk_versions(Target.parse("macOS-macOS-arm64"), {"macos_sdk_version": "13.0"}, ctx),
            ("13.0", None),
        )
        runner.assert_not_called()

    def test_unknown_sdk(self):
        """Test an unknown sdk gets default versions and a warning."""
        out = io.StringIO()
        with redirect_stdout(out):
            versions = resolve_sdk_versions(Target.parse("xrOS-xrOS-arm64"), {}, BuildContext(runner=Mock()))
        self.assertEqual(versions, ("1.0", None))
        self.assertIn("WARNING: Unknown target sdk/platform tuple xrOS/xrOS", out.getvalue())


if __name__ == "__main__":
    unittest.main()
