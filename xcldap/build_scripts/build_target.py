#
# Copyright 2024 zhlinh and xcldap Project Authors. All rights reserved.
# Use of this source code is governed by a MIT-style
# license that can be found at
#
# https://opensource.org/license/MIT
#
# The above copyright notice and this permission
# notice shall be included in all copies or
# substantial portions of the Software.

"""
Build of OpenLDAP for one target.

The sources are configured and built with the autotools build system of
OpenLDAP, cross-compiling with the Xcode clang for the target. Only static
libraries are built; one dylib per target is then linked from them and the
per-target outputs are merged later on.

Requirements:
- Xcode with command line tools
- macOS development environment
"""

import json
import multiprocessing
import os
import re
import time
from pathlib import Path
from typing import List, Optional

from xcldap.build_scripts.build_utils import (
    XCRUN,
    ensure_directory,
    ensure_directory_deleted,
    ensure_file_deleted,
    get_sdk_path,
    xcrun_sdk_name,
)
from xcldap.errors import XcldapError
from xcldap.model.target import Target

BUILT_TARGET_MANIFEST = "built-target.json"

# Only the client libraries are built: no server, no SASL (libsasl2 is only
# available on macOS).
CONFIGURE_OPTIONS = [
    "--prefix=/",
    "--enable-static",
    "--disable-shared",
    "--disable-slapd",
    "--disable-debug",
    "--without-cyrus-sasl",
    "--with-tls=openssl",
    # configure cannot test this when cross-compiling
    "--with-yielding_select=yes",
]


class BuiltTarget:
    """
    Result of the build of one target.

    ``static_libraries`` and ``headers`` are relative to ``install_dir``
    (e.g. ``lib/libldap.a``, ``include/ldap.h``).
    """

    def __init__(
        self,
        target: Target,
        install_dir,
        static_libraries: List[str],
        headers: List[str],
        sdk_version: Optional[str] = None,
        min_sdk_version: Optional[str] = None,
        openssl_framework_name: Optional[str] = None,
        openssl_framework_path=None,
        disable_bitcode: bool = False,
    ):
        self.target = target
        self.install_dir = Path(install_dir)
        self.static_libraries = list(static_libraries)
        self.headers = list(headers)
        self.sdk_version = sdk_version
        self.min_sdk_version = min_sdk_version
        self.openssl_framework_name = openssl_framework_name
        self.openssl_framework_path = Path(openssl_framework_path) if openssl_framework_path else None
        self.disable_bitcode = disable_bitcode

    def __repr__(self) -> str:
        return f"BuiltTarget({self.target}, libs={self.static_libraries}, headers={len(self.headers)})"

    def static_library_paths(self) -> List[Path]:
        return [self.install_dir / lib for lib in self.static_libraries]

    def write_manifest(self):
        manifest = {
            "target": self.target.config_name,
            "static_libraries": self.static_libraries,
            "headers": self.headers,
        }
        with open(self.install_dir / BUILT_TARGET_MANIFEST, "w", encoding="utf-8") as f:
            json.dump(manifest, f, indent=2)
            f.write("\n")

    @staticmethod
    def read_manifest(install_dir):
        """Lists saved by a previous build, None if missing or incomplete."""
        manifest_path = Path(install_dir) / BUILT_TARGET_MANIFEST
        if not manifest_path.is_file():
            return None
        with open(manifest_path, "r", encoding="utf-8") as f:
            manifest = json.load(f)
        static_libraries = manifest.get("static_libraries", [])
        headers = manifest.get("headers", [])
        if not all((Path(install_dir) / p).exists() for p in static_libraries + headers):
            return None
        return static_libraries, headers

    @staticmethod
    def normalized_openldap_version(version: str) -> str:
        """
        Version usable as a Mach-O or bundle version: at most three numeric
        components, padded with zeros ("2.5" -> "2.5.0", "2.6.0beta" -> "2.6.0").
        """
        components = []
        for component in version.split("."):
            match = re.match(r"\d+", component)
            if not match:
                break
            components.append(str(int(match.group(0))))
            if match.end() != len(component) or len(components) == 3:
                break
        if not components:
            raise XcldapError(f"Cannot normalize OpenLDAP version {version}")
        while len(components) < 3:
            components.append("0")
        return ".".join(components)

    def build_dylib_from_static_libs(self, openldap_version: str, build_paths, ctx) -> Path:
        """
        Link all the static libs of the target in one dylib.

        The install name is the one of the final framework binary so the
        dylib can be used as is in the framework.
        """
        dest = build_paths.dylib(self.target)
        if ctx.should_skip(dest):
            return dest

        ensure_file_deleted(dest)
        ensure_directory(dest.parent)
        sdk = xcrun_sdk_for_target(self.target)
        sdk_path = get_sdk_path(ctx, sdk)
        version = self.normalized_openldap_version(openldap_version)
        args = [
            "--sdk", sdk, "clang",
            "-dynamiclib",
            "-target", self.target.clang_target(self.min_sdk_version),
            "-isysroot", sdk_path,
            "-install_name", f"@rpath/{build_paths.product_name}.framework/{build_paths.product_name}",
            "-compatibility_version", version,
            "-current_version", version,
            "-o", str(dest),
        ]
        if use_bitcode(self.target, self.disable_bitcode):
            args.append("-fembed-bitcode")
        args.append("-Wl,-all_load")
        args += [str(p) for p in self.static_library_paths()]
        if self.openssl_framework_path is not None:
            args += [
                "-F", str(self.openssl_framework_path.parent),
                "-framework", self.openssl_framework_name or self.openssl_framework_path.stem,
            ]
        args.append("-lresolv")
        ctx.run(XCRUN, args)
        return dest


def xcrun_sdk_for_target(target: Target) -> str:
    # Mac Catalyst compiles and links against the macOS sdk
    return xcrun_sdk_name(target.platform_legacy_name)


def use_bitcode(target: Target, disable_bitcode: bool) -> bool:
    # Bitcode is not supported on macOS (Catalyst included)
    return not disable_bitcode and target.platform != "macOS"


def collect_installed_files(install_dir):
    """
    Static libraries and headers installed in install_dir, as sorted
    install-dir-relative posix paths.
    """
    install_dir = Path(install_dir)
    static_libraries = sorted(
        p.relative_to(install_dir).as_posix()
        for p in (install_dir / "lib").glob("*.a")
        if p.is_file()
    )
    headers = sorted(
        p.relative_to(install_dir).as_posix()
        for p in (install_dir / "include").rglob("*.h")
        if p.is_file()
    )
    return static_libraries, headers


class UnbuiltTarget:
    def __init__(
        self,
        target: Target,
        tarball,
        build_paths,
        openssl_framework_name: str,
        openssl_framework_path,
        sdk_version: str,
        min_sdk_version: Optional[str],
        openldap_version: str,
        disable_bitcode: bool = False,
        jobs: Optional[int] = None,
    ):
        self.target = target
        self.tarball = tarball
        self.build_paths = build_paths
        self.openssl_framework_name = openssl_framework_name
        self.openssl_framework_path = Path(openssl_framework_path)
        self.sdk_version = sdk_version
        self.min_sdk_version = min_sdk_version
        self.openldap_version = openldap_version
        self.disable_bitcode = disable_bitcode
        self.jobs = jobs if jobs and jobs > 0 else multiprocessing.cpu_count()

    def _built_target(self, static_libraries, headers) -> BuiltTarget:
        return BuiltTarget(
            target=self.target,
            install_dir=self.build_paths.install_dir(self.target),
            static_libraries=static_libraries,
            headers=headers,
            sdk_version=self.sdk_version,
            min_sdk_version=self.min_sdk_version,
            openssl_framework_name=self.openssl_framework_name,
            openssl_framework_path=self.openssl_framework_path,
            disable_bitcode=self.disable_bitcode,
        )

    def configure_env(self, sdk_path: str):
        sdk = xcrun_sdk_for_target(self.target)
        cflags = [
            "-target", self.target.clang_target(self.min_sdk_version),
            "-isysroot", sdk_path,
            "-O2",
        ]
        if use_bitcode(self.target, self.disable_bitcode):
            cflags.append("-fembed-bitcode")
        framework_dir = str(self.openssl_framework_path.parent)
        return {
            "CC": f"{XCRUN} --sdk {sdk} clang",
            "CFLAGS": " ".join(cflags),
            "CPPFLAGS": f"-I{self.openssl_framework_path / 'Headers'}",
            "LDFLAGS": " ".join(cflags + [f"-F{framework_dir}"]),
            "LIBS": f"-framework {self.openssl_framework_name}",
        }

    def build_target(self, ctx) -> BuiltTarget:
        """
        Configure, build and install OpenLDAP for the target.

        When skip-existing is on and a previous build installed all its
        files, the build is skipped and the previous result is reused.

        Raises:
            ToolchainError: one of the build commands failed
        """
        install_dir = self.build_paths.install_dir(self.target)
        if ctx.skip_existing_artifacts:
            previous = BuiltTarget.read_manifest(install_dir)
            if previous is not None:
                print(f"Skipping build of {self.target} because {install_dir} already contains its outputs")
                return self._built_target(*previous)

        before_time = time.time()
        print(f"==================build {self.target} (sdk {self.sdk_version}, min sdk {self.min_sdk_version})========================")
        build_dir = self.build_paths.build_dir(self.target)
        ensure_directory_deleted(install_dir)
        ensure_directory(install_dir)
        source_dir = self.tarball.extract(build_dir)

        sdk_path = get_sdk_path(ctx, xcrun_sdk_for_target(self.target))
        env = self.configure_env(sdk_path)
        configure_args = [f"--host={self.target.host_for_configure}"] + CONFIGURE_OPTIONS
        ctx.run(os.path.join(str(source_dir), "configure"), configure_args, cwd=source_dir, env=env)
        ctx.run("make", ["depend"], cwd=source_dir, env=env)
        ctx.run("make", [f"-j{self.jobs}"], cwd=source_dir, env=env)
        ctx.run("make", ["install", f"DESTDIR={install_dir.resolve()}"], cwd=source_dir, env=env)

        static_libraries, headers = collect_installed_files(install_dir)
        if not static_libraries:
            raise XcldapError(f"No static libraries installed for target {self.target}", {"install_dir": install_dir})
        built_target = self._built_target(static_libraries, headers)
        built_target.write_manifest()
        print(f"build {self.target} use time: {int(time.time() - before_time)} s")
        return built_target
