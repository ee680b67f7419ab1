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
Frameworks, XCFrameworks and the Swift package.

A dynamic framework is a bundle directory containing:
- The dynamic library, named after the framework
- Headers/ with the public headers and the umbrella header
- Modules/module.modulemap
- Info.plist (in Resources/ for macOS)

macOS frameworks use the versioned layout (Versions/A, Versions/Current and
top-level symlinks), other platforms use the flat layout.
"""

import os
import shutil
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from xcldap.build_scripts.build_utils import (
    MultipleSdkVersionsResolution,
    copy_file,
    ensure_directory,
    ensure_directory_deleted,
    ensure_file_deleted,
    get_sdk_versions,
    make_xcframework,
    render_template_dir,
    render_template_file,
)
from xcldap.model.target import platform_legacy_name
from xcldap.utils.download.download_util import calculate_checksum

# Fixed timestamp for the zip entries, the archives only depend on their content
ZIP_DATE_TIME = (1980, 1, 1, 0, 0, 0)


@dataclass
class FrameworkInfo:
    platform: str
    executable: str
    identifier: str
    name: str
    marketing_version: str
    build_version: str
    # None: computed from the framework binary
    minimum_os_version: Optional[str] = None


class UnbuiltFramework:
    def __init__(
        self,
        version: Optional[str],
        info: FrameworkInfo,
        lib_path,
        headers: List[Tuple[Path, str]],
        modules_template_dir,
    ):
        """
        Args:
            version: Version folder name for the versioned layout (e.g. "A"),
                None for the flat layout
            info: Values of the Info.plist
            lib_path: The dynamic library
            headers: (root, relative path) pairs, copied in Headers/ at
                their relative path
            modules_template_dir: Template dir rendered with copier in the
                framework (Info.plist and Modules/)
        """
        self.version = version
        self.info = info
        self.lib_path = Path(lib_path)
        self.headers = [(Path(root), rel) for root, rel in headers]
        self.modules_template_dir = Path(modules_template_dir)

    def minimum_os_version(self, ctx) -> Optional[str]:
        """
        The minimum OS version to declare in the Info.plist.

        A FAT lib may contain slices built for different minimum versions
        (e.g. arm64e cannot target iOS < 14.0 while arm64 can). The smallest
        one is used: the framework does load on these older OSes, using the
        slices that support them.
        """
        if self.info.minimum_os_version is not None:
            return self.info.minimum_os_version
        versions = get_sdk_versions(ctx, [self.lib_path], MultipleSdkVersionsResolution.RETURN_MIN)
        return versions.min_sdk

    def build_framework(self, dest, ctx) -> Path:
        dest = Path(dest)
        if ctx.should_skip(dest):
            return dest

        minimum_os_version = self.minimum_os_version(ctx)
        ensure_directory_deleted(dest)
        if self.version is not None:
            content_dir = dest / "Versions" / self.version
        else:
            content_dir = dest
        ensure_directory(content_dir)

        is_macos = self.info.platform == "macOS"
        render_template_dir(
            self.modules_template_dir,
            content_dir,
            product_name=self.info.name,
            bundle_identifier=self.info.identifier,
            executable=self.info.executable,
            marketing_version=self.info.marketing_version,
            build_version=self.info.build_version,
            supported_platform=platform_legacy_name(self.info.platform),
            minimum_os_version=minimum_os_version or "",
            is_macos=is_macos,
        )
        if self.version is not None:
            # Versioned bundles keep their Info.plist in Resources
            ensure_directory(content_dir / "Resources")
            os.replace(content_dir / "Info.plist", content_dir / "Resources" / "Info.plist")

        shutil.copy2(self.lib_path, content_dir / self.info.executable)
        for root, relative_path in self.headers:
            copy_file(root / relative_path, content_dir / "Headers" / relative_path)

        if self.version is not None:
            os.symlink(self.version, dest / "Versions" / "Current")
            for name in sorted(os.listdir(content_dir)):
                os.symlink(os.path.join("Versions", "Current", name), dest / name)
        return dest


class UnbuiltStaticXCFramework:
    def __init__(self, libraries_and_headers_dirs: List[Tuple[Path, Path]]):
        self.libraries_and_headers_dirs = [(Path(lib), Path(headers)) for lib, headers in libraries_and_headers_dirs]

    def build_xcframework(self, dest, ctx) -> Path:
        dest = Path(dest)
        if ctx.should_skip(dest):
            return dest
        # xcodebuild refuses to overwrite an existing XCFramework
        ensure_directory_deleted(dest)
        make_xcframework(ctx, dest, libraries_and_headers=self.libraries_and_headers_dirs)
        return dest


class UnbuiltDynamicXCFramework:
    def __init__(self, frameworks: List[Path]):
        self.frameworks = [Path(f) for f in frameworks]

    def build_xcframework(self, dest, ctx) -> Path:
        dest = Path(dest)
        if ctx.should_skip(dest):
            return dest
        ensure_directory_deleted(dest)
        make_xcframework(ctx, dest, frameworks=self.frameworks)
        return dest


def zip_directory(src_dir, dst_zip):
    """
    Zip a directory (the directory itself is the root entry of the archive).

    Symlinks are stored as symlinks and all entries get the same timestamp so
    zipping the same tree twice gives the same archive.
    """
    src_dir = Path(src_dir)
    base = src_dir.parent
    entries = [src_dir]
    for root, dirs, files in os.walk(src_dir):
        dirs.sort()
        for name in sorted(dirs + files):
            entries.append(Path(root) / name)
    entries.sort(key=lambda p: p.relative_to(base).as_posix())

    ensure_directory(Path(dst_zip).parent)
    with zipfile.ZipFile(dst_zip, "w", zipfile.ZIP_DEFLATED) as zipf:
        for path in entries:
            arcname = path.relative_to(base).as_posix()
            if path.is_symlink():
                info = zipfile.ZipInfo(arcname, ZIP_DATE_TIME)
                info.create_system = 3
                info.external_attr = (0o120755 << 16)
                zipf.writestr(info, os.readlink(path))
            elif path.is_dir():
                info = zipfile.ZipInfo(arcname + "/", ZIP_DATE_TIME)
                info.create_system = 3
                info.external_attr = (0o40755 << 16) | 0x10
                zipf.writestr(info, b"")
            else:
                info = zipfile.ZipInfo(arcname, ZIP_DATE_TIME)
                info.create_system = 3
                info.external_attr = ((0o100000 | (path.stat().st_mode & 0o777)) << 16)
                info.compress_type = zipfile.ZIP_DEFLATED
                with open(path, "rb") as f:
                    zipf.writestr(info, f.read())
    return Path(dst_zip)


class UnbuiltXCFrameworkPackage:
    """
    The final deliverable: both XCFrameworks zipped, and a Package.swift
    declaring one binary target per XCFramework.
    """

    def __init__(self, build_paths, openldap_version: str, base_url: Optional[str] = None):
        """
        Args:
            base_url: URL the zips will be uploaded to. When set, the binary
                targets use url + checksum, otherwise a local path.
        """
        self.build_paths = build_paths
        self.openldap_version = openldap_version
        self.base_url = base_url.rstrip("/") if base_url else None

    def _zip(self, xcframework: Path, ctx) -> Path:
        dest = self.build_paths.result_xcframework_archive(xcframework)
        if ctx.should_skip(dest):
            return dest
        ensure_file_deleted(dest)
        zip_directory(xcframework, dest)
        return dest

    def binary_targets(self, ctx):
        targets = []
        for suffix, xcframework in (
            ("static", self.build_paths.result_xcframework_static),
            ("dynamic", self.build_paths.result_xcframework_dynamic),
        ):
            archive = self._zip(xcframework, ctx)
            target = {
                "name": f"{self.build_paths.product_name}-{suffix}",
                "url": None,
                "checksum": None,
                "path": None,
            }
            if self.base_url:
                target["url"] = f"{self.base_url}/{archive.name}"
                target["checksum"] = calculate_checksum(archive)
            else:
                target["path"] = os.path.relpath(archive, self.build_paths.result_package_manifest.parent)
            targets.append(target)
        return targets

    def build_xcframework_package(self, ctx) -> Path:
        dest = self.build_paths.result_package_manifest
        binary_targets = self.binary_targets(ctx)
        if ctx.should_skip(dest):
            return dest
        ensure_file_deleted(dest)
        render_template_file(
            self.build_paths.templates_dir / "Package.swift.jinja",
            dest,
            product_name=self.build_paths.product_name,
            openldap_version=self.openldap_version,
            binary_targets=binary_targets,
        )
        return dest
