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
The whole build: per-target builds, per platform/sdk merges, then the
XCFrameworks and the Swift package.

Build steps:
1. Download the OpenSSL XCFramework and the OpenLDAP tarball
2. For each target: build OpenLDAP, then link a dylib from the static libs
3. For each platform/sdk tuple (in order of first appearance in the targets):
   - check all the targets produced the same headers and libs
   - patch and merge the headers (dynamic and static variants)
   - lipo each static lib, then merge them with libtool
   - lipo the dylibs and create the framework
4. Create the static and dynamic XCFrameworks
5. Zip them and write Package.swift
"""

import time
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

from xcldap.build_scripts.build_framework import (
    FrameworkInfo,
    UnbuiltDynamicXCFramework,
    UnbuiltFramework,
    UnbuiltStaticXCFramework,
    UnbuiltXCFrameworkPackage,
)
from xcldap.build_scripts.build_headers import (
    UnbuiltUmbrellaHeader,
    dynamic_header_patches,
    merge_headers,
    static_header_patches,
    umbrella_header_name,
)
from xcldap.build_scripts.build_libs import UnbuiltFATLib, UnbuiltMergedStaticLib
from xcldap.build_scripts.build_target import BuiltTarget, UnbuiltTarget
from xcldap.build_scripts.build_utils import (
    copy_file,
    ensure_directory,
    ensure_directory_deleted,
    ensure_file_deleted,
    get_sdk_version,
    render_template_file,
)
from xcldap.errors import IncompatibleHeadersError, IncompatibleLibsError, UnsupportedTargetError
from xcldap.model.build_paths import BuildPaths
from xcldap.model.target import PlatformAndSdk, Target
from xcldap.utils.download.tarball import Tarball
from xcldap.utils.download.xcframework_dependency import XCFrameworkDependencySource

FRAMEWORK_IDENTIFIER_PREFIX = "com.xcode-actions."
FRAMEWORK_BUILD_VERSION = "1"

# sdk -> (xcrun sdk name, config key prefix)
SDK_VERSION_SOURCES = {
    "macOS": ("macosx", "macos"),
    "iOS": ("iphoneos", "ios"),
    "tvOS": ("appletvos", "tvos"),
    "watchOS": ("watchos", "watchos"),
}


def resolve_sdk_versions(target: Target, overrides: Dict[str, Optional[str]], ctx) -> Tuple[str, Optional[str]]:
    """
    Get the (sdk version, min sdk version) to build the target with.

    Mac Catalyst uses the macOS sdk version and, by convention, the iOS sdk
    version as min sdk. Other targets use the version of their own sdk. The
    installed sdk is only queried when no override is given.

    Args:
        overrides: ``<prefix>_sdk_version`` and ``<prefix>_min_sdk_version``
            values, prefix being one of macos, ios, catalyst, tvos, watchos
    """
    if target.is_mac_catalyst:
        sdk_version = overrides.get("catalyst_sdk_version") or get_sdk_version(ctx, "macosx")
        min_sdk_version = overrides.get("catalyst_min_sdk_version") or get_sdk_version(ctx, "iphoneos")
        return sdk_version, min_sdk_version

    source = SDK_VERSION_SOURCES.get(target.sdk)
    if source is None:
        print(f"WARNING: Unknown target sdk/platform tuple {target.sdk}/{target.platform}")
        return "1.0", None
    xcrun_sdk, prefix = source
    sdk_version = overrides.get(f"{prefix}_sdk_version") or get_sdk_version(ctx, xcrun_sdk)
    return sdk_version, overrides.get(f"{prefix}_min_sdk_version")


def group_targets_by_platform_and_sdk(targets: List[Target]) -> "OrderedDict[PlatformAndSdk, List[Target]]":
    groups: "OrderedDict[PlatformAndSdk, List[Target]]" = OrderedDict()
    for target in targets:
        groups.setdefault(target.platform_and_sdk, []).append(target)
    return groups


def check_targets_consistency(targets: List[Target], built_targets: Dict[Target, BuiltTarget]):
    """
    Check all the targets of a platform/sdk tuple have the same headers and
    static libraries as the first one (same lists, in the same order).

    Raises:
        IncompatibleHeadersError: a target has different headers
        IncompatibleLibsError: a target has different static libraries
    """
    ref_target = targets[0]
    ref = built_targets[ref_target]
    for target in targets:
        current = built_targets[target]
        if current.headers != ref.headers:
            raise IncompatibleHeadersError(ref_target, ref.headers, target, current.headers)
        if current.static_libraries != ref.static_libraries:
            raise IncompatibleLibsError(ref_target, ref.static_libraries, target, current.static_libraries)


def build_static_module_map(build_paths: BuildPaths, platform_and_sdk: PlatformAndSdk, ctx):
    dest = build_paths.merged_static_headers(platform_and_sdk) / "module.modulemap"
    if ctx.should_skip(dest):
        return dest
    ensure_file_deleted(dest)
    render_template_file(
        build_paths.templates_dir / "static-lib" / "module.modulemap.jinja",
        dest,
        product_name=build_paths.product_name,
    )
    return dest


def install_static_lib_and_headers(build_paths: BuildPaths, platform_and_sdk: PlatformAndSdk, fat_static_lib, ctx):
    """Copy the merged static lib and its headers dir to the final folder."""
    library = build_paths.final_static_lib(platform_and_sdk)
    headers_dir = build_paths.final_static_headers(platform_and_sdk)
    if ctx.should_skip(library, headers_dir):
        return library, headers_dir
    ensure_file_deleted(library)
    ensure_directory_deleted(headers_dir)
    copy_file(fat_static_lib, library)
    copy_file(build_paths.merged_static_headers(platform_and_sdk), headers_dir)
    return library, headers_dir


class BuildPipeline:
    def __init__(self, config, ctx, build_paths: Optional[BuildPaths] = None):
        self.config = config
        self.ctx = ctx
        self.build_paths = build_paths or BuildPaths(
            files_path=config.files_path,
            workdir=config.workdir,
            resultdir=config.resultdir,
        )

    def prepare(self):
        if self.config.clean:
            print("Cleaning previous builds if applicable")
            self.build_paths.clean()
        self.build_paths.ensure_all_directories_exist()

        openssl_source = XCFrameworkDependencySource(
            self.config.openssl_xcframework_url,
            expected_shasum=self.config.expected_openssl_xcframework_shasum,
            skip_existing_artifacts=self.ctx.skip_existing_artifacts,
        )
        openssl_xcframework = openssl_source.download_and_extract(self.build_paths.work_dir)
        tarball = Tarball(
            self.config.openldap_base_url,
            self.config.openldap_version,
            self.build_paths.work_dir,
            expected_shasum=self.config.expected_tarball_shasum,
        )
        tarball.ensure_downloaded()
        return openssl_xcframework, tarball

    def build_targets(self, openssl_xcframework, tarball):
        """Build all the targets, one after the other, in the given order."""
        built_targets: Dict[Target, BuiltTarget] = {}
        dylibs = {}
        for target in self.config.targets:
            if target in built_targets:
                print(f"WARNING: Target {target} requested more than once")
                continue
            framework_path = openssl_xcframework.framework_path(target)
            if framework_path is None:
                raise UnsupportedTargetError(target, openssl_xcframework.path)
            sdk_version, min_sdk_version = resolve_sdk_versions(target, self.config.sdk_version_overrides, self.ctx)

            unbuilt_target = UnbuiltTarget(
                target=target,
                tarball=tarball,
                build_paths=self.build_paths,
                openssl_framework_name=openssl_xcframework.frameworks_name,
                openssl_framework_path=framework_path,
                sdk_version=sdk_version,
                min_sdk_version=min_sdk_version,
                openldap_version=self.config.openldap_version,
                disable_bitcode=self.config.disable_bitcode,
                jobs=self.config.jobs,
            )
            built_target = unbuilt_target.build_target(self.ctx)
            built_targets[target] = built_target
            dylibs[target] = built_target.build_dylib_from_static_libs(
                self.config.openldap_version, self.build_paths, self.ctx
            )
        return built_targets, dylibs

    def build_platform_and_sdk(self, platform_and_sdk: PlatformAndSdk, targets: List[Target], built_targets, dylibs):
        """
        Create the static lib + headers and the framework of a platform/sdk tuple.

        Returns:
            ((static lib, headers dir), framework path)
        """
        print(f"==================merge {platform_and_sdk} ({', '.join(t.arch for t in targets)})========================")
        paths = self.build_paths
        product_name = paths.product_name
        check_targets_consistency(targets, built_targets)
        built_target = built_targets[targets[0]]

        # Headers. The static headers are put in a product-named folder so the
        # namespaced includes resolve from the headers dir of the XCFramework.
        dynamic_headers_dir = paths.merged_dynamic_headers(platform_and_sdk)
        static_headers_dir = paths.merged_static_headers(platform_and_sdk) / product_name
        merged_headers = merge_headers(
            targets, built_target, paths, dynamic_headers_dir,
            dynamic_header_patches(product_name, built_target.headers), self.ctx,
        )
        merge_headers(
            targets, built_target, paths, static_headers_dir,
            static_header_patches(product_name, built_target.headers), self.ctx,
        )
        umbrella_header = umbrella_header_name(product_name)
        UnbuiltUmbrellaHeader(merged_headers, product_name, modular_imports=True).build_umbrella_header(
            dynamic_headers_dir / umbrella_header, self.ctx
        )
        UnbuiltUmbrellaHeader(merged_headers, product_name, modular_imports=False).build_umbrella_header(
            static_headers_dir / umbrella_header, self.ctx
        )

        # Static libs: lipo each lib first, then merge the FAT libs
        fat_static_libs = []
        for lib in built_target.static_libraries:
            dest = paths.fat_static_libs(platform_and_sdk) / lib
            UnbuiltFATLib([paths.install_dir(t) / lib for t in targets]).build_fat_lib(dest, self.ctx)
            fat_static_libs.append(dest)
        fat_static_lib = UnbuiltMergedStaticLib(fat_static_libs).build_merged_lib(
            paths.merged_fat_static_lib(platform_and_sdk), self.ctx
        )
        build_static_module_map(paths, platform_and_sdk, self.ctx)
        static_lib_and_headers = install_static_lib_and_headers(paths, platform_and_sdk, fat_static_lib, self.ctx)

        # Dynamic framework
        fat_dynamic_lib = UnbuiltFATLib([dylibs[t] for t in targets]).build_fat_lib(
            paths.merged_fat_dynamic_lib(platform_and_sdk), self.ctx
        )
        unbuilt_framework = UnbuiltFramework(
            version="A" if platform_and_sdk.platform == "macOS" else None,
            info=FrameworkInfo(
                platform=platform_and_sdk.platform,
                executable=product_name,
                identifier=FRAMEWORK_IDENTIFIER_PREFIX + product_name,
                name=product_name,
                marketing_version=BuiltTarget.normalized_openldap_version(self.config.openldap_version),
                build_version=FRAMEWORK_BUILD_VERSION,
            ),
            lib_path=fat_dynamic_lib,
            headers=[(dynamic_headers_dir, h) for h in merged_headers + [umbrella_header]],
            modules_template_dir=paths.templates_dir / "dynamic-lib",
        )
        framework = unbuilt_framework.build_framework(paths.final_framework(platform_and_sdk), self.ctx)
        return static_lib_and_headers, framework

    def run(self):
        before_time = time.time()
        openssl_xcframework, tarball = self.prepare()
        built_targets, dylibs = self.build_targets(openssl_xcframework, tarball)

        libraries_and_headers = []
        frameworks = []
        for platform_and_sdk, targets in group_targets_by_platform_and_sdk(list(built_targets)).items():
            static_lib_and_headers, framework = self.build_platform_and_sdk(
                platform_and_sdk, targets, built_targets, dylibs
            )
            libraries_and_headers.append(static_lib_and_headers)
            frameworks.append(framework)

        print("==================create xcframeworks and package========================")
        ensure_directory(self.build_paths.result_dir)
        UnbuiltStaticXCFramework(libraries_and_headers).build_xcframework(
            self.build_paths.result_xcframework_static, self.ctx
        )
        UnbuiltDynamicXCFramework(frameworks).build_xcframework(
            self.build_paths.result_xcframework_dynamic, self.ctx
        )
        package_manifest = UnbuiltXCFrameworkPackage(
            self.build_paths,
            self.config.openldap_version,
            base_url=self.config.package_base_url,
        ).build_xcframework_package(self.ctx)

        print(f"Package manifest: {package_manifest}")
        print(f"build all use time: {int(time.time() - before_time)} s")
        return package_manifest


def build_all(config, ctx, build_paths: Optional[BuildPaths] = None):
    return BuildPipeline(config, ctx, build_paths).run()
