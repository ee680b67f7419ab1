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
Layout of the work and result directories.

Work dir layout (one folder per step, one sub-folder per target or per
platform/sdk tuple):

    <workdir>/
        step1.builds/<target>/                     extracted sources, configure & make
        step2.installs/<target>/                   make install DESTDIR
        step3.dylibs/<target>/lib<product>.dylib
        step4.merged-static-headers/<sdk-platform>/
        step4.merged-dynamic-headers/<sdk-platform>/
        step5.fat-static-libs/<sdk-platform>/lib/...
        step6.merged-fat-static-libs/<sdk-platform>/lib<product>.a
        step6.merged-fat-dynamic-libs/<sdk-platform>/lib<product>.dylib
        step7.final-static-libs-and-headers/<sdk-platform>/
        step7.final-frameworks/<sdk-platform>/<product>.framework

Result dir:

    <resultdir>/<product>-static.xcframework
    <resultdir>/<product>-dynamic.xcframework
    <resultdir>/<product>-static.xcframework.zip
    <resultdir>/<product>-dynamic.xcframework.zip
    <resultdir>/Package.swift
"""

from pathlib import Path
from xcldap.build_scripts.build_utils import ensure_directory, ensure_directory_deleted, ensure_file_deleted
from xcldap.model.target import PlatformAndSdk, Target

DEFAULT_PRODUCT_NAME = "COpenLDAP"
PACKAGE_MANIFEST_NAME = "Package.swift"


class BuildPaths:
    def __init__(
        self,
        files_path,
        workdir,
        resultdir=None,
        product_name: str = DEFAULT_PRODUCT_NAME,
    ):
        self.files_dir = Path(files_path)
        self.work_dir = Path(workdir)
        self.result_dir = Path(resultdir) if resultdir else self.work_dir
        self.product_name = product_name

        self.templates_dir = self.files_dir / "templates"

        self.builds_dir = self.work_dir / "step1.builds"
        self.installs_dir = self.work_dir / "step2.installs"
        self.dylibs_root_dir = self.work_dir / "step3.dylibs"
        self.merged_static_headers_dir = self.work_dir / "step4.merged-static-headers"
        self.merged_dynamic_headers_dir = self.work_dir / "step4.merged-dynamic-headers"
        self.fat_static_dir = self.work_dir / "step5.fat-static-libs"
        self.merged_fat_static_libs_dir = self.work_dir / "step6.merged-fat-static-libs"
        self.merged_fat_dynamic_libs_dir = self.work_dir / "step6.merged-fat-dynamic-libs"
        self.final_static_libs_and_headers_dir = self.work_dir / "step7.final-static-libs-and-headers"
        self.final_frameworks_dir = self.work_dir / "step7.final-frameworks"

        self.result_xcframework_static = self.result_dir / f"{product_name}-static.xcframework"
        self.result_xcframework_dynamic = self.result_dir / f"{product_name}-dynamic.xcframework"
        self.result_package_manifest = self.result_dir / PACKAGE_MANIFEST_NAME

    @property
    def static_lib_product_name(self) -> str:
        return f"lib{self.product_name}.a"

    @property
    def dylib_product_name(self) -> str:
        return f"lib{self.product_name}.dylib"

    @property
    def framework_product_name(self) -> str:
        return f"{self.product_name}.framework"

    def build_dir(self, target: Target) -> Path:
        return self.builds_dir / target.path_component

    def install_dir(self, target: Target) -> Path:
        return self.installs_dir / target.path_component

    def dylibs_dir(self, target: Target) -> Path:
        return self.dylibs_root_dir / target.path_component

    def dylib(self, target: Target) -> Path:
        return self.dylibs_dir(target) / self.dylib_product_name

    def merged_static_headers(self, platform_and_sdk: PlatformAndSdk) -> Path:
        return self.merged_static_headers_dir / platform_and_sdk.path_component

    def merged_dynamic_headers(self, platform_and_sdk: PlatformAndSdk) -> Path:
        return self.merged_dynamic_headers_dir / platform_and_sdk.path_component

    def fat_static_libs(self, platform_and_sdk: PlatformAndSdk) -> Path:
        return self.fat_static_dir / platform_and_sdk.path_component

    def merged_fat_static_lib(self, platform_and_sdk: PlatformAndSdk) -> Path:
        return self.merged_fat_static_libs_dir / platform_and_sdk.path_component / self.static_lib_product_name

    def merged_fat_dynamic_lib(self, platform_and_sdk: PlatformAndSdk) -> Path:
        return self.merged_fat_dynamic_libs_dir / platform_and_sdk.path_component / self.dylib_product_name

    def final_static_lib(self, platform_and_sdk: PlatformAndSdk) -> Path:
        return self.final_static_libs_and_headers_dir / platform_and_sdk.path_component / self.static_lib_product_name

    def final_static_headers(self, platform_and_sdk: PlatformAndSdk) -> Path:
        return self.final_static_libs_and_headers_dir / platform_and_sdk.path_component / "include"

    def final_framework(self, platform_and_sdk: PlatformAndSdk) -> Path:
        return self.final_frameworks_dir / platform_and_sdk.path_component / self.framework_product_name

    def result_xcframework_archive(self, xcframework: Path) -> Path:
        return xcframework.parent / f"{xcframework.name}.zip"

    def clean(self):
        """Remove everything a previous build created (downloads are kept)."""
        for path in [
            self.builds_dir,
            self.installs_dir,
            self.dylibs_root_dir,
            self.merged_static_headers_dir,
            self.merged_dynamic_headers_dir,
            self.fat_static_dir,
            self.merged_fat_static_libs_dir,
            self.merged_fat_dynamic_libs_dir,
            self.final_static_libs_and_headers_dir,
            self.final_frameworks_dir,
            self.result_xcframework_static,
            self.result_xcframework_dynamic,
        ]:
            ensure_directory_deleted(path)
        for path in [
            self.result_xcframework_archive(self.result_xcframework_static),
            self.result_xcframework_archive(self.result_xcframework_dynamic),
            self.result_package_manifest,
        ]:
            ensure_file_deleted(path)

    def ensure_all_directories_exist(self):
        for path in [self.work_dir, self.result_dir, self.builds_dir, self.installs_dir, self.dylibs_root_dir]:
            ensure_directory(path)
        if not self.templates_dir.is_dir():
            print(f"WARNING: Templates directory {self.templates_dir} does not exist")

    @staticmethod
    def default_files_path() -> Path:
        return Path(__file__).resolve().parent.parent / "files"
