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
Shared helpers for the build steps: filesystem primitives, Apple toolchain
wrappers (lipo, libtool, xcrun, otool, xcodebuild) and template rendering.

All toolchain wrappers go through ``BuildContext.run`` so that a failing
command raises ``ToolchainError`` and tests can replace the process runner.
"""

import os
import re
import shutil
from enum import Enum
from pathlib import Path
from typing import List, NamedTuple, Optional, Tuple

import jinja2
from copier import run_copy

from xcldap.errors import XcldapError

XCRUN = "/usr/bin/xcrun"

# Names of the sdks for xcrun, by sdk legacy name
XCRUN_SDK_NAMES = {
    "MacOSX": "macosx",
    "iPhoneOS": "iphoneos",
    "iPhoneSimulator": "iphonesimulator",
    "AppleTVOS": "appletvos",
    "AppleTVSimulator": "appletvsimulator",
    "WatchOS": "watchos",
    "WatchSimulator": "watchsimulator",
}


def ensure_directory(path):
    os.makedirs(path, exist_ok=True)


def ensure_file_deleted(path):
    if os.path.islink(path) or os.path.isfile(path):
        os.remove(path)
    elif os.path.isdir(path):
        raise XcldapError(f"Expected a file, found a directory at {path}")


def ensure_directory_deleted(path):
    if os.path.islink(path):
        os.remove(path)
    elif os.path.isdir(path):
        shutil.rmtree(path)
    elif os.path.exists(path):
        raise XcldapError(f"Expected a directory, found a file at {path}")


def copy_file(src, dst):
    """
    Copy a file or directory, creating destination directories as needed.

    Symlinks are copied as symlinks (frameworks rely on them).
    """
    ensure_directory(os.path.dirname(os.fspath(dst)))
    if os.path.isdir(src) and not os.path.islink(src):
        shutil.copytree(src, dst, symlinks=True)
    else:
        shutil.copy2(src, dst, follow_symlinks=False)


def xcrun_sdk_name(sdk_legacy_name: str) -> str:
    return XCRUN_SDK_NAMES.get(sdk_legacy_name, sdk_legacy_name.lower())


def get_sdk_version(ctx, sdk: str) -> str:
    """Version of the installed sdk (sdk is an xcrun sdk name, e.g. iphoneos)."""
    return ctx.run(XCRUN, ["--sdk", sdk, "--show-sdk-version"]).strip()


def get_sdk_path(ctx, sdk: str) -> str:
    return ctx.run(XCRUN, ["--sdk", sdk, "--show-sdk-path"]).strip()


def lipo_libs(ctx, src_libs, dst_lib):
    """
    Create a universal (fat) binary from architecture-specific binaries.

    All inputs must be the same library built for different architectures.
    """
    ensure_directory(os.path.dirname(os.fspath(dst_lib)))
    ctx.run(XCRUN, ["lipo", "-create"] + [str(lib) for lib in src_libs] + ["-output", str(dst_lib)])


def libtool_libs(ctx, src_libs, dst_lib):
    """Combine multiple (possibly fat) static libraries into one static library."""
    ensure_directory(os.path.dirname(os.fspath(dst_lib)))
    ctx.run(
        XCRUN,
        ["libtool", "-static", "-no_warning_for_no_symbols", "-o", str(dst_lib)] + [str(lib) for lib in src_libs],
    )


def make_xcframework(ctx, dst_xcframework, frameworks=(), libraries_and_headers=()):
    """
    Create an XCFramework from frameworks, or from libraries and their headers.

    Args:
        frameworks: Paths of .framework bundles
        libraries_and_headers: (library, headers dir) pairs
    """
    args = ["-create-xcframework"]
    for framework in frameworks:
        args += ["-framework", str(framework)]
    for library, headers in libraries_and_headers:
        args += ["-library", str(library), "-headers", str(headers)]
    args += ["-output", str(dst_xcframework)]
    ensure_directory(os.path.dirname(os.fspath(dst_xcframework)))
    ctx.run(XCRUN, ["xcodebuild"] + args)


class MultipleSdkVersionsResolution(Enum):
    ERROR = "error"
    RETURN_MIN = "min"
    RETURN_MAX = "max"


class SdkVersions(NamedTuple):
    sdk: Optional[str]
    min_sdk: Optional[str]


# LC_BUILD_VERSION reports "minos"/"sdk", LC_VERSION_MIN_* "version"/"sdk".
# LC_BUILD_VERSION also lists its tools with a "version" line, ignored.
_LOAD_COMMAND_RE = re.compile(r"^\s*cmd\s+(LC_\w+)\s*$")
_VERSION_LINE_RE = re.compile(r"^\s*(minos|version|sdk)\s+(\S+)\s*$")


def version_key(version: str):
    """Numeric sort key for dotted versions ("10.15" > "10.9")."""
    key = []
    for component in version.split("."):
        match = re.match(r"\d+", component)
        key.append(int(match.group(0)) if match else 0)
    while key and key[-1] == 0:
        key.pop()
    return tuple(key)


def parse_load_command_versions(otool_output: str) -> Tuple[List[str], List[str]]:
    """
    Extract the sdk and min sdk versions found in ``otool -l`` output.

    Returns:
        (sdks, min_sdks): one entry per slice (or archive member) declaring
        a version, duplicates included.
    """
    sdks: List[str] = []
    min_sdks: List[str] = []
    current_cmd = None
    for line in otool_output.splitlines():
        cmd_match = _LOAD_COMMAND_RE.match(line)
        if cmd_match:
            current_cmd = cmd_match.group(1)
            continue
        if current_cmd == "LC_BUILD_VERSION":
            min_key = "minos"
        elif current_cmd is not None and current_cmd.startswith("LC_VERSION_MIN_"):
            min_key = "version"
        else:
            continue
        version_match = _VERSION_LINE_RE.match(line)
        if not version_match:
            continue
        key, value = version_match.groups()
        if key == "sdk":
            sdks.append(value)
        elif key == min_key:
            min_sdks.append(value)
    return sdks, min_sdks


def _resolve_versions(versions, resolution, what, libs):
    unique = sorted(set(versions), key=version_key)
    if not unique:
        return None
    if len(unique) == 1:
        return unique[0]
    if resolution == MultipleSdkVersionsResolution.RETURN_MIN:
        return unique[0]
    if resolution == MultipleSdkVersionsResolution.RETURN_MAX:
        return unique[-1]
    raise XcldapError(
        f"Found more than one {what} version",
        {"libs": [str(lib) for lib in libs], "versions": unique},
    )


def get_sdk_versions(ctx, libs, resolution=MultipleSdkVersionsResolution.ERROR) -> SdkVersions:
    """
    Get the sdk and minimum sdk versions the given binaries were built for.

    A fat binary declares one version per slice. When the slices disagree,
    ``resolution`` decides whether to fail or to return the minimum or the
    maximum value.

    otool is asked for all the slices, it only prints the host one otherwise.
    """
    all_sdks = []
    all_min_sdks = []
    for lib in libs:
        output = ctx.run(XCRUN, ["otool", "-arch", "all", "-l", str(lib)])
        sdks, min_sdks = parse_load_command_versions(output)
        all_sdks += sdks
        all_min_sdks += min_sdks
    return SdkVersions(
        sdk=_resolve_versions(all_sdks, resolution, "sdk", libs),
        min_sdk=_resolve_versions(all_min_sdks, resolution, "min sdk", libs),
    )


_JINJA_ENV = jinja2.Environment(
    undefined=jinja2.StrictUndefined,
    keep_trailing_newline=True,
    autoescape=False,
)


def render_template_string(template: str, **data) -> str:
    return _JINJA_ENV.from_string(template).render(**data)


def render_template_file(template_path, dst_path, **data):
    with open(template_path, "r", encoding="utf-8") as f:
        content = render_template_string(f.read(), **data)
    ensure_directory(os.path.dirname(os.fspath(dst_path)))
    with open(dst_path, "w", encoding="utf-8") as f:
        f.write(content)


def render_template_dir(template_dir, dst_dir, **data):
    """
    Render a directory of templates with copier.

    Files ending in ``.jinja`` are rendered (and lose the suffix), others are
    copied as is.
    """
    ensure_directory(dst_dir)
    run_copy(
        str(template_dir),
        str(dst_dir),
        data=data,
        defaults=True,
        overwrite=True,
        quiet=True,
        unsafe=True,
    )
    return Path(dst_dir)
