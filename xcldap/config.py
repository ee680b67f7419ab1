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
Build configuration.

Values come from, by increasing priority: the defaults below, the ``[build]``
table of the config file (``xcldap.toml``), the command line.

Example config file:

    [build]
    openldap_version = "2.5.5"
    expected_tarball_shasum = "74ecefda2afc0e054d2c7dc29166be6587fa9de7a4087a80183bc9c719dbf6b3"
    openssl_xcframework_url = "https://example.com/OpenSSL-dynamic.xcframework.zip"
    targets = ["macOS-macOS-arm64", "macOS-macOS-x86_64", "iOS-iOS-arm64"]
    ios_min_sdk_version = "12.0"
"""

import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

try:
    import tomllib
except ImportError:
    # Python < 3.11
    import tomli as tomllib

from xcldap.errors import ConfigError, TargetParseError
from xcldap.model.build_paths import BuildPaths
from xcldap.model.target import Target

CONFIG_FILE_NAME = "xcldap.toml"
CONFIG_TABLE = "build"

DEFAULT_OPENLDAP_BASE_URL = (
    "https://www.openldap.org/software/download/OpenLDAP/openldap-release/openldap-{{ version }}.tgz"
)
DEFAULT_OPENLDAP_VERSION = "2.5.5"
DEFAULT_WORKDIR = "./openldap-workdir"
# libsasl2 is only available on macOS, hence the default targets
DEFAULT_TARGETS = ["macOS-macOS-arm64", "macOS-macOS-x86_64"]


def _default_targets() -> List[Target]:
    return [Target.parse(t) for t in DEFAULT_TARGETS]


@dataclass
class BuildConfig:
    openssl_xcframework_url: Optional[str] = None
    expected_openssl_xcframework_shasum: Optional[str] = None
    files_path: str = field(default_factory=lambda: str(BuildPaths.default_files_path()))
    workdir: str = DEFAULT_WORKDIR
    resultdir: Optional[str] = None
    openldap_base_url: str = DEFAULT_OPENLDAP_BASE_URL
    openldap_version: str = DEFAULT_OPENLDAP_VERSION
    expected_tarball_shasum: Optional[str] = None
    disable_bitcode: bool = False
    clean: bool = False
    skip_existing_artifacts: bool = False
    targets: List[Target] = field(default_factory=_default_targets)
    macos_sdk_version: Optional[str] = None
    macos_min_sdk_version: Optional[str] = None
    ios_sdk_version: Optional[str] = None
    ios_min_sdk_version: Optional[str] = None
    catalyst_sdk_version: Optional[str] = None
    catalyst_min_sdk_version: Optional[str] = None
    watchos_sdk_version: Optional[str] = None
    watchos_min_sdk_version: Optional[str] = None
    tvos_sdk_version: Optional[str] = None
    tvos_min_sdk_version: Optional[str] = None
    jobs: Optional[int] = None
    package_base_url: Optional[str] = None
    verbose: bool = False

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    @classmethod
    def from_values(cls, *layers: Dict[str, Any]) -> "BuildConfig":
        """
        Build the config from layers of values, later layers win.

        A None value in a layer means "not set" and does not override.
        """
        values: Dict[str, Any] = {}
        for layer in layers:
            for key, value in layer.items():
                if value is not None:
                    values[key] = value
        unknown = sorted(set(values) - set(cls.field_names()))
        if unknown:
            raise ConfigError("Unknown configuration keys", {"keys": unknown})

        if "targets" in values:
            values["targets"] = parse_targets(values["targets"])
        config = cls(**values)
        if not config.openssl_xcframework_url:
            raise ConfigError(
                "The OpenSSL XCFramework URL is required (--openssl-xcframework-url or openssl_xcframework_url in the config file)"
            )
        return config

    @property
    def sdk_version_overrides(self) -> Dict[str, Optional[str]]:
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name.endswith("sdk_version")}


def parse_targets(values) -> List[Target]:
    targets = []
    for value in values:
        if isinstance(value, Target):
            targets.append(value)
            continue
        try:
            targets.append(Target.parse(value))
        except TargetParseError as e:
            raise ConfigError(f"Invalid target {value!r}", {"reason": e.message}) from e
    if not targets:
        raise ConfigError("No targets to build")
    return targets


def load_config_file(path, required: bool = False) -> Dict[str, Any]:
    """
    Read the ``[build]`` table of a TOML config file.

    Returns an empty dict when the file does not exist and is not required.
    """
    if not os.path.isfile(path):
        if required:
            raise ConfigError("Config file not found", {"path": path})
        return {}
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML: {e}", {"path": path}) from e

    table = data.get(CONFIG_TABLE, {})
    if not isinstance(table, dict):
        raise ConfigError(f"[{CONFIG_TABLE}] must be a table", {"path": path})
    unknown = sorted(set(table) - set(BuildConfig.field_names()))
    if unknown:
        raise ConfigError("Unknown keys in config file", {"path": path, "keys": unknown})
    return dict(table)
