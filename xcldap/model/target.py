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
Build targets: an (sdk, platform, arch) triple and the toolchain names derived
from it.

The platform is the Apple platform the binary runs on (the simulator is its own
platform), the sdk is the SDK the code is compiled against. Both are equal
except for Mac Catalyst, which is the macOS platform built with the iOS sdk.
"""

from dataclasses import dataclass
from typing import Optional

from xcldap.errors import TargetParseError


# (xcframework platform, xcframework platform variant) -> (sdk, platform)
XCFRAMEWORK_PLATFORMS = {
    ("macos", None): ("macOS", "macOS"),
    ("ios", None): ("iOS", "iOS"),
    ("ios", "simulator"): ("iOS", "iOS_Simulator"),
    ("ios", "maccatalyst"): ("iOS", "macOS"),
    ("tvos", None): ("tvOS", "tvOS"),
    ("tvos", "simulator"): ("tvOS", "tvOS_Simulator"),
    ("watchos", None): ("watchOS", "watchOS"),
    ("watchos", "simulator"): ("watchOS", "watchOS_Simulator"),
}

PLATFORM_LEGACY_NAMES = {
    "macOS": "MacOSX",
    "iOS": "iPhoneOS",
    "iOS_Simulator": "iPhoneSimulator",
    "tvOS": "AppleTVOS",
    "tvOS_Simulator": "AppleTVSimulator",
    "watchOS": "WatchOS",
    "watchOS_Simulator": "WatchSimulator",
}

PLATFORM_VERSION_NAMES = {
    "macOS": "macos",
    "iOS": "ios",
    "iOS_Simulator": "ios-simulator",
    "tvOS": "tvos",
    "tvOS_Simulator": "tvos-simulator",
    "watchOS": "watchos",
    "watchOS_Simulator": "watchos-simulator",
}

# This table is mostly guess-work, configure only needs a plausible cpu.
CONFIGURE_ARCHS = {
    "arm64e": "aarch64",
    "arm64": "aarch64",
    "x86_64": "x86_64",
    "i386": "i386",
    "armv7k": "arm",
    "arm64_32": "arm",
}

# platform -> (os name in clang triples, triple environment suffix)
CLANG_TRIPLE_OS = {
    "macOS": ("macos", ""),
    "iOS": ("ios", ""),
    "iOS_Simulator": ("ios", "-simulator"),
    "tvOS": ("tvos", ""),
    "tvOS_Simulator": ("tvos", "-simulator"),
    "watchOS": ("watchos", ""),
    "watchOS_Simulator": ("watchos", "-simulator"),
}


@dataclass(frozen=True)
class PlatformAndSdk:
    platform: str
    sdk: str

    @property
    def path_component(self) -> str:
        # sdk and platform are dash-free, checked when the Target is parsed
        return f"{self.sdk}-{self.platform}"

    def __str__(self) -> str:
        return self.path_component


@dataclass(frozen=True)
class Target:
    sdk: str
    platform: str
    arch: str

    @classmethod
    def parse(cls, argument: str) -> "Target":
        """
        Parse a target from its ``sdk-platform-arch`` form.

        Raises:
            TargetParseError: the argument does not have exactly three
                non-empty components, or one of them contains a slash.
        """
        components = argument.split("-")
        if len(components) != 3:
            raise TargetParseError(argument)
        if any(c == "" or "/" in c for c in components):
            raise TargetParseError(argument)
        return cls(sdk=components[0], platform=components[1], arch=components[2])

    @classmethod
    def from_xcframework_platform(
        cls, platform: str, variant: Optional[str], arch: str
    ) -> Optional["Target"]:
        """Target for an XCFramework library entry, None if not supported."""
        sdk_and_platform = XCFRAMEWORK_PLATFORMS.get((platform, variant))
        if sdk_and_platform is None:
            return None
        sdk, target_platform = sdk_and_platform
        return cls(sdk=sdk, platform=target_platform, arch=arch)

    @property
    def config_name(self) -> str:
        return "-".join([self.sdk, self.platform, self.arch])

    @property
    def path_component(self) -> str:
        return self.config_name

    @property
    def platform_and_sdk(self) -> PlatformAndSdk:
        return PlatformAndSdk(platform=self.platform, sdk=self.sdk)

    @property
    def platform_legacy_name(self) -> str:
        return platform_legacy_name(self.platform)

    @property
    def sdk_legacy_name(self) -> str:
        return sdk_legacy_name(self.platform, self.sdk)

    @property
    def platform_version_name(self) -> str:
        return platform_version_name(self.platform, self.sdk)

    @property
    def host_for_configure(self) -> str:
        return host_for_configure(self.arch)

    @property
    def is_mac_catalyst(self) -> bool:
        return self.platform == "macOS" and self.sdk == "iOS"

    def clang_target(self, min_sdk_version: Optional[str]) -> str:
        """
        The value of clang's ``-target`` option for this target.

        e.g. ``arm64-apple-ios14.0-macabi`` for Mac Catalyst on arm64.
        """
        version = min_sdk_version or ""
        if self.is_mac_catalyst:
            return f"{self.arch}-apple-ios{version}-macabi"
        os_name, suffix = CLANG_TRIPLE_OS.get(self.platform, (None, ""))
        if os_name is None:
            print(f"WARNING: Unknown clang os for platform {self.platform}")
            os_name = self.platform.lower().replace("_simulator", "")
            suffix = "-simulator" if self.platform.endswith("_Simulator") else ""
        return f"{self.arch}-apple-{os_name}{version}{suffix}"

    def __str__(self) -> str:
        return self.config_name


def platform_legacy_name(platform: str) -> str:
    name = PLATFORM_LEGACY_NAMES.get(platform)
    if name is None:
        print(f"WARNING: Unknown platform legacy name for platform {platform}")
        return platform.replace("_", "")
    return name


def sdk_legacy_name(platform: str, sdk: str) -> str:
    # Mac Catalyst builds with the iOS sdk
    if (platform, sdk) == ("macOS", "iOS"):
        return platform_legacy_name("iOS")
    return platform_legacy_name(platform)


def platform_version_name(platform: str, sdk: str) -> str:
    if (platform, sdk) == ("macOS", "iOS"):
        return "mac-catalyst"
    name = PLATFORM_VERSION_NAMES.get(platform)
    if name is None:
        print(f"WARNING: Unknown platform version name for platform {platform} and sdk {sdk}")
        return platform.lower().replace("_", "-")
    return name


def host_for_configure(arch: str) -> str:
    config_arch = CONFIGURE_ARCHS.get(arch)
    if config_arch is None:
        print(f"WARNING: Unknown arch for configure: {arch}")
        config_arch = arch
    return f"{config_arch}-apple-darwin"
