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
Error types raised by xcldap.

Every error is fatal for the build: the CLI prints it and exits. Each error
carries a ``context`` mapping (target, paths, command...) so a failed run can
be diagnosed from its output alone.
"""

from typing import Any, Dict, List, Mapping, Optional


class XcldapError(Exception):
    """Base error, carries an optional diagnostic context."""

    def __init__(self, message: str, context: Optional[Mapping[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})

    def __str__(self) -> str:
        parts = [self.message]
        for key, value in self.context.items():
            if value is None or value == "":
                continue
            parts.append(f"  {key}: {value}")
        return "\n".join(parts)


class ConfigError(XcldapError):
    pass


class TargetParseError(XcldapError, ValueError):
    """A target argument is not of the form ``sdk-platform-arch``."""

    def __init__(self, argument: str):
        super().__init__(
            f"Invalid target '{argument}', expected sdk-platform-arch (e.g. macOS-macOS-arm64)",
            {"argument": argument},
        )
        self.argument = argument


class UnsupportedTargetError(XcldapError):
    """The OpenSSL XCFramework has no library for a requested target."""

    def __init__(self, target, xcframework_path=None):
        super().__init__(
            f"No framework for target {target} in the OpenSSL XCFramework",
            {"target": target, "xcframework": xcframework_path},
        )
        self.target = target


class ToolchainError(XcldapError):
    """A child process exited with a non-zero status."""

    def __init__(self, command: List[str], returncode: int, output: str = "", cwd=None):
        super().__init__(
            f"Command failed with exit code {returncode}: {' '.join(str(c) for c in command)}",
            {"cwd": cwd, "output": _tail(output)},
        )
        self.command = list(command)
        self.returncode = returncode
        self.output = output


class ConsistencyError(XcldapError):
    """Targets sharing a platform/sdk tuple did not produce the same files."""

    kind = "files"

    def __init__(self, ref_target, ref_list, current_target, current_list):
        super().__init__(
            f"Incompatible {self.kind} between targets {ref_target} and {current_target} for the same platform and sdk",
            {
                "ref_target": ref_target,
                f"ref_{self.kind}": [str(p) for p in ref_list],
                "current_target": current_target,
                f"current_{self.kind}": [str(p) for p in current_list],
            },
        )
        self.ref_target = ref_target
        self.ref_list = list(ref_list)
        self.current_target = current_target
        self.current_list = list(current_list)


class IncompatibleHeadersError(ConsistencyError):
    kind = "headers"


class IncompatibleLibsError(ConsistencyError):
    kind = "libs"


class DownloadError(XcldapError):
    pass


class ChecksumMismatchError(XcldapError):
    def __init__(self, path, expected: str, actual: str):
        super().__init__(
            f"Checksum mismatch for {path}",
            {"expected": expected, "actual": actual},
        )
        self.path = path
        self.expected = expected
        self.actual = actual


class InvalidXCFrameworkError(XcldapError):
    pass


def _tail(output: str, max_lines: int = 30) -> str:
    if not output:
        return ""
    lines = output.rstrip().splitlines()
    if len(lines) <= max_lines:
        return "\n".join(lines)
    return "\n".join(["..."] + lines[-max_lines:])
