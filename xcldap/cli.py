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

import argparse
import os
import sys

from xcldap import __version__
from xcldap.build_scripts.build_pipeline import build_all
from xcldap.config import CONFIG_FILE_NAME, BuildConfig, load_config_file
from xcldap.errors import XcldapError
from xcldap.model.target import Target
from xcldap.utils.context.context import BuildContext

SDK_NAMES = ["macos", "ios", "catalyst", "watchos", "tvos"]


class Cli:
    def description(self) -> str:
        return """xcldap - OpenLDAP XCFrameworks builder

Builds OpenLDAP (client libraries) for Apple platforms against a prebuilt
OpenSSL XCFramework, then creates:
    COpenLDAP-static.xcframework      # static libs + headers
    COpenLDAP-dynamic.xcframework     # frameworks
    Package.swift                     # Swift package using both

Options can also be set in the [build] table of a TOML config file
(xcldap.toml in the current directory, or --config). Command line values
override the config file.

EXAMPLES:
    xcldap --openssl-xcframework-url https://example.com/OpenSSL.xcframework.zip
    xcldap --targets macOS-macOS-arm64 iOS-iOS-arm64 iOS-macOS-x86_64 --skip-existing-artifacts
    xcldap --config ci.toml --clean --verbose
        """

    def parser(self) -> argparse.ArgumentParser:
        # Defaults are None so unset options do not override the config file
        parser = argparse.ArgumentParser(
            prog="xcldap",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            description=self.description(),
            argument_default=None,
        )
        parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
        parser.add_argument("--config", help=f"Path to the TOML config file (default: ./{CONFIG_FILE_NAME} if it exists)")
        parser.add_argument(
            "--files-path",
            help="The path to the “Files” directory, containing the templates used to build the frameworks",
        )
        parser.add_argument(
            "--workdir",
            help="Everything xcldap creates will be in this folder, except the final XCFrameworks",
        )
        parser.add_argument(
            "--resultdir",
            help="The final XCFrameworks and Package.swift will be in this folder (default: the work dir)",
        )
        parser.add_argument(
            "--openldap-base-url",
            help="The URL of the OpenLDAP tarball, “{{ version }}” is replaced by the OpenLDAP version",
        )
        parser.add_argument("--openldap-version")
        parser.add_argument(
            "--expected-tarball-shasum",
            help="The SHA-256 expected for the tarball. If not set, the archive is not verified",
        )
        parser.add_argument(
            "--openssl-xcframework-url",
            help=(
                "The URL of the OpenSSL dynamic XCFramework archive (zip). The scheme can be file, http or https. "
                "A file URL (or a path) can point to an archive or directly to an XCFramework"
            ),
        )
        parser.add_argument(
            "--expected-openssl-xcframework-shasum",
            help="The SHA-256 expected for the OpenSSL XCFramework archive, ignored for an unarchived XCFramework",
        )
        parser.add_argument("--disable-bitcode", action="store_true", default=None)
        parser.add_argument("--clean", action="store_true", default=None, help="Remove the previous builds first")
        parser.add_argument(
            "--skip-existing-artifacts",
            action="store_true",
            default=None,
            help="Do not recreate the artifacts already present in the work dir",
        )
        parser.add_argument(
            "--targets",
            nargs="+",
            type=Target.parse,
            help="Targets to build, as sdk-platform-arch (e.g. macOS-macOS-arm64 iOS-iOS_Simulator-x86_64)",
        )
        for sdk in SDK_NAMES:
            parser.add_argument(f"--{sdk}-sdk-version")
            parser.add_argument(f"--{sdk}-min-sdk-version")
        parser.add_argument("--jobs", "-j", type=int, help="Number of make jobs (default: number of CPUs)")
        parser.add_argument(
            "--package-base-url",
            help="URL the XCFramework zips will be uploaded to; Package.swift then uses url + checksum",
        )
        parser.add_argument("--verbose", "-v", action="store_true", default=None, help="Print the commands run")
        return parser

    def cli(self, argv=None) -> argparse.Namespace:
        return self.parser().parse_args(argv)

    def load_config(self, args: argparse.Namespace) -> BuildConfig:
        values = vars(args).copy()
        config_path = values.pop("config", None)
        if config_path:
            file_values = load_config_file(config_path, required=True)
        else:
            file_values = load_config_file(os.path.join(os.getcwd(), CONFIG_FILE_NAME))
        return BuildConfig.from_values(file_values, values)

    def exec(self, args: argparse.Namespace) -> int:
        try:
            config = self.load_config(args)
            ctx = BuildContext(
                skip_existing_artifacts=config.skip_existing_artifacts,
                verbose=config.verbose,
            )
            print(f"Building OpenLDAP {config.openldap_version} for {', '.join(str(t) for t in config.targets)}")
            build_all(config, ctx)
        except XcldapError as e:
            print(f"ERROR: {e}")
            return 1
        except KeyboardInterrupt:
            print("ERROR: Interrupted")
            return 130
        return 0


def main(argv=None):
    cmd = Cli()
    sys.exit(cmd.exec(cmd.cli(argv)))


if __name__ == "__main__":
    main()
