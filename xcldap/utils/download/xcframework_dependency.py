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
Prebuilt XCFramework dependency (OpenSSL): download, extraction and parsing
of the XCFramework Info.plist.
"""

import os
import plistlib
import stat
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from xcldap.build_scripts.build_utils import ensure_directory, ensure_directory_deleted
from xcldap.errors import InvalidXCFrameworkError
from xcldap.model.target import Target
from xcldap.utils.download.download_util import download_file, filename_for_url, local_path_for_url, verify_checksum


@dataclass
class XCFrameworkLibrary:
    identifier: str
    path: str
    platform: str
    platform_variant: Optional[str]
    architectures: List[str]

    def targets(self) -> List[Target]:
        targets = []
        for arch in self.architectures:
            target = Target.from_xcframework_platform(self.platform, self.platform_variant, arch)
            if target is not None:
                targets.append(target)
        return targets


class XCFrameworkDependency:
    """A parsed XCFramework on disk."""

    def __init__(self, path, libraries: List[XCFrameworkLibrary]):
        self.path = Path(path)
        self.libraries = libraries
        self._by_target: Dict[Target, XCFrameworkLibrary] = {}
        for library in libraries:
            for target in library.targets():
                self._by_target.setdefault(target, library)

    @classmethod
    def load(cls, path) -> "XCFrameworkDependency":
        path = Path(path)
        info_plist = path / "Info.plist"
        try:
            with open(info_plist, "rb") as f:
                info = plistlib.load(f)
        except (OSError, plistlib.InvalidFileException) as e:
            raise InvalidXCFrameworkError(f"Cannot read XCFramework Info.plist: {e}", {"path": info_plist}) from e

        if info.get("CFBundlePackageType") != "XFWK":
            raise InvalidXCFrameworkError("Not an XCFramework (CFBundlePackageType is not XFWK)", {"path": path})
        libraries = []
        for entry in info.get("AvailableLibraries", []):
            try:
                libraries.append(
                    XCFrameworkLibrary(
                        identifier=entry["LibraryIdentifier"],
                        path=entry["LibraryPath"],
                        platform=entry["SupportedPlatform"],
                        platform_variant=entry.get("SupportedPlatformVariant"),
                        architectures=list(entry["SupportedArchitectures"]),
                    )
                )
            except KeyError as e:
                raise InvalidXCFrameworkError(f"Missing key {e} in an AvailableLibraries entry", {"path": path}) from e
        return cls(path, libraries)

    @property
    def frameworks_name(self) -> str:
        """
        Name of the frameworks in the XCFramework (e.g. "OpenSSL").

        All the libraries of the XCFramework must be frameworks of the same name.
        """
        names = {Path(library.path).stem for library in self.libraries}
        if len(names) != 1 or any(not library.path.endswith(".framework") for library in self.libraries):
            raise InvalidXCFrameworkError(
                "Expected an XCFramework of frameworks all having the same name",
                {"path": self.path, "libraries": sorted(library.path for library in self.libraries)},
            )
        return names.pop()

    def framework_path(self, target: Target) -> Optional[Path]:
        library = self._by_target.get(target)
        if library is None:
            return None
        return self.path / library.identifier / library.path

    def __repr__(self) -> str:
        return f"XCFrameworkDependency(path={self.path}, libraries={[lib.identifier for lib in self.libraries]})"


def extract_zip(zip_path, dest_dir):
    """
    Extract a zip archive, recreating the symlinks it contains.

    zipfile.extractall writes symlinks as regular files holding the link
    target, which breaks the versioned layout of macOS frameworks.
    """
    dest_dir = Path(dest_dir)
    dest_root = dest_dir.resolve()
    with zipfile.ZipFile(zip_path) as zf:
        for info in zf.infolist():
            dest = (dest_dir / info.filename).resolve()
            if dest != dest_root and dest_root not in dest.parents:
                raise InvalidXCFrameworkError("Zip entry outside destination", {"entry": info.filename})
            mode = info.external_attr >> 16
            if stat.S_ISLNK(mode):
                link_target = zf.read(info).decode("utf-8")
                ensure_directory(dest.parent)
                if os.path.lexists(dest):
                    os.remove(dest)
                os.symlink(link_target, dest)
            elif info.is_dir():
                ensure_directory(dest)
            else:
                zf.extract(info, dest_dir)
                if mode & 0o111:
                    os.chmod(dest, mode & 0o777)


class XCFrameworkDependencySource:
    def __init__(self, url: str, expected_shasum: Optional[str] = None, skip_existing_artifacts: bool = False):
        """
        Args:
            url: file, http or https URL of a zipped XCFramework, or file URL
                (or path) of an unzipped XCFramework
            expected_shasum: SHA256 of the zip, ignored for unzipped XCFrameworks
        """
        self.url = url
        self.expected_shasum = expected_shasum
        self.skip_existing_artifacts = skip_existing_artifacts

    def download_and_extract(self, workdir) -> XCFrameworkDependency:
        local_path = local_path_for_url(self.url)
        if local_path is not None and local_path.is_dir():
            return XCFrameworkDependency.load(local_path)

        archive = Path(workdir) / filename_for_url(self.url)
        if not archive.is_file():
            download_file(self.url, archive)
        verify_checksum(archive, self.expected_shasum)

        extract_dir = archive.with_name(archive.name + ".extracted")
        if self.skip_existing_artifacts and extract_dir.is_dir():
            print(f"Skipping extraction of {archive} because {extract_dir} already exists")
        else:
            ensure_directory_deleted(extract_dir)
            ensure_directory(extract_dir)
            extract_zip(archive, extract_dir)

        candidates = sorted(p for p in extract_dir.rglob("*.xcframework") if p.is_dir())
        if not candidates:
            raise InvalidXCFrameworkError("No XCFramework found in archive", {"archive": archive})
        # Nested XCFrameworks are not expected, the shortest path is the outer one
        return XCFrameworkDependency.load(min(candidates, key=lambda p: len(p.parts)))
