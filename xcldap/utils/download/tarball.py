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
OpenLDAP source tarball: download, integrity check and extraction.
"""

import tarfile
from pathlib import Path
from typing import Optional

from xcldap.build_scripts.build_utils import ensure_directory, ensure_directory_deleted, render_template_string
from xcldap.errors import DownloadError
from xcldap.utils.download.download_util import download_file, filename_for_url, verify_checksum

# The "data" extraction filter is missing from the older 3.9 to 3.11 patch releases
HAS_DATA_FILTER = hasattr(tarfile, "data_filter")


class Tarball:
    def __init__(
        self,
        template_url: str,
        version: str,
        download_folder,
        expected_shasum: Optional[str] = None,
    ):
        """
        Args:
            template_url: URL of the tarball, ``{{ version }}`` is replaced
                by the version
            version: The OpenLDAP version
            download_folder: Folder where the tarball is saved
            expected_shasum: SHA256 of the tarball, not checked if None
        """
        self.version = version
        self.url = render_template_string(template_url, version=version)
        self.expected_shasum = expected_shasum
        self.local_path = Path(download_folder) / filename_for_url(self.url)

    @property
    def stem(self) -> str:
        name = self.local_path.name
        for suffix in (".tar.gz", ".tgz", ".tar.bz2", ".tar.xz", ".tar"):
            if name.endswith(suffix):
                return name[: -len(suffix)]
        return self.local_path.stem

    def ensure_downloaded(self):
        """Download the tarball if not already there, then verify its checksum."""
        if self.local_path.is_file():
            print(f"Tarball already downloaded at {self.local_path}")
        else:
            download_file(self.url, self.local_path)
        verify_checksum(self.local_path, self.expected_shasum)

    def extract(self, dest_dir) -> Path:
        """
        Extract the tarball in dest_dir (which is emptied first).

        Returns:
            Path: the source root, i.e. the single top-level folder of the
            tarball, or dest_dir when the tarball has no single root.
        """
        dest_dir = Path(dest_dir)
        ensure_directory_deleted(dest_dir)
        ensure_directory(dest_dir)
        try:
            with tarfile.open(self.local_path, "r:*") as tar:
                if HAS_DATA_FILTER:
                    tar.extractall(dest_dir, filter="data")
                else:
                    check_members(tar, dest_dir)
                    tar.extractall(dest_dir)
        except tarfile.TarError as e:
            raise DownloadError(f"Cannot extract tarball: {e}", {"tarball": self.local_path}) from e

        children = list(dest_dir.iterdir())
        if len(children) == 1 and children[0].is_dir():
            return children[0]
        return dest_dir


def check_members(tar: tarfile.TarFile, dest_dir):
    """
    Reject the members that would be written, or point, outside dest_dir,
    and the special files (devices, fifos).

    Raises:
        DownloadError: an unsafe member was found
    """
    dest_root = Path(dest_dir).resolve()

    def inside(path: Path) -> bool:
        return path == dest_root or dest_root in path.parents

    for member in tar.getmembers():
        dest = (dest_root / member.name).resolve()
        if not inside(dest):
            raise DownloadError("Tarball member outside destination", {"member": member.name})
        if member.issym():
            link_dest = (dest.parent / member.linkname).resolve()
        elif member.islnk():
            link_dest = (dest_root / member.linkname).resolve()
        elif member.isfile() or member.isdir():
            continue
        else:
            raise DownloadError("Unsupported tarball member type", {"member": member.name})
        if not inside(link_dest):
            raise DownloadError("Tarball link outside destination", {"member": member.name, "link": member.linkname})
