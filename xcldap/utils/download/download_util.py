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

import hashlib
import os
import shutil
import urllib.parse
from pathlib import Path
from typing import Optional

import requests

from xcldap.errors import ChecksumMismatchError, DownloadError

CHUNK_SIZE = 64 * 1024
DOWNLOAD_TIMEOUT_SECOND = 60


def calculate_checksum(file_path) -> str:
    """SHA256 checksum of a file, as a hex string."""
    sha256_hash = hashlib.sha256()
    with open(file_path, "rb") as f:
        for byte_block in iter(lambda: f.read(CHUNK_SIZE), b""):
            sha256_hash.update(byte_block)
    return sha256_hash.hexdigest()


def verify_checksum(file_path, expected_shasum: Optional[str]):
    """
    Raise ChecksumMismatchError if the file does not have the expected hash.

    No check is done when no checksum is expected.
    """
    if not expected_shasum:
        return
    actual = calculate_checksum(file_path)
    if actual.lower() != expected_shasum.strip().lower():
        raise ChecksumMismatchError(file_path, expected_shasum, actual)


def local_path_for_url(url: str) -> Optional[Path]:
    """The local path for a file URL or a plain path, None for remote URLs."""
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme == "file":
        return Path(urllib.parse.unquote(parsed.path))
    if parsed.scheme in ("http", "https"):
        return None
    if parsed.scheme == "" or len(parsed.scheme) == 1:
        # plain path (a one-letter scheme is a Windows drive)
        return Path(url)
    raise DownloadError(f"Unsupported URL scheme '{parsed.scheme}'", {"url": url})


def filename_for_url(url: str) -> str:
    name = os.path.basename(urllib.parse.urlparse(url).path)
    if not name:
        raise DownloadError("Cannot determine a file name from the URL", {"url": url})
    return name


def download_file(url: str, dest_path, session: Optional[requests.Session] = None):
    """
    Download (or copy, for local URLs) a file to dest_path.

    The file is written to a temporary path first and moved in place once
    complete, so an interrupted download never leaves a partial file at
    dest_path.
    """
    dest_path = Path(dest_path)
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = dest_path.with_name(dest_path.name + ".part")

    local_path = local_path_for_url(url)
    if local_path is not None:
        if not local_path.is_file():
            raise DownloadError("File not found", {"url": url, "path": local_path})
        print(f"   Copying {local_path}...")
        shutil.copyfile(local_path, tmp_path)
        os.replace(tmp_path, dest_path)
        return dest_path

    print(f"   Downloading from {url}...")
    http = session or requests.Session()
    try:
        with http.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT_SECOND) as response:
            response.raise_for_status()
            with open(tmp_path, "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    f.write(chunk)
    except requests.RequestException as e:
        if tmp_path.exists():
            tmp_path.unlink()
        raise DownloadError(f"Download failed: {e}", {"url": url}) from e
    os.replace(tmp_path, dest_path)
    print(f"   Downloaded to {dest_path}")
    return dest_path
