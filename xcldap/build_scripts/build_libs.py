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
FAT and merged libraries.

For one platform/sdk tuple, each library is first made FAT with lipo (one
input per arch, all inputs being the same library), then the FAT static
libraries are merged in a single static library with libtool. The other
order is not possible: lipo only accepts single-arch inputs of the same
library and libtool merges object members.
"""

from pathlib import Path
from typing import List

from xcldap.build_scripts.build_utils import ensure_file_deleted, libtool_libs, lipo_libs


class UnbuiltFATLib:
    def __init__(self, libs: List[Path]):
        self.libs = [Path(lib) for lib in libs]

    def build_fat_lib(self, dest, ctx) -> Path:
        dest = Path(dest)
        if ctx.should_skip(dest):
            return dest
        if not self.libs:
            raise ValueError("No libraries to lipo")
        ensure_file_deleted(dest)
        lipo_libs(ctx, self.libs, dest)
        return dest


class UnbuiltMergedStaticLib:
    def __init__(self, libs: List[Path]):
        self.libs = [Path(lib) for lib in libs]

    def build_merged_lib(self, dest, ctx) -> Path:
        dest = Path(dest)
        if ctx.should_skip(dest):
            return dest
        if not self.libs:
            raise ValueError("No libraries to merge")
        ensure_file_deleted(dest)
        libtool_libs(ctx, self.libs, dest)
        return dest
