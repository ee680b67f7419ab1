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
Merge of the headers of all the archs of a platform/sdk tuple, with patches.

Headers of all the targets sharing a platform/sdk tuple are expected to be
the same (the list of headers is checked before merging, the content is not):
the first arch's header is patched and written once.
"""

from pathlib import Path, PurePosixPath
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from xcldap.build_scripts.build_utils import ensure_directory, ensure_file_deleted

# (header path, header content) -> patched content
HeaderPatch = Callable[[Path, str], str]

INCLUDE_PREFIX = "include/"


def patch_ldif_stdio(filepath, content: str) -> str:
    """ldif.h uses FILE without including stdio.h."""
    if Path(filepath).name != "ldif.h":
        return content
    searched = "#include <ldap_cdefs.h>\n"
    return content.replace(searched, searched + "#include <stdio.h>\n")


def make_namespace_patch(product_name: str, header_names: Iterable[str]) -> HeaderPatch:
    """
    Patch rewriting ``#include <X>`` to ``#include <product_name/X>`` for all
    the given header names (the headers of the package itself).
    """
    names = [PurePosixPath(name).name for name in header_names]

    def patch(filepath, content: str) -> str:
        for name in names:
            content = content.replace(f"<{name}>", f"<{product_name}/{name}>")
        return content

    return patch


def dynamic_header_patches(product_name: str, header_names: Sequence[str]) -> List[HeaderPatch]:
    return [patch_ldif_stdio, make_namespace_patch(product_name, header_names)]


def static_header_patches(product_name: str, header_names: Sequence[str]) -> List[HeaderPatch]:
    return [make_namespace_patch(product_name, header_names)]


def header_path_without_include(header: str) -> Optional[str]:
    """``include/ldap.h`` -> ``ldap.h``; None (and a warning) if not in include/."""
    if not header.startswith(INCLUDE_PREFIX):
        print(f"WARNING: Got a header not in “include” dir ({header}). Skipping.")
        return None
    return header[len(INCLUDE_PREFIX):]


class UnmergedUnpatchedHeader:
    def __init__(self, headers_and_archs: List[Tuple[Path, str]], patches: List[HeaderPatch]):
        """
        Args:
            headers_and_archs: The same header for each arch, with its arch
            patches: Applied in order on the header content
        """
        self.headers_and_archs = [(Path(p), arch) for p, arch in headers_and_archs]
        self.patches = list(patches)

    def patch_and_merge_headers(self, dest, ctx) -> Path:
        dest = Path(dest)
        if ctx.should_skip(dest):
            return dest
        if not self.headers_and_archs:
            raise ValueError("No headers to merge")

        # Same content is assumed for all archs (only the lists are checked)
        header, _ = self.headers_and_archs[0]
        with open(header, "r", encoding="utf-8") as f:
            content = f.read()
        for patch in self.patches:
            content = patch(header, content)

        ensure_file_deleted(dest)
        ensure_directory(dest.parent)
        with open(dest, "w", encoding="utf-8") as f:
            f.write(content)
        return dest


class UnbuiltUmbrellaHeader:
    def __init__(self, headers: Sequence[str], product_name: str, modular_imports: bool):
        self.headers = list(headers)
        self.product_name = product_name
        self.modular_imports = modular_imports

    def content(self) -> str:
        lines = [
            "//",
            f"//  {self.product_name}.h",
            f"//  {self.product_name}",
            "//",
            "//  Auto-generated umbrella header by xcldap",
            "//",
            "",
        ]
        guard = f"{self.product_name.upper()}_UMBRELLA_H"
        if self.modular_imports:
            # #import is include-once, modules do not need a guard
            for header in self.headers:
                lines.append(f"#import <{self.product_name}/{header}>")
        else:
            lines += [f"#ifndef {guard}", f"#define {guard}", ""]
            for header in self.headers:
                lines.append(f"#include <{self.product_name}/{header}>")
            lines += ["", f"#endif // {guard}"]
        return "\n".join(lines) + "\n"

    def build_umbrella_header(self, dest, ctx) -> Path:
        dest = Path(dest)
        if ctx.should_skip(dest):
            return dest
        ensure_file_deleted(dest)
        ensure_directory(dest.parent)
        with open(dest, "w", encoding="utf-8") as f:
            f.write(self.content())
        return dest


def merge_headers(targets, built_target, build_paths, dest_dir, patches, ctx) -> List[str]:
    """
    Patch and merge all the headers of built_target in dest_dir.

    Args:
        targets: The targets of the platform/sdk tuple
        built_target: The reference build (all targets have the same headers)

    Returns:
        The merged headers, relative to dest_dir
    """
    merged_headers = []
    for header in built_target.headers:
        header_no_include = header_path_without_include(header)
        if header_no_include is None:
            continue
        unmerged_header = UnmergedUnpatchedHeader(
            headers_and_archs=[(build_paths.install_dir(t) / header, t.arch) for t in targets],
            patches=patches,
        )
        unmerged_header.patch_and_merge_headers(Path(dest_dir) / header_no_include, ctx)
        merged_headers.append(header_no_include)
    return merged_headers


def umbrella_header_name(product_name: str) -> str:
    return f"{product_name}.h"

