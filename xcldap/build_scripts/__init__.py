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

"""Build steps: per-target builds, merges, frameworks and package."""

__all__ = [
    "build_framework",
    "build_headers",
    "build_libs",
    "build_pipeline",
    "build_target",
    "build_utils",
]
