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

import os

from xcldap.utils.cmd.cmd_util import spawn_and_get_output


# This context data class carries what every build step needs for one run
class BuildContext:
    def __init__(self, skip_existing_artifacts=False, verbose=False, runner=None):
        self.skip_existing_artifacts = skip_existing_artifacts
        self.verbose = verbose
        self.runner = runner or spawn_and_get_output

    def run(self, executable, args, cwd=None, env=None) -> str:
        if self.verbose:
            env_str = " ".join(f"{k}={v!r}" for k, v in (env or {}).items())
            cwd_str = f"(cd {cwd}) " if cwd else ""
            print(f"{cwd_str}{env_str + ' ' if env_str else ''}{executable} {' '.join(str(a) for a in args)}")
        return self.runner(executable, list(args), cwd=cwd, env=env)

    def should_skip(self, *paths) -> bool:
        """
        True if skip-existing is on and all the given paths exist.

        Logs the skip so that a resumed build shows what was reused.
        """
        if not self.skip_existing_artifacts:
            return False
        if not all(os.path.exists(p) for p in paths):
            return False
        for path in paths:
            print(f"Skipping creation of {path} because it already exists")
        return True
