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
import subprocess
from threading import Timer

from xcldap.errors import ToolchainError

# 3 hours, a full OpenLDAP build is far below that
DEFAULT_TIMEOUT_SECOND = 3 * 3600


def decode_bytes(input: bytes) -> str:
    try:
        return bytes.decode(input, "UTF-8")
    except UnicodeDecodeError:
        return bytes.decode(input, "latin-1")


def spawn_and_get_output(
    executable,
    args,
    cwd=None,
    env=None,
    timeout_second=DEFAULT_TIMEOUT_SECOND,
) -> str:
    """
    Run a child process and return its standard output.

    Standard error is captured apart so that toolchain warnings never end up
    in the returned value. Both streams are kept in the error when the command
    fails.

    Args:
        executable: Program to run (path or name looked up in PATH)
        args: Arguments, not including the executable
        cwd: Working directory of the child process
        env: Extra environment variables, added to the current environment
        timeout_second: The process is killed after this delay

    Returns:
        str: The standard output of the process

    Raises:
        ToolchainError: The process exited with a non-zero status (or was
            killed because of the timeout).
    """
    command = [str(executable)] + [str(a) for a in args]
    full_env = None
    if env:
        full_env = dict(os.environ)
        full_env.update({k: str(v) for k, v in env.items()})

    popen = subprocess.Popen(
        command,
        cwd=str(cwd) if cwd is not None else None,
        env=full_env,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )
    timer = Timer(timeout_second, lambda process: process.kill(), [popen])
    try:
        timer.start()
        stdout, stderr = popen.communicate()
    finally:
        timer.cancel()

    output = decode_bytes(stdout or b"")
    if popen.returncode != 0:
        error_output = output + decode_bytes(stderr or b"")
        if popen.returncode == -9 and not error_output:
            error_output = f"Killed after timeout ({timeout_second}s)"
        raise ToolchainError(command, popen.returncode, error_output, cwd=cwd)
    return output
