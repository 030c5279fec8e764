"""
Manual file transfer over an SSH shell: ``cat`` out, ``dd`` in.

Push verifies the transfer by comparing the local size with the size the device
reports, then applies the local file mode. A failed push removes the partial
remote file.
"""

import logging
import os
import posixpath
import shlex
import stat

from .error_handling import TransferIntegrityError, RemoteCommandError
from .ssh_connection import RemoteShell

logger = logging.getLogger(__name__)


def pull_file(shell: RemoteShell, remote_path: str, local_path: str) -> int:
    """Stream a remote file byte-for-byte into ``local_path``."""
    with open(local_path, "wb") as f:
        copied = shell.stream_to(f"cat {shlex.quote(remote_path)}", f)
    logger.info(f"Copied {copied} bytes from {shell.ip_address}:{remote_path}")
    return copied


def remote_file_size(shell: RemoteShell, remote_path: str) -> int:
    output = shell.execute(f"stat -c %s {shlex.quote(remote_path)}")
    try:
        return int(output.strip())
    except ValueError:
        raise TransferIntegrityError(f"Unexpected size output for {remote_path}: {output.strip()!r}")


def push_file(shell: RemoteShell, local_path: str, remote_path: str) -> int:
    """
    Transfer ``local_path`` to ``remote_path`` and verify it.

    Steps: create the remote directory, stream the file into ``dd``, compare the
    byte counts, compare the remote size, set the remote mode.
    """
    local_stat = os.stat(local_path)
    size = local_stat.st_size
    mode = stat.S_IMODE(local_stat.st_mode)
    quoted = shlex.quote(remote_path)

    shell.execute(f"mkdir -p {shlex.quote(posixpath.dirname(remote_path) or '/')}")

    try:
        with open(local_path, "rb") as f:
            written = shell.stream_from(f"dd of={quoted} bs=32k", f)
        if written != size:
            raise TransferIntegrityError(f"Short write to {remote_path}: {written} of {size} bytes")

        remote_size = remote_file_size(shell, remote_path)
        if remote_size != size:
            raise TransferIntegrityError(
                f"Size mismatch for {remote_path}: local {size} bytes, remote {remote_size} bytes")

        shell.execute(f"chmod {mode:o} {quoted}")
    except (TransferIntegrityError, RemoteCommandError, OSError):
        exit_status, _, errors = shell.run(f"rm -f {quoted}")
        if exit_status != 0:
            logger.warning(f"Could not remove partial file {remote_path} on {shell.ip_address}: {errors}")
        raise

    logger.info(f"Transferred {size} bytes to {shell.ip_address}:{remote_path}")
    return size
