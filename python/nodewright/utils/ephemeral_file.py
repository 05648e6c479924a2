"""
nodewright/utils/ephemeral_file.py

Provides an async context manager for ephemeral files in `/dev/shm`, used to hand SSH
private keys and known_hosts files to the ssh client without touching persistent disk.
"""

import os
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncGenerator


@asynccontextmanager
async def ephemeral_manager(
    single_file_name: str,
    *,
    prefix: str = "ephemeral-",
    parent_dir: str = "/dev/shm",
) -> AsyncGenerator[str, None]:
    """
    Create a private ephemeral directory and yield the path of one file inside it.
    The file (if it was created) and the directory are removed on exit.

    Args:
        single_file_name: The ephemeral filename.
        prefix: Prefix for the ephemeral directory name.
        parent_dir: The directory to place the ephemeral directory, default `/dev/shm`.

    Yields:
        str: The ephemeral file path.
    """
    ephemeral_dir = tempfile.mkdtemp(dir=parent_dir, prefix=prefix)

    try:
        yield os.path.join(ephemeral_dir, single_file_name)
    finally:
        if os.path.isdir(ephemeral_dir):
            for item in os.listdir(ephemeral_dir):
                item_path = os.path.join(ephemeral_dir, item)
                if os.path.isfile(item_path) or os.path.islink(item_path):
                    os.remove(item_path)
            os.rmdir(ephemeral_dir)
