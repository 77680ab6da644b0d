"""
Remote directory clients.

A client lists the files directly under one remote directory and fetches a
single entry into a local directory. The S3 implementation lives in
``pget.s3``; this module holds the shared contract and a client for
directories reachable through the local filesystem (network mounts, tests).
"""

from __future__ import annotations

import os
import shutil
from typing import List, Protocol

_FILE_SCHEME = "file://"


class RemoteError(Exception):
    """Base exception for remote directory client failures."""


class RemoteListError(RemoteError):
    """Raised when a remote directory does not exist or cannot be listed."""


class RemoteFetchError(RemoteError):
    """Raised when a remote entry cannot be transferred."""


class RemoteDirectoryClient(Protocol):
    def list(self, remote_path: str) -> List[str]:
        """Return identifiers of the files under remote_path, in listing order."""
        ...

    def fetch(self, remote_id: str, local_dir: str) -> str:
        """Write remote_id into local_dir under its base name and return that path."""
        ...


def discard_partial(tmp_path: str) -> None:
    if os.path.exists(tmp_path):
        try:
            os.remove(tmp_path)
        except OSError:
            pass


def strip_file_scheme(path: str) -> str:
    if path.startswith(_FILE_SCHEME):
        return path[len(_FILE_SCHEME):]
    return path


class LocalDirectoryClient:
    """Treats a directory on a mounted filesystem as the remote store."""

    def list(self, remote_path: str) -> List[str]:
        root = os.path.abspath(strip_file_scheme(remote_path))
        if not os.path.isdir(root):
            raise RemoteListError(f"Not a directory: {remote_path}")
        try:
            names = sorted(os.listdir(root))
        except OSError as exc:
            raise RemoteListError(f"Failed to list {remote_path}: {exc}") from exc
        return [
            os.path.join(root, name)
            for name in names
            if os.path.isfile(os.path.join(root, name))
        ]

    def fetch(self, remote_id: str, local_dir: str) -> str:
        src_path = strip_file_scheme(remote_id)
        dest_path = os.path.join(local_dir, os.path.basename(src_path))
        tmp_path = f"{dest_path}.download"
        try:
            shutil.copyfile(src_path, tmp_path)
            os.replace(tmp_path, dest_path)
        except OSError as exc:
            raise RemoteFetchError(f"Failed to fetch {remote_id} -> {dest_path}: {exc}") from exc
        finally:
            discard_partial(tmp_path)
        return dest_path
