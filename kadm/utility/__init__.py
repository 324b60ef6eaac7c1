#!/usr/bin/env python3
#
# Contains utility functions that don't fit anywhere else.

import kadm.errors
import os
import pathlib
import tempfile
import typing


def ensure_directory(path: pathlib.Path, *, mode: int = 0o700) -> pathlib.Path:
    "Create the directory (and parents) if needed and return its path"
    try:
        path.mkdir(mode=mode, parents=True, exist_ok=True)
    except OSError as e:
        raise kadm.errors.AssetIOError(f"unable to create directory {path}: {e}") from e
    if not path.is_dir():
        raise kadm.errors.AssetIOError(f"{path} exists and is not a directory")
    return path


def write_file_atomically(
    path: pathlib.Path, data: typing.Union[str, bytes], *, mode: int = 0o644
) -> None:
    """
    Write data to path so that readers observe either the previous content or
    the complete new content, never a partial file. The data is written to a
    temporary file in the same directory, flushed to disk, then renamed over
    the destination.

    Raises AssetIOError on failure; the temporary file is removed.
    """
    if isinstance(data, str):
        data = data.encode()
    try:
        descriptor, temporary_name = tempfile.mkstemp(
            prefix=f".{path.name}.", dir=path.parent
        )
    except OSError as e:
        raise kadm.errors.AssetIOError(f"unable to write {path}: {e}") from e
    try:
        with os.fdopen(descriptor, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(temporary_name, mode)
        os.replace(temporary_name, path)
    except OSError as e:
        if os.path.exists(temporary_name):
            os.unlink(temporary_name)
        raise kadm.errors.AssetIOError(f"unable to write {path}: {e}") from e


def write_file_exclusively(
    path: pathlib.Path, data: typing.Union[str, bytes], *, mode: int = 0o600
) -> None:
    """
    Create path and write data to it, refusing to touch a file which already
    exists. Used for files whose presence means a previous run completed.
    """
    if isinstance(data, str):
        data = data.encode()
    try:
        descriptor = os.open(path, os.O_CREAT | os.O_WRONLY | os.O_EXCL, mode)
    except FileExistsError as e:
        raise kadm.errors.AssetIOError(
            f"{path} already exists; remove it before running again"
        ) from e
    except OSError as e:
        raise kadm.errors.AssetIOError(f"unable to create {path}: {e}") from e
    try:
        with os.fdopen(descriptor, "wb") as f:
            f.write(data)
    except OSError as e:
        os.unlink(path)
        raise kadm.errors.AssetIOError(f"unable to write {path}: {e}") from e


def read_file(path: typing.Union[str, pathlib.Path]) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise kadm.errors.AssetIOError(f"unable to read {path}: {e}") from e
