"""
Archive stream helpers.

Archives are written once: the producer streams tar bytes through an
optional gzip layer into a hashing writer, so the checksum and size of
the file on disk are known when the write finishes.
"""

import gzip
import os
import shutil
from pathlib import Path
from typing import Awaitable, BinaryIO, Callable, Tuple, Union

from sandbox_vault.utils.helpers import CHUNK_SIZE, HashingWriter, is_gzip_file

ArchiveProducer = Callable[[BinaryIO], Awaitable[None]]


async def write_archive(
    path: Union[str, Path],
    producer: ArchiveProducer,
    compress: bool = False,
    algorithm: str = "sha256"
) -> Tuple[str, int]:
    """
    Stream a producer's output into *path*.

    Args:
        path: Destination file, created or truncated
        producer: Coroutine function that writes tar bytes into the sink it is given
        compress: Gzip the stream before hashing
        algorithm: Hash algorithm for the checksum

    Returns:
        Tuple of (checksum of the bytes on disk, number of bytes on disk)
    """
    with open(path, "wb") as raw:
        hasher = HashingWriter(raw, algorithm)
        if compress:
            with gzip.GzipFile(fileobj=hasher, mode="wb", mtime=0) as gz:
                await producer(gz)
        else:
            await producer(hasher)
        raw.flush()
        os.fsync(raw.fileno())

    return hasher.hexdigest(), hasher.bytes_written


def decompress_to(archive_path: Union[str, Path], staging_path: Union[str, Path]) -> Path:
    """
    Return a path to an uncompressed copy of *archive_path*.

    Gzip archives are detected by their magic bytes and inflated into
    *staging_path*; plain archives are returned unchanged.
    """
    archive_path = Path(archive_path)
    if not is_gzip_file(archive_path):
        return archive_path

    staging_path = Path(staging_path)
    with gzip.open(archive_path, "rb") as src, open(staging_path, "wb") as dst:
        shutil.copyfileobj(src, dst, CHUNK_SIZE)
    return staging_path
