"""
zstd compression of single-file artifacts.

Used for metadata store snapshots, which are shipped to the remote store next
to the backed-up content. The content itself is uploaded as-is.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Final

import zstandard as zstd

DEFAULT_LEVEL: Final[int] = 10
_COPY_CHUNK: Final[int] = 1024 * 1024


def compress_file(
    *,
    source: Path,
    output_path: Path,
    level: int = DEFAULT_LEVEL,
    overwrite: bool = False,
) -> Path:
    """
    Compress ``source`` into a ``.zst`` file.

    Parameters
    ----------
    source:
        File to compress.
    output_path:
        Target path.
    level:
        zstd compression level.
    overwrite:
        If True, replace an existing output_path.

    Returns
    -------
    pathlib.Path
        The output path.

    Raises
    ------
    ValueError
        If the source is not a file, or output_path exists and overwrite is False.
    OSError
        If reading or writing fails.
    """
    if not source.is_file():
        raise ValueError(f"source must be an existing file: {source}")
    _prepare_output(output_path, overwrite=overwrite)

    cctx = zstd.ZstdCompressor(level=level, write_checksum=True)
    with source.open("rb") as reader, output_path.open("wb") as raw:
        with cctx.stream_writer(raw, closefd=False) as writer:
            shutil.copyfileobj(reader, writer, _COPY_CHUNK)
    return output_path


def _prepare_output(output_path: Path, *, overwrite: bool) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    if output_path.exists():
        if not overwrite:
            raise ValueError(f"Refusing to overwrite existing file: {output_path}")
        output_path.unlink()
