"""
File operation utilities for the Video Merge service.
Upload persistence, media type lookup and best-effort removal of scratch files.
"""

import logging
import re
from pathlib import Path
from typing import Union

from .errors import InputError

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_SIZE = 1024 * 1024

# Common media types mapping
MEDIA_TYPES = {
    '.mp4': 'video/mp4',
    '.m4v': 'video/mp4',
    '.mov': 'video/quicktime',
    '.mkv': 'video/x-matroska',
    '.webm': 'video/webm',
    '.avi': 'video/x-msvideo',
    '.flv': 'video/x-flv',
    '.wmv': 'video/x-ms-wmv',
    '.ts': 'video/mp2t',
}

SAFE_SUFFIX_PATTERN = re.compile(r'^\.[A-Za-z0-9]{1,8}$')


def get_media_type(path: Union[str, Path]) -> str:
    """Content type for a file, falling back to application/octet-stream."""
    return MEDIA_TYPES.get(Path(path).suffix.lower(), 'application/octet-stream')


def safe_suffix(filename: str, default: str = "") -> str:
    """
    Extension of a client-supplied filename, or `default` when it looks unsafe.

    Only the extension is kept from uploads; the stored name is always
    generated server-side.
    """
    if not filename:
        return default
    suffix = Path(filename).suffix
    if SAFE_SUFFIX_PATTERN.match(suffix):
        return suffix.lower()
    return default


def safe_cleanup(path: Union[str, Path]) -> bool:
    """
    Remove a file if it exists.

    Failures are logged and reported through the return value, never raised.

    Returns:
        True if the file is gone afterwards, False otherwise
    """
    path = Path(path)
    try:
        path.unlink()
        logger.debug(f"Removed file: {path}")
        return True
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.warning(f"Failed to cleanup {path}: {e}")
        return False


async def save_upload(upload, destination: Path, max_size: int) -> int:
    """
    Stream an uploaded file to disk.

    Args:
        upload: A FastAPI/Starlette UploadFile
        destination: Target path
        max_size: Maximum accepted size in bytes

    Returns:
        Number of bytes written

    Raises:
        InputError: If the upload is empty or exceeds max_size
    """
    written = 0
    with open(destination, 'wb') as f:
        while True:
            chunk = await upload.read(UPLOAD_CHUNK_SIZE)
            if not chunk:
                break
            written += len(chunk)
            if written > max_size:
                size_mb = max_size / (1024 * 1024)
                raise InputError(
                    f"File '{upload.filename}' is too large. "
                    f"Maximum allowed size is {size_mb:.1f}MB."
                )
            f.write(chunk)

    if written == 0:
        raise InputError(f"File '{upload.filename}' is empty")

    logger.info(f"Saved upload {upload.filename} ({written} bytes)")
    return written
