#!/usr/bin/env python3
"""
Attachment download helpers.

Attachments are held in memory for the duration of one relay attempt, so every
loader enforces a size cap.
"""
import logging
import mimetypes
import os
import re
import tempfile
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import aiohttp

logger = logging.getLogger("puppet_bridge.download")

# Attachment size limit (50MB)
MAX_ATTACHMENT_SIZE = 50 * 1024 * 1024

DEFAULT_TIMEOUT = aiohttp.ClientTimeout(total=60)

# Goes right before the file extension
FILENAME_TAG = "_mx_"
FILENAME_TAG_PATTERN = re.compile(r"^.+_mx_\..+$")


class AttachmentError(Exception):
    """Raised when an attachment cannot be loaded"""
    pass


class AttachmentTooLargeError(AttachmentError):
    def __init__(self, size: int, max_size: int):
        self.size = size
        self.max_size = max_size
        super().__init__(f"Attachment is {size} bytes, limit is {max_size} bytes")


@dataclass
class DownloadedFile:
    data: bytes
    content_type: str
    filename: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)


def guess_content_type(name: Optional[str], default: str = "application/octet-stream") -> str:
    if not name:
        return default
    guessed, _ = mimetypes.guess_type(urlparse(name).path or name)
    return guessed or default


def filename_from(location: Optional[str]) -> Optional[str]:
    if not location:
        return None
    return os.path.basename(urlparse(location).path or location) or None


async def fetch_bytes(
    url: str,
    max_size: int = MAX_ATTACHMENT_SIZE,
    session: Optional[aiohttp.ClientSession] = None,
    timeout: Optional[aiohttp.ClientTimeout] = None
) -> DownloadedFile:
    """Download a URL into memory, refusing anything larger than max_size"""
    if session is None:
        async with aiohttp.ClientSession() as own_session:
            return await fetch_bytes(url, max_size, own_session, timeout)

    async with session.get(url, timeout=timeout or DEFAULT_TIMEOUT) as response:
        if response.status != 200:
            error_text = await response.text()
            raise AttachmentError(f"Failed to download {url}: {response.status} - {error_text[:200]}")
        if response.content_length is not None and response.content_length > max_size:
            raise AttachmentTooLargeError(response.content_length, max_size)

        chunks = []
        received = 0
        async for chunk in response.content.iter_chunked(8192):
            received += len(chunk)
            if received > max_size:
                raise AttachmentTooLargeError(received, max_size)
            chunks.append(chunk)

        header_type = response.headers.get("Content-Type")
        content_type = header_type.split(";")[0].strip() if header_type else guess_content_type(url)

    logger.debug(f"Downloaded {received} bytes from {url} ({content_type})")
    return DownloadedFile(data=b"".join(chunks), content_type=content_type, filename=filename_from(url))


def read_file_bytes(path: str, max_size: int = MAX_ATTACHMENT_SIZE) -> DownloadedFile:
    try:
        size = os.path.getsize(path)
    except OSError as e:
        raise AttachmentError(f"Cannot read {path}: {e}")
    if size > max_size:
        raise AttachmentTooLargeError(size, max_size)
    with open(path, "rb") as f:
        data = f.read()
    return DownloadedFile(data=data, content_type=guess_content_type(path), filename=os.path.basename(path))


async def download_to_tempfile(
    url: str,
    tag_filename: bool = False,
    max_size: int = MAX_ATTACHMENT_SIZE,
    session: Optional[aiohttp.ClientSession] = None
) -> str:
    """
    Download a URL to a temporary file and return its path.

    With tag_filename the FILENAME_TAG is placed right before the extension, so
    the file can be recognised if a third-party network echoes it back.
    The caller owns the file and must remove it.
    """
    downloaded = await fetch_bytes(url, max_size=max_size, session=session)
    extension = mimetypes.guess_extension(downloaded.content_type) or ".bin"
    suffix = (FILENAME_TAG if tag_filename else "") + extension
    temp_file = tempfile.NamedTemporaryFile(delete=False, suffix=suffix)
    try:
        temp_file.write(downloaded.data)
    finally:
        temp_file.close()
    logger.info(f"Downloaded {url} to {temp_file.name} ({downloaded.size} bytes)")
    return temp_file.name


def is_filename_tagged(path: Optional[str]) -> bool:
    """True if the file name carries FILENAME_TAG right before its extension"""
    return bool(path) and FILENAME_TAG_PATTERN.match(path) is not None


def classify_msgtype(mimetype: Optional[str]) -> str:
    """Map a MIME type onto the Matrix message type used to send it"""
    major = (mimetype or "").split("/", 1)[0].lower()
    if major == "image":
        return "m.image"
    if major == "video":
        return "m.video"
    if major == "audio":
        return "m.audio"
    return "m.file"
