"""Media upload, inbound media download and temp-file housekeeping."""

import re
import tempfile
import time
from pathlib import Path

import httpx
from loguru import logger

from dingbot.channels.dingtalk.auth import AccessTokenCache
from dingbot.channels.dingtalk.types import MediaFile, MediaType
from dingbot.config.schema import DingTalkAccountConfig

UPLOAD_URL = "https://oapi.dingtalk.com/media/upload"
DOWNLOAD_URL = "https://api.dingtalk.com/v1.0/robot/messageFiles/download"

MB = 1024 * 1024
MEDIA_SIZE_LIMITS: dict[str, int] = {
    "image": 20 * MB,
    "voice": 2 * MB,
    "video": 20 * MB,
    "file": 20 * MB,
}

_EXTENSIONS: dict[str, set[str]] = {
    "image": {"jpg", "jpeg", "png", "gif", "bmp", "webp"},
    "voice": {"mp3", "amr", "wav", "ogg", "m4a", "aac", "opus"},
    "video": {"mp4", "avi", "mov", "mkv", "webm", "flv"},
}

TEMP_FILE_RE = re.compile(r"^dingtalk_\d+\..+$")
TEMP_FILE_MAX_AGE_S = 24 * 60 * 60


def detect_media_type(path: str) -> MediaType:
    """Guess the upload type from a file extension; unknown extensions are ``file``."""
    ext = Path(path).suffix.lstrip(".").lower()
    for media_type, exts in _EXTENSIONS.items():
        if ext in exts:
            return media_type  # type: ignore[return-value]
    return "file"


async def upload_media(
    http: httpx.AsyncClient,
    tokens: AccessTokenCache,
    config: DingTalkAccountConfig,
    media_path: str,
    media_type: MediaType,
) -> str | None:
    """Upload a local file and return its ``media_id``, or ``None`` on any failure.

    Files over the per-type size limit are rejected before any request is made.
    """
    path = Path(media_path)
    try:
        size = path.stat().st_size
    except OSError as e:
        logger.error("DingTalk media not readable {}: {}", media_path, e)
        return None

    limit = MEDIA_SIZE_LIMITS.get(media_type, MEDIA_SIZE_LIMITS["file"])
    if size > limit:
        logger.warning(
            "DingTalk {} too large ({} bytes, limit {} bytes): {}",
            media_type, size, limit, media_path,
        )
        return None

    try:
        token = await tokens.get_token(config)
        resp = await http.post(
            f"{UPLOAD_URL}?access_token={token}&type={media_type}",
            files={"media": (path.name, path.read_bytes())},
        )
        resp.raise_for_status()
        data = resp.json()
    except (httpx.HTTPError, OSError, ValueError) as e:
        logger.error("DingTalk media upload failed for {}: {}", media_path, e)
        return None

    if data.get("errcode", 0) != 0 or not data.get("media_id"):
        logger.error("DingTalk media upload rejected: {}", data)
        return None

    logger.debug("DingTalk uploaded {} as {}", path.name, data["media_id"])
    return data["media_id"]


async def download_media(
    http: httpx.AsyncClient,
    tokens: AccessTokenCache,
    config: DingTalkAccountConfig,
    download_code: str,
    temp_dir: str | None = None,
) -> MediaFile | None:
    """Fetch an inbound attachment into ``dingtalk_<ms>.<ext>`` in the temp dir."""
    if not config.robot_code:
        logger.error("DingTalk media download requires robot_code to be configured")
        return None

    try:
        token = await tokens.get_token(config)
        resp = await http.post(
            DOWNLOAD_URL,
            json={"downloadCode": download_code, "robotCode": config.robot_code},
            headers={"x-acs-dingtalk-access-token": token},
        )
        resp.raise_for_status()
        download_url = resp.json().get("downloadUrl")
        if not download_url:
            return None

        media = await http.get(download_url)
        media.raise_for_status()
    except (httpx.HTTPError, ValueError) as e:
        logger.error("Failed to download DingTalk media: {}", e)
        return None

    content_type = media.headers.get("content-type") or "application/octet-stream"
    ext = content_type.split("/", 1)[-1].split(";", 1)[0].strip() or "bin"
    target = Path(temp_dir or tempfile.gettempdir()) / f"dingtalk_{int(time.time() * 1000)}.{ext}"
    try:
        target.write_bytes(media.content)
    except OSError as e:
        logger.error("Failed to save DingTalk media to {}: {}", target, e)
        remove_temp_file(str(target))
        return None
    logger.debug("DingTalk media saved to {}", target)
    return MediaFile(path=str(target), mime_type=content_type)


def remove_temp_file(path: str | None) -> None:
    """Delete a downloaded attachment; failures are only logged."""
    if not path:
        return
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Failed to remove DingTalk temp file {}: {}", path, e)


def cleanup_orphaned_temp_files(
    temp_dir: str | None = None,
    *,
    max_age: float = TEMP_FILE_MAX_AGE_S,
    now: float | None = None,
) -> int:
    """Remove stale ``dingtalk_*`` attachments left behind by crashed processes."""
    directory = Path(temp_dir or tempfile.gettempdir())
    now = now if now is not None else time.time()
    cleaned = 0

    try:
        entries = list(directory.iterdir())
    except OSError as e:
        logger.debug("Failed to scan temp dir {}: {}", directory, e)
        return 0

    for entry in entries:
        if not TEMP_FILE_RE.match(entry.name):
            continue
        try:
            if now - entry.stat().st_mtime > max_age:
                entry.unlink()
                cleaned += 1
                logger.debug("Cleaned up orphaned temp file: {}", entry.name)
        except OSError as e:
            logger.debug("Failed to cleanup temp file {}: {}", entry.name, e)

    if cleaned:
        logger.info("Cleaned up {} orphaned DingTalk temp files", cleaned)
    return cleaned
