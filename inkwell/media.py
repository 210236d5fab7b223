"""
Post images: validation, resizing, thumbnails and storage.

Processed files live under the upload directory as ``<uuid>.webp`` with a
square thumbnail of the same name in ``thumbs/``.  When the Cloudflare R2
keys are present (environment or ``.env``) both files are mirrored to the
bucket under ``uploads/``.
"""
from __future__ import annotations

import logging
import os
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterable

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from PIL import Image, ImageOps, UnidentifiedImageError

logger = logging.getLogger(__name__)

IMAGE_MIMES = {"image/jpeg", "image/png", "image/gif"}
FORMAT = "WEBP"
EXTENSION = ".webp"
MAX_SIZE = (600, 600)
QUALITY = 50
THUMB_SIZE = (100, 100)
THUMB_QUALITY = 60
THUMBS = "thumbs"
URL_PREFIX = "/uploads/"

R2_ENV_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
    "R2_PUBLIC_BASE",
    "R2_ENDPOINT",
)
R2_REQUIRED_KEYS = ("R2_ACCOUNT_ID", "R2_ACCESS_KEY_ID", "R2_SECRET_ACCESS_KEY", "R2_BUCKET")


class ImageError(Exception):
    """The upload is not an image we accept or could not be decoded."""


@dataclass
class StoredImage:
    uuid: str
    name: str
    extension: str
    mime: str
    size: int

    @property
    def filename(self) -> str:
        return f"{self.uuid}{self.extension}"

    @property
    def url(self) -> str:
        return URL_PREFIX + self.filename


################################################################################
# Processing
################################################################################
def _normalise(im: Image.Image) -> Image.Image:
    if im.mode in ("RGB", "RGBA"):
        return im
    if im.mode in ("P", "LA", "PA") or "transparency" in im.info:
        return im.convert("RGBA")
    return im.convert("RGB")


def process_image(stream: IO[bytes], upload_dir: Path, *, name: str, mime: str) -> StoredImage:
    """
    Decode *stream*, write the resized image and its thumbnail to
    *upload_dir* and return the record to persist.

    The full image keeps its aspect ratio inside ``MAX_SIZE``; the thumbnail
    is center-cropped to exactly ``THUMB_SIZE``.
    """
    mime = (mime or "").lower()
    if mime not in IMAGE_MIMES:
        raise ImageError(f"unsupported image type {mime or 'unknown'!r}")

    ident = uuid.uuid4().hex
    filename = f"{ident}{EXTENSION}"
    target = upload_dir / filename
    thumb = upload_dir / THUMBS / filename
    thumb.parent.mkdir(parents=True, exist_ok=True)

    try:
        with Image.open(stream) as src:
            im = _normalise(ImageOps.exif_transpose(src))
            full = im.copy()
            full.thumbnail(MAX_SIZE, Image.LANCZOS)
            full.save(target, FORMAT, quality=QUALITY)
            ImageOps.fit(im, THUMB_SIZE, Image.LANCZOS).save(
                thumb, FORMAT, quality=THUMB_QUALITY
            )
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        target.unlink(missing_ok=True)
        thumb.unlink(missing_ok=True)
        raise ImageError(f"cannot process {name!r}: {exc}") from exc

    logger.info("stored %s as %s", name, filename)
    return StoredImage(
        uuid=ident,
        name=name,
        extension=EXTENSION,
        mime="image/webp",
        size=target.stat().st_size,
    )


def remove_image(upload_dir: Path, filename: str) -> None:
    for path in (upload_dir / filename, upload_dir / THUMBS / filename):
        path.unlink(missing_ok=True)


################################################################################
# Body references
################################################################################
def replace_references(body: str, images: Iterable[StoredImage]) -> str:
    """Point ``![alt](original-name)`` at the stored file of that upload."""
    for image in images:
        pattern = re.compile(r"(!\[[^\]]*\]\()\s*" + re.escape(image.name) + r"\s*(\))")
        body = pattern.sub(lambda m, url=image.url: f"{m.group(1)}{url}{m.group(2)}", body)
    return body


def is_referenced(body: str, filename: str) -> bool:
    return (URL_PREFIX + filename) in (body or "")


################################################################################
# R2 mirror
################################################################################
def read_env_file(path: Path) -> dict[str, str]:
    env = {}
    if not path.exists():
        return env
    for ln in path.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def r2_config(env_file: Path | None = None) -> dict[str, str]:
    file_env = read_env_file(env_file) if env_file else {}
    cfg = {k: (os.environ.get(k) or file_env.get(k) or "").strip() for k in R2_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def r2_is_configured(cfg: dict[str, str]) -> bool:
    return all(cfg.get(k) for k in R2_REQUIRED_KEYS)


def r2_client(cfg: dict[str, str]):
    endpoint = (
        cfg.get("R2_ENDPOINT")
        or f"https://{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com"
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        region_name="auto",
        aws_access_key_id=cfg["R2_ACCESS_KEY_ID"],
        aws_secret_access_key=cfg["R2_SECRET_ACCESS_KEY"],
    )


def _keys(filename: str) -> tuple[str, str]:
    return f"uploads/{filename}", f"uploads/{THUMBS}/{filename}"


def mirror_to_r2(cfg: dict[str, str], upload_dir: Path, image: StoredImage, client=None) -> None:
    """Upload both renditions; ``BotoCoreError``/``ClientError`` propagate."""
    client = client or r2_client(cfg)
    full_key, thumb_key = _keys(image.filename)
    for path, key in (
        (upload_dir / image.filename, full_key),
        (upload_dir / THUMBS / image.filename, thumb_key),
    ):
        client.upload_file(
            str(path), cfg["R2_BUCKET"], key, ExtraArgs={"ContentType": image.mime}
        )


def delete_from_r2(cfg: dict[str, str], filename: str, client=None) -> None:
    client = client or r2_client(cfg)
    for key in _keys(filename):
        try:
            client.delete_object(Bucket=cfg["R2_BUCKET"], Key=key)
        except (BotoCoreError, ClientError):
            logger.exception("R2 delete of %s failed", key)
