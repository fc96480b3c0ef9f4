"""
Upload routing

Dialogue recordings (`audio`/`video` fields) go to the pending-analysis holding area
where the midnight sync picks them up. Everything else (avatar images, voice samples)
goes to the public directory served under /uploads.
"""
import logging
import os
import random
import time
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

ANALYSIS_FIELDS = ("audio", "video")
FALLBACK_EXTENSIONS = {"audio": ".webm", "video": ".webm"}
PUBLIC_URL_PREFIX = "/uploads"


@dataclass
class StoredUpload:
    field: str
    filename: str
    path: str
    url: Optional[str]  # None for files parked in the holding area

    @property
    def pending(self) -> bool:
        return self.url is None


def is_analysis_field(field: str) -> bool:
    return field in ANALYSIS_FIELDS


def build_filename(field: str, owner_id: str, original_name: Optional[str] = None,
                   now_ms: Optional[int] = None, rand: Optional[int] = None) -> str:
    """`<field>-<ownerId>-<epoch ms>-<random><ext>`, the layout the aggregator groups on."""
    if not owner_id or "-" in owner_id:
        raise ValueError(f"Owner id must be non-empty and free of '-': {owner_id!r}")
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    if rand is None:
        rand = random.randint(0, 10 ** 9)
    ext = os.path.splitext(original_name or "")[1]
    if not ext:
        ext = FALLBACK_EXTENSIONS.get(field, "")
    return f"{field}-{owner_id}-{now_ms}-{rand}{ext}"


class UploadRouter:
    def __init__(self, public_dir: str, pending_dir: str):
        self.public_dir = public_dir
        self.pending_dir = pending_dir

    def ensure_dirs(self) -> None:
        os.makedirs(self.public_dir, exist_ok=True)
        os.makedirs(self.pending_dir, exist_ok=True)

    def destination(self, field: str) -> str:
        return self.pending_dir if is_analysis_field(field) else self.public_dir

    def save(self, field: str, owner_id: str, content: bytes, original_name: Optional[str] = None) -> StoredUpload:
        filename = build_filename(field, owner_id, original_name)
        directory = self.destination(field)
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, filename)
        with open(path, "wb") as fh:
            fh.write(content)

        url = None if is_analysis_field(field) else f"{PUBLIC_URL_PREFIX}/{filename}"
        logger.info("Stored %s upload for %s as %s (%d bytes)", field, owner_id, filename, len(content))
        return StoredUpload(field=field, filename=filename, path=path, url=url)
