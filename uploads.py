import logging
import os
import shutil
import time
import uuid
from pathlib import Path
from typing import List, Optional

from fastapi import HTTPException, UploadFile

logger = logging.getLogger(__name__)

UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", Path.cwd() / "uploads"))
UPLOAD_URL_PREFIX = "/uploads"
MAX_PRODUCT_IMAGES = 5


def ensure_upload_dir() -> Path:
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    return UPLOAD_DIR


def _filename(original: Optional[str]) -> str:
    # epoch millis + short random suffix + original extension
    ext = Path(original or "").suffix.lower()
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}{ext}"


def save_images(files: Optional[List[UploadFile]]) -> List[str]:
    """Write uploaded images to disk and return their public paths."""
    files = [f for f in (files or []) if f is not None and f.filename]
    if len(files) > MAX_PRODUCT_IMAGES:
        raise HTTPException(400, f"At most {MAX_PRODUCT_IMAGES} images are allowed")

    target = ensure_upload_dir()
    paths = []
    for upload in files:
        name = _filename(upload.filename)
        with open(target / name, "wb") as out:
            shutil.copyfileobj(upload.file, out)
        paths.append(f"{UPLOAD_URL_PREFIX}/{name}")
    if paths:
        logger.info("Stored %d image(s) in %s", len(paths), target)
    return paths
