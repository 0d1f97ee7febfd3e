import logging
import os
import shutil
import uuid

from fastapi import UploadFile

import config

logger = logging.getLogger(__name__)


class BlobStorage:
    """Stores uploads on local disk and hands back the stored path."""

    def __init__(self, root: str = config.UPLOAD_DIR):
        self.root = root

    def save(self, upload: UploadFile) -> str:
        os.makedirs(self.root, exist_ok=True)
        ext = os.path.splitext(upload.filename or "")[1].lower()
        path = os.path.join(self.root, f"{uuid.uuid4().hex}{ext}")
        with open(path, "wb") as out:
            shutil.copyfileobj(upload.file, out)
        logger.debug("Stored upload %s at %s", upload.filename, path)
        return path

    def exists(self, path: str) -> bool:
        return os.path.isfile(path)
