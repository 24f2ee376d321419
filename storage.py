"""Product image storage in a GridFS bucket."""
import logging
import re
import time
from typing import Optional

from gridfs import GridFSBucket
from gridfs.errors import NoFile

from errors import NotFound
import settings

logger = logging.getLogger(__name__)

IMAGE_URL_PREFIX = "/api/images/"


class ImageStore:
    def __init__(self, db, bucket_name: str = settings.IMAGE_BUCKET):
        self.db = db
        self.bucket_name = bucket_name
        self._bucket = None

    @property
    def bucket(self) -> GridFSBucket:
        if self._bucket is None:
            self._bucket = GridFSBucket(self.db, bucket_name=self.bucket_name)
        return self._bucket

    def upload(self, data: bytes, filename: str, content_type: Optional[str] = None) -> str:
        """Store the file under a generated key and return its public path."""
        safe = re.sub(r"[^A-Za-z0-9._-]", "_", filename or "image")
        key = f"{int(time.time() * 1000)}-{safe}"
        self.bucket.upload_from_stream(key, data, metadata={"content_type": content_type or "image/jpeg"})
        logger.info("Stored image %s (%s bytes)", key, len(data))
        return IMAGE_URL_PREFIX + key

    def open(self, key: str):
        try:
            return self.bucket.open_download_stream_by_name(key)
        except NoFile:
            raise NotFound("Image not found")

    def delete(self, url: Optional[str]) -> bool:
        # only objects this store issued; external URLs are left alone
        if not url or not url.startswith(IMAGE_URL_PREFIX):
            return False
        key = url[len(IMAGE_URL_PREFIX):]
        removed = False
        for grid_file in self.bucket.find({"filename": key}):
            self.bucket.delete(grid_file._id)
            removed = True
        return removed
