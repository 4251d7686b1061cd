"""
Photo storage backends.

Photos are kept as blobs addressed by a relative path such as
'12/345/5f0c....jpg' (ranch id / animal id / random name). The database only
stores that path.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Protocol
import logging
import os
import uuid

from flask import current_app

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_EXTENSIONS = {'jpg', 'jpeg', 'png', 'gif', 'webp', 'heic'}


class PhotoStorage(Protocol):
    """The operations the app needs from a photo store."""

    def save(self, path: str, data: bytes) -> None:
        ...

    def read(self, path: str) -> bytes:
        ...

    def delete(self, path: str) -> None:
        ...

    def exists(self, path: str) -> bool:
        ...


@dataclass
class InMemoryPhotoStorage:
    """Test double for photo storage."""

    objects: Dict[str, bytes] = field(default_factory=dict)

    def save(self, path: str, data: bytes) -> None:
        self.objects[path] = bytes(data)

    def read(self, path: str) -> bytes:
        try:
            return self.objects[path]
        except KeyError:
            raise FileNotFoundError(path)

    def delete(self, path: str) -> None:
        self.objects.pop(path, None)

    def exists(self, path: str) -> bool:
        return path in self.objects


@dataclass
class LocalPhotoStorage:
    """Stores photos as files below a root directory."""

    root: str

    def __post_init__(self):
        self.root = os.path.abspath(self.root)
        os.makedirs(self.root, exist_ok=True)

    def _full_path(self, path: str) -> str:
        full_path = os.path.abspath(os.path.join(self.root, path))
        if os.path.commonpath([self.root, full_path]) != self.root:
            raise ValueError(f"Storage path escapes the photo directory: {path}")
        return full_path

    def save(self, path: str, data: bytes) -> None:
        full_path = self._full_path(path)
        os.makedirs(os.path.dirname(full_path), exist_ok=True)
        with open(full_path, 'wb') as f:
            f.write(data)

    def read(self, path: str) -> bytes:
        with open(self._full_path(path), 'rb') as f:
            return f.read()

    def delete(self, path: str) -> None:
        try:
            os.remove(self._full_path(path))
        except FileNotFoundError:
            logger.warning("Photo %s was already missing from storage", path)

    def exists(self, path: str) -> bool:
        return os.path.isfile(self._full_path(path))


def file_extension(filename, default='jpg'):
    if filename and '.' in filename:
        return filename.rsplit('.', 1)[1].lower()
    return default


def is_allowed_image(filename):
    return file_extension(filename, default='') in ALLOWED_IMAGE_EXTENSIONS


def new_photo_path(ranch_id, animal_id, extension):
    return f"{ranch_id}/{animal_id}/{uuid.uuid4().hex}.{extension}"


def init_photo_storage(app):
    """Attaches the configured photo store to the app."""
    storage = app.config.get('PHOTO_STORAGE')
    if storage is None:
        storage = LocalPhotoStorage(app.config['PHOTO_STORAGE_DIR'])
    app.extensions['photo_storage'] = storage
    return storage


def get_photo_storage() -> PhotoStorage:
    return current_app.extensions['photo_storage']
