
import os
import re
import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Optional

DATA_URL_PATTERN = re.compile(r'^data:(.+?);base64,(.*)$', re.DOTALL)


class SnapshotStorageError(Exception):
    pass


@dataclass
class DataUrl:
    content_type: str
    data: bytes


def parse_data_url(data_url: Optional[str]) -> Optional[DataUrl]:
    """Decode a base64 data URL (data:image/png;base64,...). Returns None if it is not one."""
    match = DATA_URL_PATTERN.match(data_url or '')
    if not match:
        return None
    try:
        data = base64.b64decode(match.group(2), validate=False)
    except (binascii.Error, ValueError):
        return None
    return DataUrl(content_type=match.group(1), data=data)


# Snapshot storage on the local filesystem, served back under a public URL prefix
class SnapshotStorage:
    def __init__(self, logger: logging.Logger, root_dir: str = "snapshots", public_base_url: str = "/snapshots"):
        self.logger = logger
        self.root_dir = os.path.abspath(root_dir)
        self.public_base_url = public_base_url.rstrip('/')
        os.makedirs(self.root_dir, exist_ok=True)

    def resolve(self, key: str) -> str:
        """Map a storage key to a path under the storage root."""
        if not key or key.startswith(('/', '\\')):
            raise SnapshotStorageError(f"Invalid snapshot key: {key!r}")
        path = os.path.abspath(os.path.join(self.root_dir, key))
        if os.path.commonpath([self.root_dir, path]) != self.root_dir or path == self.root_dir:
            raise SnapshotStorageError(f"Invalid snapshot key: {key!r}")
        return path

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    def upload(self, key: str, data: bytes, content_type: str = "image/png", upsert: bool = False) -> str:
        """Store a blob under key and return its public URL."""
        path = self.resolve(key)
        if not upsert and os.path.exists(path):
            raise SnapshotStorageError(f"Snapshot already exists: {key}")

        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'wb') as file:
            file.write(data)

        self.logger.info(f"Stored snapshot {key} ({len(data)} bytes, {content_type})")
        return self.public_url(key)
