import os
import logging
from pathlib import Path
from typing import Optional, Protocol

from ..errors import PersistenceError
from ..settings import settings

logger = logging.getLogger("recipeforge.storage")


class ImageStore(Protocol):
    def upload_image(self, data: bytes, key: str) -> str: ...

    def delete_image(self, key: str) -> None: ...


def image_key(recipe_id: str) -> str:
    """Storage key for a recipe's image; one image per recipe."""
    return f"recipes/{recipe_id}/image.png"


def media_root() -> Path:
    if settings.media_root:
        return Path(settings.media_root)
    return Path(os.getcwd()) / "media"


class LocalStorage:
    def __init__(self, root: Optional[Path] = None):
        self.root = root or media_root()

    def _path_for(self, key: str) -> Path:
        # Ensure strict path safety (simple check)
        if ".." in key or key.startswith("/"):
            raise ValueError(f"Invalid storage key: {key}")
        return self.root / key

    def upload_image(self, data: bytes, key: str) -> str:
        """
        Save bytes to local disk.
        Returns: public relative URL (served under /media)
        """
        file_path = self._path_for(key)
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(file_path, "wb") as f:
                f.write(data)
        except OSError as e:
            raise PersistenceError(f"failed to write image {key}: {e}") from e

        logger.info(f"Saved {len(data)} bytes to {file_path}")
        return f"/media/{key}"

    def delete_image(self, key: str) -> None:
        file_path = self._path_for(key)
        try:
            if file_path.exists():
                file_path.unlink()
                logger.info(f"Deleted file {file_path}")
        except OSError as e:
            raise PersistenceError(f"failed to delete image {key}: {e}") from e


def get_image_store() -> ImageStore:
    if settings.image_store == "s3":
        from ..storage.s3_compat import get_store
        return get_store()
    return LocalStorage()
