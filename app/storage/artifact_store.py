"""Local file storage for generated export archives and report documents."""

import os
import tempfile
from typing import Optional


class ArtifactStore:
    """Stores artifact bytes under a base directory, addressed by storage path.

    Storage paths are relative (``exports/<job_id>/coco.zip``) and may not
    escape the base directory.
    """

    def __init__(self, base_dir: Optional[str] = None):
        if base_dir:
            self._base_dir = os.path.abspath(base_dir)
        else:
            self._base_dir = os.path.join(tempfile.gettempdir(), "pipeline_artifacts")
        os.makedirs(self._base_dir, exist_ok=True)

    @property
    def base_dir(self) -> str:
        return self._base_dir

    def _resolve(self, storage_path: str) -> str:
        path = os.path.abspath(os.path.join(self._base_dir, storage_path))
        if os.path.commonpath([path, self._base_dir]) != self._base_dir:
            raise ValueError(f"Storage path escapes artifact dir: {storage_path}")
        return path

    def write(self, storage_path: str, data: bytes) -> str:
        """Write bytes atomically. Returns the absolute file path."""
        path = self._resolve(storage_path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp_path = f"{path}.tmp-{os.getpid()}"
        with open(tmp_path, "wb") as dst:
            dst.write(data)
        os.replace(tmp_path, path)
        return path

    def read(self, storage_path: str) -> Optional[bytes]:
        path = self._resolve(storage_path)
        if not os.path.exists(path):
            return None
        with open(path, "rb") as src:
            return src.read()

    def exists(self, storage_path: str) -> bool:
        return os.path.exists(self._resolve(storage_path))
