import json
import os
import re
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.collaborators import LocalStorage
from chat_core.domain.exceptions import BusinessError

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class JsonFileStorage(LocalStorage):
    """本地持久化：每个键一个 JSON 文件，写入采用临时文件 + os.replace 保证原子性。"""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._blob_root = self._root / "blobs"
        self._blob_root.mkdir(parents=True, exist_ok=True)

    def get(self, key: str) -> Optional[Any]:
        path = self._path_for(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e), key=key)

    def set(self, key: str, value: Any) -> None:
        path = self._path_for(key)
        tmp_path = path.with_name(f"{path.stem}.{uuid4().hex}.json.tmp")
        try:
            tmp_path.write_text(json.dumps(value, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e), key=key)

    def delete(self, key: str) -> None:
        path = self._path_for(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e), key=key)

    def _path_for(self, key: str) -> Path:
        if not key:
            raise BusinessError(code="INVALID_KEY", message="storage key must not be empty")
        return self._blob_root / f"{_UNSAFE_KEY_CHARS.sub('_', key)}.json"
