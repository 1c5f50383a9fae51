import asyncio
import copy
import hashlib
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

from relay_core.config.settings import settings
from relay_core.domain.exceptions import StorageUnavailable


class JsonFileStore:
    """每个键一个 JSON 文档的持久化存储。

    文件名取键的 sha256，原始键写在文档内；写入先落临时文件再 os.replace，
    读者永远看不到写了一半的文档。阻塞 IO 通过 asyncio.to_thread 移出事件循环。
    """

    def __init__(self, root: str | Path | None = None, namespace: str = "history"):
        self._root = Path(root or settings.storage_root).resolve()
        self._dir = self._root / namespace
        self._dir.mkdir(parents=True, exist_ok=True)

    async def get(self, key: str) -> Optional[Any]:
        return await asyncio.to_thread(self._read, key)

    async def put(self, key: str, value: Any) -> None:
        await asyncio.to_thread(self._write, key, value)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._remove, key)

    def _path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self._dir / f"{digest}.json"

    def _read(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StorageUnavailable(code="STORE_READ_ERROR", message="History storage unavailable", details=str(e))
        return data.get("value")

    def _write(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp_path = self._dir / f"{path.stem}.{uuid4().hex}.json.tmp"
        obj = {
            "key": key,
            "updated_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "value": value,
        }
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageUnavailable(code="STORE_WRITE_ERROR", message="History storage unavailable", details=str(e))

    def _remove(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageUnavailable(code="STORE_DELETE_ERROR", message="History storage unavailable", details=str(e))


class MemoryKeyValueStore:
    """进程内键值存储，用作默认备份存储与测试替身。"""

    def __init__(self):
        self._data: Dict[str, Any] = {}

    async def get(self, key: str) -> Optional[Any]:
        return copy.deepcopy(self._data.get(key))

    async def put(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self):
        return list(self._data)
