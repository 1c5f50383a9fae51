"""按身份维护的会话历史存储。

HistoryStore 是会话日志的唯一写入口：

1. 对同一身份的 load → append → persist 序列持有独占锁，保证并发追加不丢失、不重排。
2. 只有持久化成功后才更新进程内缓存，读者看到的永远是已提交的快照。
3. 每次变更后把完整日志镜像到备份存储（键 "chat:{identity}"），清空时删除备份。

锁按身份懒创建，没有协程持有或等待时即释放，不对调用方暴露。
"""

import asyncio
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from relay_core.config.settings import settings
from relay_core.domain.exceptions import BusinessError, StorageUnavailable, ValidationError
from relay_core.domain.history import BackupStore, DurableStore, backup_key
from relay_core.domain.models import ConversationLog, Message, log_to_payload
from relay_core.infrastructure.logging.logger import log_event, logger


class _IdentityLocks:
    """按身份分配的 asyncio.Lock，引用计数归零即回收。"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, identity: str) -> AsyncIterator[None]:
        lock = self._locks.get(identity)
        if lock is None:
            lock = self._locks[identity] = asyncio.Lock()
        self._holders[identity] = self._holders.get(identity, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[identity] -= 1
            if self._holders[identity] == 0:
                del self._holders[identity]
                del self._locks[identity]

    def __len__(self) -> int:
        return len(self._locks)


class HistoryStore:
    def __init__(
        self,
        backend: DurableStore,
        backup: Optional[BackupStore] = None,
        max_stored: Optional[int] = None,
        cache_size: Optional[int] = None,
    ):
        self._backend = backend
        self._backup = backup
        self._max_stored = settings.max_stored_messages if max_stored is None else max_stored
        self._cache_size = settings.history_cache_size if cache_size is None else cache_size
        if self._max_stored < 1 or self._cache_size < 1:
            raise ValidationError(code="INVALID_LIMIT", message="max_stored and cache_size must be >= 1")
        self._cache: "OrderedDict[str, ConversationLog]" = OrderedDict()
        self._locks = _IdentityLocks()

    @property
    def max_stored(self) -> int:
        return self._max_stored

    async def append(self, identity: str, message: Message) -> ConversationLog:
        """追加一条消息并返回截断后的完整日志。"""
        self._require_identity(identity)
        async with self._locks.hold(identity):
            current = await self._load(identity)
            updated = (current + (message,))[-self._max_stored:]
            await self._commit(identity, updated)
            await self._mirror(identity, updated)
        log_event(
            logging.INFO,
            "Appended message",
            {"identity": identity},
            role=message.role,
            length=len(updated),
            truncated=len(current) + 1 - len(updated),
        )
        return updated

    async def read(self, identity: str) -> ConversationLog:
        self._require_identity(identity)
        cached = self._cache.get(identity)
        if cached is not None:
            self._cache.move_to_end(identity)
            return cached
        async with self._locks.hold(identity):
            log = await self._load(identity)
            self._remember(identity, log)
            return log

    async def clear(self, identity: str) -> None:
        """清空日志；重复调用结果相同且不报错。"""
        self._require_identity(identity)
        async with self._locks.hold(identity):
            await self._commit(identity, ())
            if self._backup is not None:
                try:
                    await self._backup.delete(backup_key(identity))
                except Exception as e:
                    logger.warning("Backup delete failed", extra={"extra": {"identity": identity, "error": str(e)}})
        log_event(logging.INFO, "Cleared history", {"identity": identity})

    async def _load(self, identity: str) -> ConversationLog:
        cached = self._cache.get(identity)
        if cached is not None:
            return cached
        try:
            raw = await self._backend.get(identity)
        except BusinessError:
            raise
        except Exception as e:
            raise StorageUnavailable(code="STORE_READ_ERROR", message="History storage unavailable", details=str(e))
        if raw is None:
            return ()
        if not isinstance(raw, list):
            raise StorageUnavailable(
                code="STORE_READ_ERROR",
                message="History storage unavailable",
                details=f"Unexpected stored value for {identity!r}",
            )
        try:
            return tuple(Message.from_dict(item) for item in raw)
        except ValidationError as e:
            raise StorageUnavailable(code="STORE_READ_ERROR", message="History storage unavailable", details=e.message)

    async def _commit(self, identity: str, log: ConversationLog) -> None:
        """持久化并更新缓存。

        调用方在写入途中被取消时，写入可能已在线程里落盘，所以这里仍等写入结束、
        缓存与持久化存储一致之后，才把取消继续抛出并释放身份锁。
        """
        write = asyncio.ensure_future(self._persist_and_remember(identity, log))
        cancelled = False
        while not write.done():
            try:
                await asyncio.wait([write])
            except asyncio.CancelledError:
                cancelled = True
        if cancelled:
            if write.exception() is not None:
                self._cache.pop(identity, None)
            raise asyncio.CancelledError()
        write.result()

    async def _persist_and_remember(self, identity: str, log: ConversationLog) -> None:
        await self._persist(identity, log)
        self._remember(identity, log)

    async def _persist(self, identity: str, log: ConversationLog) -> None:
        try:
            await self._backend.put(identity, log_to_payload(log))
        except BusinessError:
            raise
        except Exception as e:
            raise StorageUnavailable(code="STORE_WRITE_ERROR", message="History storage unavailable", details=str(e))

    async def _mirror(self, identity: str, log: ConversationLog) -> None:
        if self._backup is None:
            return
        try:
            await self._backup.put(backup_key(identity), log_to_payload(log))
        except Exception as e:
            # 备份是次级副本，主存储已提交
            logger.warning("Backup write failed", extra={"extra": {"identity": identity, "error": str(e)}})

    def _remember(self, identity: str, log: ConversationLog) -> None:
        self._cache[identity] = log
        self._cache.move_to_end(identity)
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)

    @staticmethod
    def _require_identity(identity: str) -> None:
        if not identity or not isinstance(identity, str):
            raise ValidationError(code="MISSING_USER_ID", message="User ID is required")
