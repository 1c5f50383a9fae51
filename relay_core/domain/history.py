from typing import Any, Optional, Protocol


class DurableStore(Protocol):
    """按身份持久化会话的键值后端。"""

    async def get(self, key: str) -> Optional[Any]:
        ...

    async def put(self, key: str, value: Any) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


class BackupStore(Protocol):
    """次级备份键值存储，键为 "chat:{identity}"。"""

    async def put(self, key: str, value: Any) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


def backup_key(identity: str) -> str:
    return f"chat:{identity}"
