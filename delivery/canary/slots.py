# 渐进式发布控制器 - 部署槽位
"""A/B槽位管理：记录每个服务当前承载全部流量的槽位"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Dict

import structlog

from ..exceptions import PersistenceError

logger = structlog.get_logger()


class Slot(str, Enum):
    """部署槽位"""
    A = "A"
    B = "B"

    @property
    def other(self) -> "Slot":
        return Slot.B if self is Slot.A else Slot.A


DEFAULT_SLOT = Slot.A


class SlotStore(ABC):
    """槽位存储"""

    @abstractmethod
    def load(self) -> Dict[str, Slot]:
        """加载全部服务的当前槽位"""

    @abstractmethod
    def save(self, slots: Dict[str, Slot]) -> None:
        """保存全部服务的当前槽位，失败时抛出 PersistenceError"""


class InMemorySlotStore(SlotStore):
    """内存存储（单进程使用）"""

    def __init__(self, initial: Dict[str, Slot] = None):
        self._data: Dict[str, Slot] = dict(initial or {})

    def load(self) -> Dict[str, Slot]:
        return dict(self._data)

    def save(self, slots: Dict[str, Slot]) -> None:
        self._data = dict(slots)


class JsonFileSlotStore(SlotStore):
    """JSON文件存储"""

    def __init__(self, path: str):
        self.path = Path(path)

    def load(self) -> Dict[str, Slot]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return {service: Slot(value) for service, value in data.get("slots", {}).items()}
        except (OSError, ValueError) as e:
            logger.error("加载槽位状态失败", path=str(self.path), error=str(e))
            raise PersistenceError(message=f"加载槽位状态失败: {e}") from e

    def save(self, slots: Dict[str, Slot]) -> None:
        data = {"slots": {service: slot.value for service, slot in slots.items()}}
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error("保存槽位状态失败", path=str(self.path), error=str(e))
            raise PersistenceError(message=f"保存槽位状态失败: {e}") from e


class SlotManager:
    """槽位管理器

    读操作不加锁；commit 按服务加锁，同一服务的并发晋升串行执行。
    """

    def __init__(self, store: SlotStore = None):
        self.store = store or InMemorySlotStore()
        self._active: Dict[str, Slot] = self.store.load()
        self._locks: Dict[str, asyncio.Lock] = {}

    def current_slot(self, service: str) -> Slot:
        """当前承载100%流量的槽位"""
        return self._active.get(service, DEFAULT_SLOT)

    def other_slot(self, service: str) -> Slot:
        """下一次发布的目标槽位"""
        return self.current_slot(service).other

    async def commit(self, service: str, slot: Slot) -> None:
        """
        设置服务的活动槽位（仅在晋升成功后调用）

        幂等：提交已是活动状态的槽位不做任何写入。

        Raises:
            PersistenceError: 存储不可达，内存状态保持不变
        """
        slot = Slot(slot)
        lock = self._locks.setdefault(service, asyncio.Lock())
        async with lock:
            if self.current_slot(service) is slot:
                logger.debug("槽位已是活动状态", service=service, slot=slot.value)
                return

            updated = dict(self._active)
            updated[service] = slot
            # 文件存储的写入与 fsync 放到线程中，避免阻塞事件循环
            await asyncio.to_thread(self.store.save, updated)
            self._active[service] = slot

            logger.info("切换活动槽位", service=service, slot=slot.value)

    def snapshot(self) -> Dict[str, str]:
        """全部服务的活动槽位"""
        return {service: slot.value for service, slot in self._active.items()}
