"""
进度账本模块
负责按频道追加记录已处理的消息
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Sequence

from archiver.config import write_json_atomic
from archiver.models import MessageRecord

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """账本文件已损坏，无法追加"""


class ProgressLedger:
    """
    进度账本

    每个频道一个JSON文件，内容是批次数组，每个批次是一页消息记录的数组。
    追加时读出整个数组、加入新批次后整体重写，代价与账本大小成正比；
    对目标规模的频道可以接受。

    Attributes:
        output_root: 输出根目录
        file_name: 账本文件名
    """

    def __init__(self, output_root: Path, file_name: str = "all_message.json"):
        """
        初始化进度账本

        Args:
            output_root: 输出根目录
            file_name: 账本文件名
        """
        self.output_root = Path(output_root)
        self.file_name = file_name

    def path_for(self, channel_id: int) -> Path:
        """
        获取频道账本路径

        Args:
            channel_id: 频道ID

        Returns:
            账本文件路径
        """
        return self.output_root / str(channel_id) / self.file_name

    def read(self, channel_id: int) -> List[List[Dict[str, Any]]]:
        """
        读取频道的全部批次

        Args:
            channel_id: 频道ID

        Returns:
            批次列表，账本不存在时为空列表

        Raises:
            LedgerError: 账本内容不是JSON数组
        """
        path = self.path_for(channel_id)
        if not path.exists():
            return []

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise LedgerError(f"账本 {path} 无法解析: {e}") from e

        if not isinstance(data, list):
            raise LedgerError(f"账本 {path} 不是JSON数组")
        return data

    def append(self, channel_id: int, records: Sequence[MessageRecord]) -> None:
        """
        追加一页消息记录

        Args:
            channel_id: 频道ID
            records: 本页消息记录，按获取顺序
        """
        entries = self.read(channel_id)
        entries.append([record.to_dict() for record in records])
        write_json_atomic(self.path_for(channel_id), entries)
        logger.debug(
            "频道 %s 的账本追加了 %d 条记录 (共 %d 批)",
            channel_id,
            len(records),
            len(entries),
        )

    def message_count(self, channel_id: int) -> int:
        """
        统计账本中的消息记录数

        Args:
            channel_id: 频道ID

        Returns:
            记录总数
        """
        return sum(len(entry) for entry in self.read(channel_id))
