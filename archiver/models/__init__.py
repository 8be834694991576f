"""
数据模型模块
定义归档引擎中使用的核心数据结构
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


class MediaKind(str, Enum):
    """
    媒体类型

    取值同时作为输出目录下的子文件夹名
    """

    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    WEBPAGE = "webpage"
    POLL = "poll"
    GEO = "geo"
    CONTACT = "contact"
    VENUE = "venue"
    STICKER = "sticker"
    OTHER = "other"


@dataclass(frozen=True)
class ChannelHandle:
    """
    频道句柄，每次运行只解析一次

    Attributes:
        id: 频道数字ID
        display_name: 频道显示名称
    """

    id: int
    display_name: str


@dataclass(frozen=True)
class MediaDescriptor:
    """
    媒体描述，由消息确定性地推导

    Attributes:
        kind: 媒体类型
        subfolder: 子文件夹名
        file_name: 不含扩展名的文件名
        extension: 扩展名（带点，可能为空）
    """

    kind: MediaKind
    subfolder: str
    file_name: str
    extension: str

    @property
    def basename(self) -> str:
        return f"{self.file_name}{self.extension}"


@dataclass(frozen=True)
class MessageRecord:
    """
    写入进度账本的消息记录

    Attributes:
        id: 消息ID
        text: 消息文本
        timestamp_seconds: 发送时间（Unix秒）
        outgoing: 是否为自己发出的消息
        sender_id: 发送者ID
        has_media: 是否带媒体
        media_kind: 媒体类型
        media_path: 媒体本地路径
        media_file_name: 媒体文件名
    """

    id: int
    text: str
    timestamp_seconds: int
    outgoing: bool
    sender_id: Optional[int]
    has_media: bool
    media_kind: Optional[str] = None
    media_path: Optional[str] = None
    media_file_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "timestampSeconds": self.timestamp_seconds,
            "outgoing": self.outgoing,
            "senderId": self.sender_id,
            "hasMedia": self.has_media,
            "mediaKind": self.media_kind,
            "mediaPath": self.media_path,
            "mediaFileName": self.media_file_name,
        }


@dataclass
class DownloadTask:
    """
    下载任务

    Attributes:
        message: Telegram消息对象
        target_path: 目标文件路径
    """

    message: Any
    target_path: Path


@dataclass
class RunStatistics:
    """
    单个频道一次归档的统计

    Attributes:
        total_files: 带媒体的消息数
        downloaded: 新下载的文件数
        updated: 重新下载（空文件或已更新）的文件数
        skipped: 跳过的文件数
        failed: 下载失败的文件数
    """

    total_files: int = 0
    downloaded: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0

    def merge(self, other: "RunStatistics") -> None:
        """
        累加另一份统计

        Args:
            other: 要合并的统计
        """
        self.total_files += other.total_files
        self.downloaded += other.downloaded
        self.updated += other.updated
        self.skipped += other.skipped
        self.failed += other.failed


@dataclass
class BatchReport:
    """
    批量归档的结果汇总
    """

    completed: List[ChannelHandle] = field(default_factory=list)
    failed: List[ChannelHandle] = field(default_factory=list)
    unresolved: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.unresolved
