"""
媒体模块
负责媒体分类、目标路径计算、新鲜度判断和分批并发下载
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, FrozenSet, List, Optional

from telethon.tl.types import MessageMediaWebPage

from archiver.models import DownloadTask, MediaDescriptor, MediaKind, RunStatistics
from archiver.retry import RetryController, RetryExhaustedError, is_transient

logger = logging.getLogger(__name__)

# 按优先级排列，先匹配者胜出；属性名对应telethon Message的便捷属性
KIND_TAGS = (
    (MediaKind.IMAGE, "photo"),
    (MediaKind.VIDEO, "video"),
    (MediaKind.AUDIO, "audio"),
    (MediaKind.WEBPAGE, "web_preview"),
    (MediaKind.POLL, "poll"),
    (MediaKind.GEO, "geo"),
    (MediaKind.CONTACT, "contact"),
    (MediaKind.VENUE, "venue"),
    (MediaKind.STICKER, "sticker"),
)

MIME_KINDS = (
    ("image", MediaKind.IMAGE),
    ("video", MediaKind.VIDEO),
    ("audio", MediaKind.AUDIO),
    ("sticker", MediaKind.STICKER),
)

ALLOWED_EXTENSIONS = {
    MediaKind.VIDEO: (".mp4",),
    MediaKind.AUDIO: (".mp3",),
    MediaKind.IMAGE: (".jpg", ".jpeg", ".png", ".gif"),
}

DEFAULT_EXTENSIONS = {
    MediaKind.VIDEO: ".mp4",
    MediaKind.IMAGE: ".jpg",
    MediaKind.DOCUMENT: ".doc",
    MediaKind.AUDIO: ".mp3",
    MediaKind.WEBPAGE: ".html",
}


def has_media(message) -> bool:
    return bool(getattr(message, "media", None))


def message_timestamp(message) -> int:
    """
    获取消息发送时间的Unix秒

    Args:
        message: Telegram消息对象（date为datetime或数字）

    Returns:
        Unix时间戳（秒），没有日期时为0
    """
    date = getattr(message, "date", None)
    if date is None:
        return 0
    if isinstance(date, datetime):
        return int(date.timestamp())
    return int(date)


class MediaClassifier:
    """
    媒体分类器

    根据消息的媒体负载确定媒体类型、子文件夹、文件名和扩展名。
    同样的输入总是得到同样的结果，续传时依赖这一点定位已下载的文件。
    """

    @staticmethod
    def media_kind(message) -> MediaKind:
        """
        判断消息的媒体类型

        Args:
            message: Telegram消息对象

        Returns:
            媒体类型，没有媒体时为 OTHER
        """
        if not has_media(message):
            return MediaKind.OTHER

        # 链接预览里的图片和文件属于网页，不按图片或文件归类
        if isinstance(message.media, MessageMediaWebPage):
            return MediaKind.WEBPAGE

        for kind, tag in KIND_TAGS:
            if getattr(message, tag, None):
                return kind

        document = getattr(message, "document", None)
        if document:
            mime_type = getattr(document, "mime_type", None) or ""
            for marker, kind in MIME_KINDS:
                if marker in mime_type:
                    return kind
            return MediaKind.DOCUMENT

        return MediaKind.OTHER

    @staticmethod
    def declared_file_name(message) -> Optional[str]:
        """
        获取发送者声明的文件名

        Args:
            message: Telegram消息对象

        Returns:
            文件名，不存在时返回None
        """
        document = getattr(message, "document", None)
        for attr in getattr(document, "attributes", None) or []:
            file_name = getattr(attr, "file_name", None)
            if file_name:
                # 去掉发送者可能带上的目录部分
                return os.path.basename(file_name.replace("\\", "/"))
        return None

    def classify(self, message) -> MediaDescriptor:
        """
        计算消息的媒体描述

        Args:
            message: Telegram消息对象

        Returns:
            MediaDescriptor对象
        """
        kind = self.media_kind(message)
        file_name = ""
        extension = ""

        declared = None
        if kind is not MediaKind.WEBPAGE:
            declared = self.declared_file_name(message)
        if declared:
            stem, suffix = os.path.splitext(declared)
            file_name = stem
            suffix = suffix.lower()
            if suffix in ALLOWED_EXTENSIONS.get(kind, ()):
                extension = suffix

        if not file_name:
            file_name = str(message.id)

        if not extension:
            extension = DEFAULT_EXTENSIONS.get(kind, "")

        return MediaDescriptor(
            kind=kind,
            subfolder=kind.value,
            file_name=file_name,
            extension=extension,
        )

    @staticmethod
    def resolve_path(descriptor: MediaDescriptor, root: Path) -> Path:
        """
        计算媒体文件的目标路径

        Args:
            descriptor: 媒体描述
            root: 频道输出根目录

        Returns:
            root/<子文件夹>/<文件名><扩展名>
        """
        return Path(root) / descriptor.subfolder / descriptor.basename

    @staticmethod
    def ensure_directory(path: Path) -> None:
        # 多个下载任务可能同时创建同一个目录
        Path(path).parent.mkdir(parents=True, exist_ok=True)


@dataclass(frozen=True)
class DownloadFilter:
    """
    允许下载的媒体集合

    Attributes:
        kinds: 允许的媒体类型值
        extensions: 允许的扩展名（不带点，小写）
        download_all: 是否下载全部
    """

    kinds: FrozenSet[str] = frozenset()
    extensions: FrozenSet[str] = frozenset()
    download_all: bool = False

    @classmethod
    def everything(cls) -> "DownloadFilter":
        return cls(download_all=True)

    @classmethod
    def parse(cls, text: str) -> "DownloadFilter":
        """
        解析逗号分隔的过滤条件，例如 "image,video,pdf" 或 "all"

        Args:
            text: 过滤条件字符串

        Returns:
            DownloadFilter对象
        """
        kinds = set()
        extensions = set()
        known_kinds = {kind.value for kind in MediaKind}

        for item in (part.strip().lower() for part in text.split(",")):
            if not item:
                continue
            if item == "all":
                return cls.everything()
            if item in known_kinds:
                kinds.add(item)
            else:
                extensions.add(item.lstrip("."))

        return cls(kinds=frozenset(kinds), extensions=frozenset(extensions))

    def allows(self, kind: MediaKind, extension: str) -> bool:
        if self.download_all:
            return True
        if kind.value in self.kinds:
            return True
        return extension.lower().lstrip(".") in self.extensions


class DownloadDecision(Enum):
    DOWNLOAD = "download"
    REDOWNLOAD = "redownload"
    SKIP = "skip"


class FreshnessEvaluator:
    """
    新鲜度判断器

    根据磁盘上已有文件的状态决定跳过还是（重新）下载
    """

    def __init__(self, download_filter: DownloadFilter):
        """
        初始化新鲜度判断器

        Args:
            download_filter: 允许下载的媒体集合
        """
        self.download_filter = download_filter

    @staticmethod
    def decide(path: Path, timestamp_seconds: int) -> DownloadDecision:
        """
        根据文件状态给出决定

        Args:
            path: 目标文件路径
            timestamp_seconds: 消息时间（Unix秒）

        Returns:
            下载决定
        """
        try:
            stat = Path(path).stat()
        except FileNotFoundError:
            return DownloadDecision.DOWNLOAD

        # 空文件说明上次传输没有完成
        if stat.st_size == 0:
            return DownloadDecision.REDOWNLOAD
        if timestamp_seconds > stat.st_mtime:
            return DownloadDecision.REDOWNLOAD
        return DownloadDecision.SKIP

    def evaluate(
        self,
        message,
        descriptor: MediaDescriptor,
        path: Path,
        stats: RunStatistics,
    ) -> bool:
        """
        判断消息的媒体是否需要下载，并更新统计

        Args:
            message: Telegram消息对象
            descriptor: 媒体描述
            path: 目标文件路径
            stats: 当前统计

        Returns:
            是否创建下载任务
        """
        if not has_media(message):
            return False

        stats.total_files += 1
        decision = self.decide(path, message_timestamp(message))

        if decision is DownloadDecision.SKIP:
            stats.skipped += 1
            logger.debug("跳过 %s - 已存在且是最新的", path.name)
            return False

        if not self.download_filter.allows(descriptor.kind, descriptor.extension):
            stats.skipped += 1
            logger.debug("跳过 %s - 类型 %s 不在下载范围内", path.name, descriptor.kind.value)
            return False

        if decision is DownloadDecision.REDOWNLOAD:
            stats.updated += 1
            logger.info("文件 %s 为空或已有更新，将重新下载", path.name)
        else:
            stats.downloaded += 1
        return True


class MediaDownloader:
    """
    媒体下载器

    负责创建目录并通过客户端下载单个媒体文件
    """

    def __init__(self, gateway):
        """
        初始化媒体下载器

        Args:
            gateway: 实现 download_media 的客户端
        """
        self.gateway = gateway

    async def download(self, task: DownloadTask) -> bool:
        """
        下载单个任务

        Args:
            task: 下载任务

        Returns:
            文件是否成功写入
        """
        MediaClassifier.ensure_directory(task.target_path)
        ok = await self.gateway.download_media(task.message, task.target_path)
        if not ok:
            return False

        if not task.target_path.exists():
            logger.warning(
                "消息 %s 的下载报告成功但文件不存在: %s",
                task.message.id,
                task.target_path,
            )
            return False
        return True


class DownloadScheduler:
    """
    下载调度器

    任务攒满一批（max_parallel个）后并发执行，整批完成后才接受新任务，
    每批之间冷却一段时间以避免触发限流。

    Attributes:
        max_parallel: 每批最大并发数
        cool_down: 每批之后的冷却秒数
    """

    def __init__(
        self,
        downloader: MediaDownloader,
        stats: RunStatistics,
        max_parallel: int = 5,
        cool_down: float = 3.0,
        retry: Optional[RetryController] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        description: str = "下载",
    ):
        """
        初始化下载调度器

        Args:
            downloader: 媒体下载器
            stats: 用于记录失败数的统计
            max_parallel: 每批最大并发数
            cool_down: 每批之后的冷却秒数
            retry: 批量下载的重试控制器
            sleep: 异步等待函数
            description: 日志中的描述
        """
        if max_parallel < 1:
            raise ValueError("max_parallel 必须大于0")

        self.downloader = downloader
        self.stats = stats
        self.max_parallel = max_parallel
        self.cool_down = cool_down
        self.retry = retry
        self.description = description
        self._sleep = sleep
        self._pending: List[DownloadTask] = []

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def submit(self, task: DownloadTask) -> None:
        """
        加入一个下载任务，批次满时等待整批完成

        Args:
            task: 下载任务
        """
        self._pending.append(task)
        if len(self._pending) >= self.max_parallel:
            logger.info("%s: 开始处理 %d 个下载", self.description, len(self._pending))
            await self._flush()
            await self._sleep(self.cool_down)

    async def drain(self) -> None:
        """
        处理剩余不足一批的任务
        """
        if self._pending:
            logger.info("%s: 开始处理剩余 %d 个下载", self.description, len(self._pending))
            await self._flush()

    async def _flush(self) -> None:
        batch = self._pending
        self._pending = []

        if self.retry is None:
            await self._run_batch(batch)
            return

        try:
            await self.retry.run(lambda: self._run_batch(batch), self.description)
        except RetryExhaustedError as e:
            # 交给页面级的重试处理
            raise e.last_error

    async def _run_batch(self, batch: List[DownloadTask]) -> None:
        """
        并发执行一批任务并等待全部完成

        可重试的失败任务留在batch中，其余任务移出；
        存在可重试失败时在整批结束后抛出

        Args:
            batch: 本批任务，会被原地修改
        """
        results = await asyncio.gather(
            *(self.downloader.download(task) for task in batch),
            return_exceptions=True,
        )

        retry_tasks = []
        transient_error = None
        for task, result in zip(batch, results):
            if isinstance(result, Exception):
                if is_transient(result):
                    retry_tasks.append(task)
                    transient_error = result
                    continue
                self.stats.failed += 1
                logger.error(
                    "消息 %s 的媒体下载失败 (%s): %s",
                    task.message.id,
                    task.target_path,
                    result,
                )
            elif isinstance(result, BaseException):
                raise result
            elif not result:
                self.stats.failed += 1
                logger.warning(
                    "消息 %s 的媒体未能下载到 %s", task.message.id, task.target_path
                )

        batch[:] = retry_tasks
        if transient_error is not None:
            raise transient_error
