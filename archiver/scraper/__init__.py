"""
归档模块
负责频道的分页归档、游标续传和多频道批量调度
"""

import asyncio
import functools
import logging
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from telethon.errors import RPCError

from archiver.client import ChannelNotFoundError, is_numeric_identifier
from archiver.config import ArchiverConfig, SelectionStore
from archiver.ledger import LedgerError, ProgressLedger
from archiver.media import (
    DownloadFilter,
    DownloadScheduler,
    FreshnessEvaluator,
    MediaClassifier,
    MediaDownloader,
    has_media,
    message_timestamp,
)
from archiver.models import (
    BatchReport,
    ChannelHandle,
    DownloadTask,
    MediaDescriptor,
    MessageRecord,
    RunStatistics,
)
from archiver.retry import (
    RetryController,
    RetryExhaustedError,
    RetryPolicy,
    is_transient,
)

logger = logging.getLogger(__name__)

LINK_MARKERS = ("://", "t.me/")


def normalize_identifier(line: str) -> str:
    """
    规范化频道标识符，链接只保留最后一段路径

    Args:
        line: 原始输入

    Returns:
        频道标识符
    """
    identifier = line.strip()
    if any(marker in identifier for marker in LINK_MARKERS):
        identifier = identifier.split("?", 1)[0].split("#", 1)[0].rstrip("/")
        identifier = identifier.rsplit("/", 1)[-1]
    return identifier


def read_channel_list(path) -> List[str]:
    """
    读取频道列表文件，每行一个标识符，忽略空行和 # 开头的注释

    Args:
        path: 列表文件路径

    Returns:
        按文件顺序排列的频道标识符
    """
    identifiers = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            identifier = normalize_identifier(line)
            if identifier:
                identifiers.append(identifier)
    return identifiers


def report_statistics(channel: ChannelHandle, stats: RunStatistics) -> None:
    logger.info("频道 %s (%s) 归档完成!", channel.display_name, channel.id)
    logger.info("处理的文件总数: %d", stats.total_files)
    logger.info("新下载: %d", stats.downloaded)
    logger.info("重新下载: %d", stats.updated)
    logger.info("跳过 (已是最新): %d", stats.skipped)
    if stats.failed:
        logger.warning("下载失败: %d", stats.failed)


class MessageParser:
    """
    消息解析器

    负责将Telegram消息对象解析为账本记录
    """

    @staticmethod
    def parse_sender(message) -> Optional[int]:
        """
        解析消息发送者ID

        Args:
            message: Telegram消息对象

        Returns:
            发送者ID，频道帖子可能为None
        """
        sender_id = getattr(message, "sender_id", None)
        if sender_id is not None:
            return sender_id
        peer = getattr(message, "peer_id", None)
        return getattr(peer, "user_id", None)

    def parse(
        self,
        message,
        descriptor: Optional[MediaDescriptor] = None,
        media_path: Optional[Path] = None,
    ) -> MessageRecord:
        """
        解析单条消息

        Args:
            message: Telegram消息对象
            descriptor: 媒体描述（无媒体时为None）
            media_path: 媒体目标路径

        Returns:
            MessageRecord对象
        """
        return MessageRecord(
            id=message.id,
            text=getattr(message, "message", None) or "",
            timestamp_seconds=message_timestamp(message),
            outgoing=bool(getattr(message, "out", False)),
            sender_id=self.parse_sender(message),
            has_media=has_media(message),
            media_kind=descriptor.kind.value if descriptor else None,
            media_path=str(media_path) if media_path else None,
            media_file_name=media_path.name if media_path else None,
        )


class CursorState(Enum):
    FRESH = "fresh"
    RESUMING = "resuming"


class CursorManager:
    """
    分页游标管理器

    记录每个频道最后处理的消息ID并持久化。游标在一次运行中只增不减，
    只有当请求的频道与保存的频道不同时才归零。

    Attributes:
        store: 游标文件
        channel_id: 当前频道ID
        offset: 当前游标
        state: 游标状态
    """

    def __init__(self, store: SelectionStore):
        """
        初始化游标管理器

        Args:
            store: 游标文件
        """
        self.store = store
        self.channel_id: Optional[int] = None
        self.offset = 0
        self.state = CursorState.FRESH

    @staticmethod
    def _same_channel(persisted, channel_id: int) -> bool:
        try:
            return int(persisted) == int(channel_id)
        except (TypeError, ValueError):
            return False

    def start(self, channel_id: int) -> int:
        """
        开始处理一个频道，返回起始游标

        Args:
            channel_id: 频道ID

        Returns:
            起始消息ID（0表示从头开始）
        """
        selection = self.store.get_selection()
        offset = int(selection["messageOffsetId"] or 0)

        if offset and self._same_channel(selection["channelId"], channel_id):
            self.state = CursorState.RESUMING
            logger.info("频道 %s 从消息 %d 之后继续", channel_id, offset)
        else:
            self.state = CursorState.FRESH
            offset = 0

        self.channel_id = channel_id
        self.offset = offset
        self.store.save_selection(channel_id=channel_id, message_offset_id=offset)
        return offset

    def advance(self, message_id: int) -> int:
        """
        推进游标并持久化

        Args:
            message_id: 本页最后一条消息的ID

        Returns:
            推进后的游标
        """
        if message_id < self.offset:
            logger.warning(
                "频道 %s 收到比游标 %d 更小的消息ID %d，游标保持不变",
                self.channel_id,
                self.offset,
                message_id,
            )
            return self.offset

        self.offset = message_id
        self.state = CursorState.RESUMING
        self.store.save_selection(
            channel_id=self.channel_id, message_offset_id=message_id
        )
        return self.offset


class ChannelArchiver:
    """
    频道归档器

    逐页获取消息、下载媒体、写入账本并推进游标，直到取到空页
    """

    def __init__(
        self,
        gateway,
        config: ArchiverConfig,
        ledger: ProgressLedger,
        cursor: CursorManager,
        download_filter: DownloadFilter,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        初始化频道归档器

        Args:
            gateway: Telegram客户端适配器
            config: 归档器配置
            ledger: 进度账本
            cursor: 游标管理器
            download_filter: 允许下载的媒体集合
            sleep: 异步等待函数
        """
        self.gateway = gateway
        self.config = config
        self.ledger = ledger
        self.cursor = cursor
        self.classifier = MediaClassifier()
        self.parser = MessageParser()
        self.evaluator = FreshnessEvaluator(download_filter)
        self._sleep = sleep

        self.page_retry = RetryController(
            RetryPolicy(
                max_retries=config.max_retries,
                base_delay=config.retry_base_delay,
                max_delay=config.retry_max_delay,
            ),
            sleep=sleep,
        )
        self.download_retry = RetryController(
            RetryPolicy(
                max_retries=config.download_retries,
                max_delay=config.retry_max_delay,
                fixed_delay=config.download_retry_delay,
            ),
            sleep=sleep,
        )

    def channel_root(self, channel: ChannelHandle) -> Path:
        return self.config.output_root / str(channel.id)

    async def archive(self, channel: ChannelHandle) -> RunStatistics:
        """
        归档整个频道

        Args:
            channel: 频道句柄

        Returns:
            本次运行的统计

        Raises:
            RetryExhaustedError: 某一页的重试次数用尽
        """
        stats = RunStatistics()
        self.channel_root(channel).mkdir(parents=True, exist_ok=True)
        offset = self.cursor.start(channel.id)
        logger.info("正在下载频道 %s (%s) 的媒体", channel.display_name, channel.id)

        while True:
            page, page_stats = await self.page_retry.run(
                functools.partial(self._archive_page, channel, offset),
                f"频道 {channel.id} 消息 {offset} 之后的页面",
                reconnect=self.gateway.ensure_connected,
            )
            if not page:
                break

            stats.merge(page_stats)
            offset = self.cursor.advance(page[-1].id)
            await self._sleep(self.config.page_delay)

        report_statistics(channel, stats)
        return stats

    async def _archive_page(
        self, channel: ChannelHandle, offset: int
    ) -> Tuple[List, RunStatistics]:
        page = await self.gateway.fetch_message_page(
            channel.id, self.config.message_limit, offset
        )
        if not page:
            return [], RunStatistics()

        page_stats = await asyncio.wait_for(
            self._process_page(channel, page), timeout=self.config.page_timeout
        )
        return page, page_stats

    async def _process_page(self, channel: ChannelHandle, page: Sequence) -> RunStatistics:
        """
        处理一页消息：判断、下载、写账本

        Args:
            channel: 频道句柄
            page: 本页消息

        Returns:
            本页统计
        """
        root = self.channel_root(channel)
        details = await self.gateway.fetch_message_details(
            channel.id, [message.id for message in page]
        )

        stats = RunStatistics()
        scheduler = DownloadScheduler(
            MediaDownloader(self.gateway),
            stats,
            max_parallel=self.config.max_parallel_downloads,
            cool_down=self.config.batch_cool_down,
            retry=self.download_retry,
            sleep=self._sleep,
            description=f"频道 {channel.id} 下载",
        )

        records = []
        for message in details:
            descriptor = None
            path = None
            if has_media(message):
                descriptor = self.classifier.classify(message)
                path = self.classifier.resolve_path(descriptor, root)
                if self.evaluator.evaluate(message, descriptor, path, stats):
                    logger.info("正在下载消息 %s -> %s", message.id, path.name)
                    await scheduler.submit(DownloadTask(message=message, target_path=path))
            records.append(self.parser.parse(message, descriptor, path))

        await scheduler.drain()
        self.ledger.append(channel.id, records)
        return stats


def _channel_retryable(error: BaseException) -> bool:
    return isinstance(error, RetryExhaustedError) or is_transient(error)


class BatchArchiver:
    """
    批量归档器

    依次归档多个频道。某个频道重试用尽时重建客户端再试，
    最终失败只记录日志，继续处理下一个频道。

    Attributes:
        gateway: 当前客户端适配器
        report: 批量结果
    """

    def __init__(
        self,
        gateway_factory: Callable[[], object],
        config: ArchiverConfig,
        download_filter: Optional[DownloadFilter] = None,
        recover_channels: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        初始化批量归档器

        Args:
            gateway_factory: 创建新客户端适配器的函数
            config: 归档器配置
            download_filter: 允许下载的媒体集合，默认全部
            recover_channels: 频道重试用尽时是否重建客户端再试
            sleep: 异步等待函数
        """
        self.gateway_factory = gateway_factory
        self.config = config
        self.download_filter = download_filter or DownloadFilter.everything()
        self.recover_channels = recover_channels
        self.gateway = None
        self.report = BatchReport()
        self.ledger = ProgressLedger(config.output_root, config.ledger_file_name)
        self.cursor = CursorManager(SelectionStore(config.selection_file))
        self._sleep = sleep

        policy = RetryPolicy(
            max_retries=config.max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        )
        self.connect_retry = RetryController(policy, sleep=sleep)
        self.channel_retry = RetryController(
            policy, retryable=_channel_retryable, sleep=sleep
        )

    async def open(self, gateway=None) -> None:
        """
        准备客户端，传入已连接的客户端时直接使用

        Args:
            gateway: 已连接的客户端适配器
        """
        if gateway is not None:
            self.gateway = gateway
            return
        await self._connect_new()

    async def _connect_new(self) -> None:
        gateway = self.gateway_factory()
        await self.connect_retry.run(gateway.connect, "连接Telegram")
        self.gateway = gateway

    async def recreate_gateway(self) -> None:
        """
        丢弃当前客户端并用保存的会话重新创建
        """
        logger.info("正在重建Telegram客户端...")
        if self.gateway is not None:
            try:
                await self.gateway.disconnect()
            except (OSError, RPCError) as e:
                logger.warning("断开旧客户端时出错: %s", e)
        await self._connect_new()

    async def close(self) -> None:
        if self.gateway is not None:
            logger.info("正在断开客户端...")
            await self.gateway.disconnect()
            self.gateway = None

    async def _resolve_one(self, identifier: str) -> ChannelHandle:
        return await self.gateway.resolve_entity(identifier)

    async def resolve_all(self, identifiers: Sequence[str]) -> List[ChannelHandle]:
        """
        在开始下载前解析全部频道标识符，单个失败不影响其他

        Args:
            identifiers: 频道标识符列表

        Returns:
            解析成功的频道句柄，顺序与输入一致
        """
        handles = []
        for identifier in identifiers:
            if is_numeric_identifier(identifier):
                handles.append(ChannelHandle(id=int(identifier), display_name=identifier))
                continue

            try:
                handle = await self.connect_retry.run(
                    functools.partial(self._resolve_one, identifier),
                    f"解析频道 {identifier}",
                    reconnect=self.gateway.ensure_connected,
                )
            except (ChannelNotFoundError, RetryExhaustedError) as e:
                logger.error("跳过频道 %s: %s", identifier, e)
                self.report.unresolved.append(identifier)
                continue

            logger.info("频道 %s 解析为 %s (%s)", identifier, handle.display_name, handle.id)
            handles.append(handle)
        return handles

    async def _archive_once(self, channel: ChannelHandle) -> RunStatistics:
        archiver = ChannelArchiver(
            self.gateway,
            self.config,
            self.ledger,
            self.cursor,
            self.download_filter,
            sleep=self._sleep,
        )
        return await archiver.archive(channel)

    async def archive_channel(self, channel: ChannelHandle) -> RunStatistics:
        """
        归档单个频道，必要时重建客户端后重试

        Args:
            channel: 频道句柄

        Returns:
            本次运行的统计

        Raises:
            RetryExhaustedError: 频道级重试也已用尽
        """
        if not self.recover_channels:
            return await self._archive_once(channel)

        return await self.channel_retry.run(
            functools.partial(self._archive_once, channel),
            f"频道 {channel.id}",
            reconnect=self.recreate_gateway,
        )

    async def run(self, identifiers: Sequence[str]) -> BatchReport:
        """
        依次归档全部频道

        Args:
            identifiers: 频道标识符列表

        Returns:
            批量结果
        """
        self.report = BatchReport()
        logger.info("共有 %d 个频道待下载", len(identifiers))

        if self.gateway is None:
            await self.open()

        channels = await self.resolve_all(identifiers)
        for i, channel in enumerate(channels, 1):
            logger.info("[%d/%d] 正在归档: %s", i, len(channels), channel.display_name)
            try:
                await self.archive_channel(channel)
            except (
                ChannelNotFoundError,
                RetryExhaustedError,
                RPCError,
                LedgerError,
            ) as e:
                logger.error("频道 %s 归档失败，继续下一个频道: %s", channel.id, e)
                self.report.failed.append(channel)
                continue
            self.report.completed.append(channel)

        logger.info(
            "批量归档结束: 成功 %d, 失败 %d, 无法解析 %d",
            len(self.report.completed),
            len(self.report.failed),
            len(self.report.unresolved),
        )
        return self.report
