"""
客户端模块
对telethon客户端做薄封装，提供归档引擎需要的连接、解析、分页和下载操作
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Sequence

from telethon import TelegramClient, utils
from telethon.errors import (
    ChannelInvalidError,
    ChannelPrivateError,
    UsernameInvalidError,
    UsernameNotOccupiedError,
)
from telethon.sessions import StringSession
from telethon.tl.types import Channel, Chat

from archiver.config import ArchiverConfig, Credentials
from archiver.models import ChannelHandle

logger = logging.getLogger(__name__)

# Telegram 官方通知账号
SERVICE_NOTIFICATIONS_ID = 777000

NOT_FOUND_ERRORS = (
    ValueError,
    UsernameNotOccupiedError,
    UsernameInvalidError,
    ChannelPrivateError,
    ChannelInvalidError,
)


class AuthenticationError(Exception):
    """无法建立已授权的会话"""


class ChannelNotFoundError(Exception):
    """
    频道标识符无法解析

    Attributes:
        identifier: 原始标识符
    """

    def __init__(self, identifier: str, reason: Any = None):
        message = f"无法解析频道: {identifier}"
        if reason is not None:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.identifier = identifier


def is_numeric_identifier(identifier: str) -> bool:
    return identifier.lstrip("-").isdigit()


def get_dialog_type(dialog) -> str:
    if dialog.is_channel:
        return "Channel"
    if dialog.is_group:
        return "Group"
    if dialog.is_user:
        return "User"
    return "Unknown"


class TelegramGateway:
    """
    Telegram客户端适配器

    Attributes:
        client: telethon客户端
    """

    def __init__(self, client: TelegramClient):
        """
        初始化客户端适配器

        Args:
            client: telethon客户端
        """
        self.client = client
        self._entities: Dict[int, Any] = {}

    @classmethod
    def from_credentials(
        cls, credentials: Credentials, config: ArchiverConfig
    ) -> "TelegramGateway":
        """
        用保存的会话创建新的客户端

        Args:
            credentials: API凭证和会话
            config: 归档器配置

        Returns:
            TelegramGateway对象
        """
        client = TelegramClient(
            StringSession(credentials.session_id or None),
            credentials.api_id,
            credentials.api_hash,
            timeout=config.connection_timeout,
            request_retries=config.request_retries,
            connection_retries=config.connection_retries,
            retry_delay=config.retry_delay,
            auto_reconnect=True,
            flood_sleep_threshold=config.flood_sleep_threshold,
            device_model=config.session_name,
        )
        return cls(client)

    def is_connected(self) -> bool:
        return self.client.is_connected()

    async def connect(self, require_authorization: bool = True) -> None:
        """
        连接到Telegram服务器

        Args:
            require_authorization: 是否要求会话已授权

        Raises:
            AuthenticationError: 会话未授权
        """
        await self.client.connect()
        if require_authorization and not await self.client.is_user_authorized():
            await self.disconnect()
            raise AuthenticationError("会话未授权，请先重新登录")

    async def ensure_connected(self) -> None:
        """
        断线时尝试重新连接
        """
        if self.is_connected():
            return
        logger.info("客户端已断开，正在重新连接...")
        await self.connect()
        logger.info("重新连接成功")

    async def disconnect(self) -> None:
        if self.client.is_connected():
            await self.client.disconnect()

    def export_session(self) -> str:
        return self.client.session.save()

    async def _input_entity(self, channel_id: int):
        if channel_id in self._entities:
            return self._entities[channel_id]

        try:
            return await self.client.get_input_entity(channel_id)
        except ValueError:
            pass

        # 新会话的实体缓存为空，拉取对话列表后再试一次
        await self.client.get_dialogs()
        try:
            return await self.client.get_input_entity(channel_id)
        except ValueError as e:
            raise ChannelNotFoundError(str(channel_id), e) from e

    async def resolve_entity(self, identifier: str) -> ChannelHandle:
        """
        把用户名、链接片段或数字ID解析为频道句柄

        Args:
            identifier: 频道标识符

        Returns:
            ChannelHandle对象

        Raises:
            ChannelNotFoundError: 无法解析
        """
        try:
            if is_numeric_identifier(identifier):
                target = await self._input_entity(int(identifier))
            else:
                target = identifier
            entity = await self.client.get_entity(target)
        except NOT_FOUND_ERRORS as e:
            raise ChannelNotFoundError(identifier, e) from e

        channel_id = utils.get_peer_id(entity)
        self._entities[channel_id] = entity
        return ChannelHandle(id=channel_id, display_name=utils.get_display_name(entity))

    async def fetch_message_page(
        self, channel_id: int, limit: int, offset_id: int
    ) -> List[Any]:
        """
        获取offset_id之后的一页消息，按ID升序

        Args:
            channel_id: 频道ID
            limit: 每页数量
            offset_id: 起始消息ID（不含）

        Returns:
            消息列表，为空表示没有更多消息
        """
        entity = await self._input_entity(channel_id)
        messages = await self.client.get_messages(
            entity, limit=limit, offset_id=offset_id, reverse=True
        )
        return list(messages)

    async def fetch_message_details(
        self, channel_id: int, ids: Sequence[int]
    ) -> List[Any]:
        """
        按ID获取完整消息

        Args:
            channel_id: 频道ID
            ids: 消息ID列表

        Returns:
            消息列表（已删除的消息被过滤）
        """
        if not ids:
            return []
        entity = await self._input_entity(channel_id)
        messages = await self.client.get_messages(entity, ids=list(ids))
        return [message for message in messages if message is not None]

    async def download_media(self, message, destination: Path) -> bool:
        """
        下载消息的媒体

        Args:
            message: Telegram消息对象
            destination: 目标文件路径

        Returns:
            是否下载成功
        """
        result = await self.client.download_media(message, file=str(destination))
        return result is not None

    async def list_dialogs(self) -> List[Dict[str, Any]]:
        """
        列出账户加入的频道和群组

        Returns:
            对话信息列表
        """
        dialogs = []
        async for dialog in self.client.iter_dialogs():
            if dialog.id == SERVICE_NOTIFICATIONS_ID:
                continue
            if not isinstance(dialog.entity, (Channel, Chat)):
                continue

            dialogs.append(
                {
                    "id": dialog.id,
                    "name": dialog.title,
                    "type": get_dialog_type(dialog),
                    "username": getattr(dialog.entity, "username", None),
                }
            )
        return dialogs
