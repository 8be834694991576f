"""
测试公共工具: 伪造的消息、客户端和等待函数
"""

import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from archiver.client import ChannelNotFoundError
from archiver.config import ArchiverConfig
from archiver.models import ChannelHandle

OLD_DATE = datetime(2020, 1, 1, tzinfo=timezone.utc)

TAGS = ("photo", "video", "audio", "web_preview", "poll", "geo", "contact", "venue", "sticker")


def make_message(message_id, media=None, mime_type=None, file_name=None, date=OLD_DATE, text="", **tags):
    """
    构造一个带telethon便捷属性的消息

    media 为 "document" 时生成文档负载，其他取值作为标签属性名
    """
    values = {tag: None for tag in TAGS}
    document = None
    if media == "document" or mime_type or file_name:
        attributes = [SimpleNamespace(file_name=file_name)] if file_name else []
        document = SimpleNamespace(mime_type=mime_type, attributes=attributes)
    if media and media != "document":
        values[media] = object()
    values.update(tags)

    return SimpleNamespace(
        id=message_id,
        message=text,
        date=date,
        out=False,
        sender_id=42,
        peer_id=None,
        media=object() if (media or document) else None,
        document=document,
        **values,
    )


class SleepRecorder:
    """记录等待时间，不真正等待"""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeGateway:
    """内存中的客户端，实现归档引擎使用的接口"""

    def __init__(self, messages=(), entities=None, fetch_errors=(), fail_channels=(), missing_channels=()):
        self.messages = {message.id: message for message in messages}
        self.entities = entities or {}
        self.fetch_errors = list(fetch_errors)
        self.fail_channels = set(fail_channels)
        self.missing_channels = set(missing_channels)
        self.connected = True
        self.connect_calls = 0
        self.page_calls = []
        self.downloads = []
        self.download_results = {}
        self.in_flight = 0
        self.peak_in_flight = 0

    def is_connected(self):
        return self.connected

    async def connect(self):
        self.connect_calls += 1
        self.connected = True

    async def ensure_connected(self):
        if not self.connected:
            await self.connect()

    async def disconnect(self):
        self.connected = False

    async def resolve_entity(self, identifier):
        if identifier not in self.entities:
            raise ChannelNotFoundError(identifier)
        return ChannelHandle(id=self.entities[identifier], display_name=identifier)

    async def fetch_message_page(self, channel_id, limit, offset_id):
        self.page_calls.append(offset_id)
        if channel_id in self.missing_channels:
            raise ChannelNotFoundError(str(channel_id))
        if channel_id in self.fail_channels:
            raise ConnectionError("NETWORK unreachable")
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        ids = sorted(i for i in self.messages if i > offset_id)[:limit]
        return [SimpleNamespace(id=i) for i in ids]

    async def fetch_message_details(self, channel_id, ids):
        return [self.messages[i] for i in ids]

    async def download_media(self, message, destination):
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            result = self.download_results.get(message.id, True)
            if isinstance(result, list):
                result = result.pop(0) if result else True
            if isinstance(result, Exception):
                raise result
            if result:
                destination.write_bytes(b"media")
                self.downloads.append(message.id)
            return bool(result)
        finally:
            self.in_flight -= 1


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
def config(tmp_path):
    return ArchiverConfig(
        output_root=tmp_path / "export",
        credentials_file=tmp_path / "config.json",
        message_limit=10,
        page_delay=0,
        batch_cool_down=0,
        download_retry_delay=0,
    )
