"""
配置和状态管理模块
负责静态配置、凭证文件、游标文件的读写以及日志初始化
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class ConfigurationError(Exception):
    """配置文件缺失或无法解析"""


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    初始化日志

    Args:
        level: 日志级别名称
        log_file: 可选的日志文件路径
    """
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    # telethon 在重连时非常啰嗦
    logging.getLogger("telethon").setLevel(logging.WARNING)


def write_json_atomic(path: Path, data: Any) -> None:
    """
    原子地写入JSON文件（先写临时文件再替换）

    Args:
        path: 目标路径
        data: 可JSON序列化的数据
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class JsonStateFile:
    """
    扁平JSON状态文件

    更新时与已有内容合并，从不整体覆盖

    Attributes:
        path: 状态文件路径
    """

    def __init__(self, path: Union[str, Path]):
        """
        初始化状态文件

        Args:
            path: 状态文件路径
        """
        self.path = Path(path)

    def load(self) -> Dict[str, Any]:
        """
        加载状态文件

        Returns:
            状态字典，文件不存在或损坏时返回空字典
        """
        if not self.path.exists():
            return {}

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.error("读取状态文件 %s 失败: %s", self.path, e)
            return {}

        if not isinstance(data, dict):
            logger.error("状态文件 %s 不是JSON对象，已忽略", self.path)
            return {}
        return data

    def update(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """
        合并并保存状态

        Args:
            values: 需要更新的键值

        Returns:
            合并后的完整状态
        """
        merged = {**self.load(), **values}
        write_json_atomic(self.path, merged)
        return merged


def parse_api_id(value: Any, source: Any) -> int:
    """
    校验并转换API ID

    Args:
        value: 原始值
        source: 值的来源，用于错误信息

    Returns:
        API ID

    Raises:
        ConfigurationError: 不是正整数
    """
    try:
        api_id = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{source} 中的 apiId 必须是数字: {value!r}") from None
    if api_id <= 0:
        raise ConfigurationError(f"{source} 中的 apiId 必须是正数: {api_id}")
    return api_id


@dataclass
class Credentials:
    """
    Telegram API凭证和会话

    Attributes:
        api_id: Telegram API ID
        api_hash: Telegram API Hash
        session_id: StringSession序列化字符串
    """

    api_id: Optional[int] = None
    api_hash: Optional[str] = None
    session_id: str = ""

    @property
    def complete(self) -> bool:
        return bool(self.api_id) and bool(self.api_hash)


class CredentialsStore(JsonStateFile):
    """
    凭证文件 (apiId, apiHash, sessionId)
    """

    def get_credentials(self) -> Credentials:
        """
        读取凭证

        Returns:
            Credentials对象

        Raises:
            ConfigurationError: apiId不是数字
        """
        data = self.load()
        api_id = data.get("apiId")
        if api_id is not None:
            api_id = parse_api_id(api_id, self.path)

        return Credentials(
            api_id=api_id,
            api_hash=data.get("apiHash"),
            session_id=data.get("sessionId") or "",
        )

    def save_credentials(self, credentials: Credentials) -> None:
        """
        保存凭证

        Args:
            credentials: 要保存的凭证
        """
        self.update(
            {
                "apiId": credentials.api_id,
                "apiHash": credentials.api_hash,
                "sessionId": credentials.session_id,
            }
        )


class SelectionStore(JsonStateFile):
    """
    游标文件 {channelId, messageOffsetId}
    """

    def get_selection(self) -> Dict[str, Any]:
        data = self.load()
        return {
            "channelId": data.get("channelId"),
            "messageOffsetId": data.get("messageOffsetId") or 0,
        }

    def save_selection(
        self, channel_id: Optional[int] = None, message_offset_id: Optional[int] = None
    ) -> None:
        """
        保存游标，只写入给定的字段

        Args:
            channel_id: 频道ID
            message_offset_id: 最后处理的消息ID
        """
        values: Dict[str, Any] = {}
        if channel_id is not None:
            values["channelId"] = channel_id
        if message_offset_id is not None:
            values["messageOffsetId"] = message_offset_id
        self.update(values)


@dataclass
class ArchiverConfig:
    """
    归档器静态配置

    Attributes:
        output_root: 输出根目录
        credentials_file: 凭证文件路径
        selection_file_name: 游标文件名（位于输出根目录下）
        ledger_file_name: 每个频道的账本文件名
        session_name: 交互登录时使用的设备名
        message_limit: 每页消息数
        max_parallel_downloads: 最大并发下载数
        batch_cool_down: 每批下载后的冷却秒数
        page_delay: 每页之间的间隔秒数
        page_timeout: 单页处理超时秒数
        max_retries: 页面和频道级最大重试次数
        retry_base_delay: 指数退避基数（秒）
        retry_max_delay: 指数退避上限（秒）
        download_retries: 批量下载最大重试次数
        download_retry_delay: 批量下载固定重试间隔（秒）
        connection_retries: telethon连接重试次数
        connection_timeout: telethon请求超时（秒）
        request_retries: telethon请求重试次数
        retry_delay: telethon重连间隔（秒）
        flood_sleep_threshold: 自动等待FloodWait的阈值（秒）
    """

    output_root: Path = Path("export")
    credentials_file: Path = Path("config.json")
    selection_file_name: str = "last_selection.json"
    ledger_file_name: str = "all_message.json"
    session_name: str = "archiver"
    message_limit: int = 100
    max_parallel_downloads: int = 5
    batch_cool_down: float = 3.0
    page_delay: float = 1.0
    page_timeout: float = 300.0
    max_retries: int = 5
    retry_base_delay: float = 3.0
    retry_max_delay: float = 30.0
    download_retries: int = 3
    download_retry_delay: float = 5.0
    connection_retries: int = 10
    connection_timeout: int = 60
    request_retries: int = 5
    retry_delay: int = 5
    flood_sleep_threshold: int = 60

    def __post_init__(self):
        self.output_root = Path(self.output_root)
        self.credentials_file = Path(self.credentials_file)
        if self.max_parallel_downloads < 1:
            raise ConfigurationError("max_parallel_downloads 必须大于0")
        if self.message_limit < 1:
            raise ConfigurationError("message_limit 必须大于0")

    @property
    def selection_file(self) -> Path:
        return self.output_root / self.selection_file_name

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> "ArchiverConfig":
        """
        从JSON文件和环境变量加载配置

        Args:
            path: 配置文件路径，不存在时使用默认值

        Returns:
            ArchiverConfig对象

        Raises:
            ConfigurationError: 配置文件无法解析
        """
        values: Dict[str, Any] = {}

        if path and Path(path).exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    values = json.load(f)
            except (json.JSONDecodeError, OSError) as e:
                raise ConfigurationError(f"无法读取配置文件 {path}: {e}") from e

            if not isinstance(values, dict):
                raise ConfigurationError(f"配置文件 {path} 必须是JSON对象")

        known = {f.name for f in fields(cls)}
        for key in sorted(set(values) - known):
            logger.warning("忽略未知配置项: %s", key)
        values = {k: v for k, v in values.items() if k in known}

        env_root = os.environ.get("ARCHIVER_OUTPUT_ROOT")
        if env_root:
            values["output_root"] = env_root

        return cls(**values)
