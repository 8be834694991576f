#!/usr/bin/env python3
"""
Telegram Channel Archiver - 主入口

把Telegram频道中的全部媒体附件归档到本地

功能:
- 批量归档频道列表中的频道
- 单个频道归档（可按类型/扩展名过滤）
- 列出账户加入的频道和群组
- 断点续传和网络错误自动重试

使用方法:
    python main.py batch channels.txt
    python main.py channel some_channel --only image,video
    python main.py dialogs

版本: 1.0.0
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from archiver import __version__
from archiver.auth import AuthManager
from archiver.client import AuthenticationError, TelegramGateway
from archiver.config import (
    ArchiverConfig,
    ConfigurationError,
    CredentialsStore,
    setup_logging,
)
from archiver.media import DownloadFilter
from archiver.retry import RetryController, RetryExhaustedError, RetryPolicy
from archiver.scraper import BatchArchiver, read_channel_list

logger = logging.getLogger("archiver")


class ArgumentParser(argparse.ArgumentParser):
    """参数错误时以状态码1退出"""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="tg-archiver", description="归档Telegram频道中的媒体文件"
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument("--config", default="archiver.json", help="配置文件路径")
    parser.add_argument("--credentials", help="凭证文件路径 (默认 config.json)")
    parser.add_argument("--output", help="输出根目录")
    parser.add_argument("--log-level", default="INFO", help="日志级别")
    parser.add_argument("--log-file", help="日志文件路径")

    commands = parser.add_subparsers(dest="command", metavar="command")
    commands.required = True

    batch = commands.add_parser("batch", help="批量归档频道列表文件中的频道")
    batch.add_argument("channels_file", help="频道列表文件，每行一个频道")

    channel = commands.add_parser("channel", help="归档单个频道")
    channel.add_argument("identifier", help="频道ID、用户名或链接")
    channel.add_argument(
        "--only",
        default="all",
        help="只下载指定类型或扩展名，逗号分隔，例如 image,video,pdf",
    )

    commands.add_parser("dialogs", help="列出账户加入的频道和群组")
    return parser


class ArchiverApp:
    """
    归档器应用程序

    协调认证、客户端和归档引擎
    """

    def __init__(self, config: ArchiverConfig):
        """
        初始化应用程序

        Args:
            config: 归档器配置
        """
        self.config = config
        self.auth = AuthManager(CredentialsStore(config.credentials_file), config)
        self.connect_retry = RetryController(
            RetryPolicy(
                max_retries=config.max_retries,
                base_delay=config.retry_base_delay,
                max_delay=config.retry_max_delay,
            )
        )

    async def initialize_client(self) -> TelegramGateway:
        """
        建立已授权的客户端，网络错误时重试

        Returns:
            已连接的客户端适配器
        """
        logger.info("正在连接Telegram服务器...")
        return await self.connect_retry.run(self.auth.authenticate, "连接Telegram")

    async def _run_archiver(
        self, identifiers: List[str], download_filter: DownloadFilter, recover: bool
    ) -> int:
        gateway = await self.initialize_client()
        archiver = BatchArchiver(
            self.auth.create_gateway,
            self.config,
            download_filter=download_filter,
            recover_channels=recover,
        )
        await archiver.open(gateway)
        try:
            await archiver.run(identifiers)
        finally:
            await archiver.close()
        return 0

    async def batch(self, channels_file: str) -> int:
        """
        批量归档

        Args:
            channels_file: 频道列表文件

        Returns:
            退出码
        """
        if not Path(channels_file).is_file():
            logger.error("频道列表文件不存在: %s", channels_file)
            return 1

        identifiers = read_channel_list(channels_file)
        if not identifiers:
            logger.warning("频道列表 %s 中没有频道", channels_file)
            return 0

        return await self._run_archiver(
            identifiers, DownloadFilter.everything(), recover=True
        )

    async def channel(self, identifier: str, only: str) -> int:
        """
        归档单个频道

        Args:
            identifier: 频道标识符
            only: 下载过滤条件

        Returns:
            退出码
        """
        return await self._run_archiver(
            [identifier], DownloadFilter.parse(only), recover=False
        )

    async def dialogs(self) -> int:
        """
        列出账户加入的频道和群组

        Returns:
            退出码
        """
        gateway = await self.initialize_client()
        try:
            dialogs = await gateway.list_dialogs()
        finally:
            await gateway.disconnect()

        for i, dialog in enumerate(dialogs, 1):
            username = dialog["username"] or "no_username"
            print(
                f"[{i}] {dialog['name']} (ID: {dialog['id']}, 类型: {dialog['type']}, 用户名: @{username})"
            )
        return 0

    async def dispatch(self, args: argparse.Namespace) -> int:
        if args.command == "batch":
            return await self.batch(args.channels_file)
        if args.command == "channel":
            return await self.channel(args.identifier, args.only)
        return await self.dialogs()


def main(argv: Optional[List[str]] = None) -> int:
    """
    主函数

    Args:
        argv: 命令行参数

    Returns:
        退出码
    """
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    try:
        config = ArchiverConfig.load(args.config)
        if args.output:
            config.output_root = Path(args.output)
        if args.credentials:
            config.credentials_file = Path(args.credentials)

        app = ArchiverApp(config)
        return asyncio.run(app.dispatch(args))

    except KeyboardInterrupt:
        print("\n程序被中断，正在退出...")
        return 0
    except (AuthenticationError, ConfigurationError) as e:
        logger.error("%s", e)
        return 1
    except RetryExhaustedError as e:
        logger.error("无法连接到Telegram: %s", e)
        return 1
    except Exception:
        logger.exception("批量下载过程中出现未预期的错误")
        return 1


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
