"""
认证模块
负责Telegram会话的建立、交互式登录和会话保存
"""

import logging
from io import StringIO

import qrcode
from telethon.errors import SessionPasswordNeededError

from archiver.client import AuthenticationError, TelegramGateway
from archiver.config import (
    ArchiverConfig,
    ConfigurationError,
    Credentials,
    CredentialsStore,
    parse_api_id,
)

logger = logging.getLogger(__name__)


def render_qr_ascii(url: str) -> str:
    """
    把登录链接渲染为终端可显示的ASCII二维码

    Args:
        url: QR登录链接

    Returns:
        二维码文本
    """
    qr = qrcode.QRCode(box_size=1, border=1)
    qr.add_data(url)
    qr.make()

    buffer = StringIO()
    qr.print_ascii(out=buffer)
    return buffer.getvalue()


class AuthManager:
    """
    认证管理器

    启动时构造一次，持有当前会话；需要重建客户端时通过 create_gateway 复用已保存的会话

    Attributes:
        store: 凭证文件
        config: 归档器配置
        credentials: 当前凭证
    """

    def __init__(self, store: CredentialsStore, config: ArchiverConfig):
        """
        初始化认证管理器

        Args:
            store: 凭证文件
            config: 归档器配置
        """
        self.store = store
        self.config = config
        self.credentials: Credentials = store.get_credentials()

    def create_gateway(self) -> TelegramGateway:
        """
        用当前会话创建一个新的（未连接的）客户端

        Returns:
            TelegramGateway对象
        """
        return TelegramGateway.from_credentials(self.credentials, self.config)

    def prompt_api_credentials(self) -> None:
        """
        从终端读取API凭证并保存到凭证文件

        Raises:
            ConfigurationError: 输入的凭证无效
        """
        print("\n=== 需要配置API凭证 ===")
        print("请从 https://my.telegram.org 获取API凭证")

        api_id = parse_api_id(input("请输入API ID: ").strip(), "输入")
        api_hash = input("请输入API Hash: ").strip()
        credentials = Credentials(api_id, api_hash, self.credentials.session_id)
        if not credentials.complete:
            raise ConfigurationError("API Hash 不能为空")

        self.credentials = credentials
        self.store.save_credentials(credentials)

    async def _sign_in_with_password(self, gateway: TelegramGateway) -> None:
        password = input("已启用两步验证。请输入密码: ")
        await gateway.client.sign_in(password=password)

    async def authenticate_with_qr(self, gateway: TelegramGateway) -> None:
        """
        使用QR码进行认证

        Args:
            gateway: 已连接的客户端
        """
        print("\n请使用Telegram扫描以下QR码:")
        print("1. 在手机上打开Telegram")
        print("2. 进入设置 > 设备 > 扫描QR码")
        print("3. 扫描下方二维码\n")

        qr_login = await gateway.client.qr_login()
        print(render_qr_ascii(qr_login.url))

        try:
            await qr_login.wait()
        except SessionPasswordNeededError:
            await self._sign_in_with_password(gateway)

    async def authenticate_with_phone(self, gateway: TelegramGateway) -> None:
        """
        使用手机号进行认证，验证码可选择通过短信发送

        Args:
            gateway: 已连接的客户端
        """
        phone = input("请输入手机号: ").strip()
        force_sms = input("通过短信接收验证码? (y/N): ").strip().lower() == "y"
        await gateway.client.send_code_request(phone, force_sms=force_sms)
        logger.info("验证码已通过 %s 发送", "短信" if force_sms else "Telegram应用")
        code = input("请输入收到的验证码: ").strip()

        try:
            await gateway.client.sign_in(phone, code)
        except SessionPasswordNeededError:
            await self._sign_in_with_password(gateway)

    async def _interactive_login(self, gateway: TelegramGateway) -> None:
        print("\n=== 选择认证方式 ===")
        print("[1] QR码认证 (推荐 - 无需手机号)")
        print("[2] 手机号认证")

        while True:
            choice = input("请选择 (1 或 2): ").strip()
            if choice in ("1", "2"):
                break
            print("请输入 1 或 2")

        try:
            if choice == "1":
                await self.authenticate_with_qr(gateway)
            else:
                await self.authenticate_with_phone(gateway)
        except (SessionPasswordNeededError, ValueError) as e:
            raise AuthenticationError(f"登录失败: {e}") from e

        if not await gateway.client.is_user_authorized():
            raise AuthenticationError("登录未完成")

    async def authenticate(self, interactive: bool = True) -> TelegramGateway:
        """
        建立已授权的会话

        Args:
            interactive: 会话未授权时是否允许交互登录

        Returns:
            已连接且已授权的客户端

        Raises:
            AuthenticationError: 无法建立已授权的会话
        """
        if not self.credentials.complete:
            if not interactive:
                raise AuthenticationError(f"{self.store.path} 中缺少 apiId/apiHash")
            self.prompt_api_credentials()

        gateway = self.create_gateway()
        await gateway.connect(require_authorization=False)

        if await gateway.client.is_user_authorized():
            logger.info("已连接到Telegram")
            return gateway

        if not interactive:
            await gateway.disconnect()
            raise AuthenticationError("会话未授权，请先交互登录")

        try:
            await self._interactive_login(gateway)
        except BaseException:
            await gateway.disconnect()
            raise

        self.credentials.session_id = gateway.export_session()
        self.store.save_credentials(self.credentials)
        logger.info("登录成功，会话已保存到 %s，请勿泄露", self.store.path)
        return gateway

