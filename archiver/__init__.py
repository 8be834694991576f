"""
Telegram Channel Archiver

把Telegram频道中的全部媒体附件归档到本地目录，支持断点续传和不稳定网络

模块:
- config: 配置、凭证和游标文件、日志
- models: 数据模型
- auth: 认证管理
- client: Telegram客户端适配
- media: 媒体分类、新鲜度判断和并发下载
- retry: 重试与退避
- ledger: 进度账本
- scraper: 分页归档和批量调度
"""

__version__ = "1.0.0"
