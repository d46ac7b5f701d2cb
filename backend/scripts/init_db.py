"""初始化数据库脚本

用于创建设备、消息、摘要和任务队列表

使用方法：
    python scripts/init_db.py
"""

import asyncio
import logging
import sys
from pathlib import Path

# 添加项目根目录到 Python 路径
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from chat_digest.core.config import configure_logging, get_settings
from chat_digest.core.db import Database

logger = logging.getLogger(__name__)


async def main():
    """初始化数据库"""
    settings = get_settings()
    configure_logging(settings.log_level)
    database = Database(settings.database_url)
    try:
        logger.info("开始初始化数据库...")
        await database.init_models()
        logger.info("数据库初始化完成！")
        logger.info(f"数据库地址: {settings.database_url}")
    except Exception as e:
        logger.error(f"数据库初始化失败: {e}", exc_info=True)
        sys.exit(1)
    finally:
        await database.dispose()


if __name__ == "__main__":
    asyncio.run(main())
