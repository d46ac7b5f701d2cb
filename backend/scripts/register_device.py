"""注册采集设备并生成访问 token

token 只在这里打印一次，数据库里只保存加盐哈希。

使用方法：
    python scripts/register_device.py <device_id> [platform]
"""

import asyncio
import logging
import sys
from pathlib import Path

# 添加项目根目录到 Python 路径
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from sqlalchemy.exc import IntegrityError

from chat_digest.core.config import configure_logging, get_settings
from chat_digest.core.db import Database
from chat_digest.services.device_auth import DeviceAuthenticator

logger = logging.getLogger(__name__)


async def register(device_id: str, platform: str) -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    database = Database(settings.database_url)
    try:
        await database.init_models()
        authenticator = DeviceAuthenticator(database.sessionmaker, settings.device_token_salt)
        device, token = await authenticator.register(device_id, platform=platform)
    except IntegrityError:
        logger.error(f"设备 {device_id} 已存在")
        sys.exit(1)
    except Exception as e:
        logger.error(f"注册设备失败: {e}", exc_info=True)
        sys.exit(1)
    finally:
        await database.dispose()

    print("\n" + "=" * 60)
    print(f"设备 ID: {device.id}")
    print(f"平台:    {device.platform}")
    print(f"Token:   {token}")
    print("=" * 60)
    print("请妥善保存 token，它不会再次显示。\n")


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("用法: python scripts/register_device.py <device_id> [platform]")
        sys.exit(1)
    asyncio.run(register(sys.argv[1], sys.argv[2] if len(sys.argv) > 2 else "android"))
