"""定时任务"""

import logging

from chat_digest.services.window_tracker import WindowTracker

logger = logging.getLogger(__name__)


async def rescan_windows_job(window_tracker: WindowTracker) -> None:
    """重新扫描未处理消息，补排遗漏窗口的定时任务"""
    logger.info("开始重新扫描未处理消息...")
    try:
        enqueued = await window_tracker.rescan()
        logger.info(f"重新扫描任务完成，补排 {enqueued} 个窗口")
    except Exception as e:
        logger.error(f"重新扫描未处理消息时出错: {e}", exc_info=True)
