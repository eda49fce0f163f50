import logging

import anyio
import psutil

logger = logging.getLogger(__name__)


def memory_snapshot_mb() -> dict[str, str]:
    """Current process memory figures in MB, formatted for logging."""
    process = psutil.Process()
    info = process.memory_info()
    return {
        "rss": f"{info.rss / 1024 / 1024:.1f}",
        "vms": f"{info.vms / 1024 / 1024:.1f}",
        "children": str(len(process.children())),
        "system_percent": f"{psutil.virtual_memory().percent:.1f}",
    }


async def run_memory_logger(interval_ms: int) -> None:
    """Log memory usage every ``interval_ms`` until cancelled."""
    if interval_ms <= 0:
        logger.warning("Skipping memory logger: invalid interval %s", interval_ms)
        return

    logger.info(f"Starting dev memory logger. Interval: {interval_ms}ms (set MEMORY_LOG_INTERVAL_MS to adjust).")
    while True:
        try:
            logger.info("DEV memory usage (MB): %s", memory_snapshot_mb())
        except psutil.Error as e:
            logger.warning(f"Failed to get memory usage: {e}")
        await anyio.sleep(interval_ms / 1000)
