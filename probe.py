import asyncio
import logging

import aiohttp
from yarl import URL

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 3.0


async def check_target(target: str, verify_tls: bool = True, timeout: float = PROBE_TIMEOUT) -> bool:
    """Best-effort GET / against the target. Never raises for network errors."""
    url = URL(target).with_path("/")
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.get(url, ssl=verify_tls, allow_redirects=False) as response:
                logger.debug(f"Probe of {url} answered {response.status}")
                return True
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
        logger.debug(f"Probe of {url} failed: {e}")
        return False
