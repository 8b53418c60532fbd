import asyncio
import logging

from lease import StoreUnavailable, get_coordinator

logger = logging.getLogger("coordinator")


async def expiry_sweeper(interval_seconds: float) -> None:
    while True:
        try:
            report = await asyncio.to_thread(get_coordinator().sweep_expired)
            if report.reclaimed or report.canceled:
                logger.info(
                    "expired_leases_swept",
                    extra={
                        "reclaimed": report.reclaimed,
                        "canceled": report.canceled,
                    },
                )
        except StoreUnavailable as exc:
            logger.warning("expiry_sweep_failed", extra={"error": str(exc)})
        await asyncio.sleep(interval_seconds)
