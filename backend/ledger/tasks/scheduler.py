"""Background loops: fraud scan, stale payout sweep and entitlement rebuild"""
import asyncio
import logging
from typing import Callable, Dict

from ledger.core.config import get_platform_config, settings
from ledger.db.session import SessionLocal
from ledger.services.entitlements import EntitlementProjector
from ledger.services.fraud_scanner import FraudScanner
from ledger.services.gateway import get_gateway
from ledger.services.payouts import PayoutManager

logger = logging.getLogger(__name__)


def run_fraud_scan() -> Dict:
    db = SessionLocal()
    try:
        return FraudScanner(db, get_platform_config()).run()
    finally:
        db.close()


def run_payout_sweep() -> Dict:
    db = SessionLocal()
    try:
        return PayoutManager(db, get_platform_config(), get_gateway()).sweep_stale()
    finally:
        db.close()


def run_entitlement_rebuild() -> Dict:
    db = SessionLocal()
    try:
        return EntitlementProjector(db, get_platform_config()).rebuild_all()
    finally:
        db.close()


async def periodic_task(name: str, interval: float, job: Callable[[], Dict]):
    """Run ``job`` every ``interval`` seconds; a failed run is logged and retried next tick"""
    if interval <= 0:
        logger.info(f"{name} task disabled")
        return
    while True:
        try:
            await asyncio.sleep(interval)
            # Jobs block on the database and on gateway retry backoff
            result = await asyncio.to_thread(job)
            logger.info(f"{name} finished: {result}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in {name} task: {e}", exc_info=True)
            await asyncio.sleep(60)


def start_background_tasks():
    """Schedule every enabled loop on the running event loop"""
    return [
        asyncio.create_task(periodic_task("fraud scan", settings.FRAUD_SCAN_INTERVAL_SECONDS, run_fraud_scan)),
        asyncio.create_task(periodic_task("payout sweep", settings.PAYOUT_SWEEP_INTERVAL_SECONDS, run_payout_sweep)),
        asyncio.create_task(periodic_task(
            "entitlement rebuild", settings.ENTITLEMENT_REBUILD_INTERVAL_SECONDS, run_entitlement_rebuild
        )),
    ]
