"""
Runs one job step for many follower accounts in parallel

A failing account is logged and counted; it never stops the run.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional

import automation_config as config
from models import FollowerAccount

logger = logging.getLogger(__name__)


def run_for_accounts(job_name: str, accounts: List[FollowerAccount],
                     step: Callable[[FollowerAccount], Optional[str]],
                     max_workers: Optional[int] = None) -> Dict:
    """
    Apply step to every account

    Args:
        job_name: Used in logs and the result
        accounts: Accounts to process
        step: Returns an action name when it changed something, else None

    Returns:
        Dict with job, processed, actions, errors, duration_seconds
    """
    started = time.time()
    result = {'job': job_name, 'processed': 0, 'actions': [], 'errors': []}
    if not accounts:
        result['duration_seconds'] = 0.0
        return result

    workers = max(1, min(max_workers or config.AUTOMATION_MAX_WORKERS, len(accounts)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=job_name) as pool:
        futures = {pool.submit(step, account): account for account in accounts}
        for future in as_completed(futures):
            account = futures[future]
            result['processed'] += 1
            try:
                action = future.result()
                if action:
                    result['actions'].append({'account_id': account.id, 'action': action})
            except Exception as e:
                logger.error(f"❌ {job_name} failed for account {account.id}: {e}", exc_info=True)
                result['errors'].append({'account_id': account.id, 'error': str(e)})

    result['duration_seconds'] = round(time.time() - started, 2)
    logger.info(
        f"✅ {job_name}: {result['processed']} accounts, {len(result['actions'])} actions, "
        f"{len(result['errors'])} errors ({result['duration_seconds']}s)"
    )
    return result


def skipped(job_name: str, reason: str) -> Dict:
    logger.info(f"⏭️ {job_name} skipped: {reason}")
    return {'job': job_name, 'skipped': True, 'reason': reason, 'processed': 0, 'actions': [], 'errors': []}
