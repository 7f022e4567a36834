"""
Copy Trading Automation Server
Flask app with the automation API and the background job scheduler
"""

import logging
import os

from flask import Flask, jsonify

import automation_config as config
from automation_api import automation_bp
from database import init_db
from redis_client import get_redis_optional

logger = logging.getLogger(__name__)


def create_app(start_jobs: bool = None, automation=None) -> Flask:
    """
    Build the Flask app

    Args:
        start_jobs: Start the APScheduler jobs (default: AUTOMATION_SCHEDULER_ENABLED)
        automation: Engine to install as the process-wide instance
    """
    app = Flask('copy_trading_automation')
    app.register_blueprint(automation_bp)

    if automation is not None:
        from copy_trading_automation import set_automation
        set_automation(automation)

    @app.route('/health', methods=['GET'])
    def health():
        from automation_scheduler import get_scheduler
        return jsonify({
            'status': 'ok',
            'automation_enabled': config.is_automation_enabled(),
            'scheduler_running': get_scheduler().running,
        })

    if start_jobs is None:
        start_jobs = config.SCHEDULER_ENABLED
    if start_jobs:
        from automation_scheduler import start_scheduler
        from copy_trading_automation import get_automation
        start_scheduler(automation=get_automation(), redis_client=get_redis_optional())

    return app


if __name__ == '__main__':
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    init_db()
    logger.info("🚀 Starting copy trading automation server")
    try:
        create_app().run(host='0.0.0.0', port=int(os.getenv('PORT', '9910')))
    finally:
        from automation_scheduler import stop_scheduler
        stop_scheduler()
