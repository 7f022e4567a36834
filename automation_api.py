#!/usr/bin/env python3
"""
Copy Trading Automation API

Endpoints for risk status, rebalancing, error history, performance,
trade history and the cron triggers of the automation jobs
"""

import logging
from datetime import date
from functools import wraps

from flask import Blueprint, jsonify, request
from requests.exceptions import RequestException

import automation_config as config
from account_repository import AccountNotFoundError
from copy_trading_automation import get_automation
from copyfactory_client import ConfigurationError, SubscriptionError
from timezone_manager import tz
from trade_history import TradeHistoryFilter, CLOSED_BY_VALUES

logger = logging.getLogger(__name__)

# Create Blueprint
automation_bp = Blueprint('copy_trading_automation', __name__, url_prefix='/api/copy-trading')


def require_cron_secret(f):
    """
    Decorator for the cron endpoints
    Expects: Authorization: Bearer <CRON_SECRET>
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        secret = config.get_cron_secret()
        if not secret:
            return jsonify({'success': False, 'error': 'Cron secret not configured'}), 503

        header = request.headers.get('Authorization', '')
        if header != f"Bearer {secret}":
            logger.warning(f"Rejected cron call to {request.path} from {request.remote_addr}")
            return jsonify({'success': False, 'error': 'Unauthorized'}), 401

        return f(*args, **kwargs)

    return decorated_function


def _bad_request(message):
    return jsonify({'success': False, 'error': message}), 400


def _parse_date(value, name):
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        raise ValueError(f"Invalid {name}: {value}")


def _int_arg(name, default=None):
    value = request.args.get(name)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Invalid {name}: {value}")


def _history_filter() -> TradeHistoryFilter:
    """Build a ledger filter from query args (end_date is inclusive for the caller)"""
    start = _parse_date(request.args.get('start_date'), 'start_date')
    end = _parse_date(request.args.get('end_date'), 'end_date')

    profit_loss = request.args.get('profit_loss')
    if profit_loss and profit_loss not in ('profit', 'loss'):
        raise ValueError(f"Invalid profit_loss: {profit_loss}")

    closed_by = request.args.get('closed_by')
    if closed_by and closed_by.upper() not in CLOSED_BY_VALUES:
        raise ValueError(f"Invalid closed_by: {closed_by}")

    return TradeHistoryFilter(
        start_date=tz.day_bounds(start)[0] if start else None,
        end_date=tz.day_bounds(end)[1] if end else None,
        symbol=request.args.get('symbol') or None,
        side=request.args.get('side') or None,
        profit_loss=profit_loss or None,
        closed_by=closed_by.upper() if closed_by else None,
        account_id=request.args.get('account_id') or None,
        user_id=request.args.get('user_id') or None,
        limit=_int_arg('limit'),
    )


def _current_stats(automation, account_id):
    account = automation.accounts.require_account(account_id)
    return automation.stats.get_stats(account, use_cache=request.args.get('refresh') != 'true')


# ==================== ACCOUNT AUTOMATION ====================

@automation_bp.route('/accounts/<account_id>/risk-status', methods=['GET'])
def get_risk_status(account_id):
    """Current drawdown and pause state"""
    try:
        automation = get_automation()
        stats = _current_stats(automation, account_id)
        status = automation.risk.get_risk_status(account_id, stats)
        return jsonify({'success': True, 'account_id': account_id, 'risk_status': status})
    except AccountNotFoundError as e:
        return jsonify({'success': False, 'error': str(e)}), 404
    except (SubscriptionError, ConfigurationError, RequestException) as e:
        logger.error(f"Broker error on risk status of {account_id}: {e}")
        return jsonify({'success': False, 'error': str(e)}), 502
    except Exception as e:
        logger.error(f"Error getting risk status of {account_id}: {e}", exc_info=True)
        return jsonify({'success': False, 'error': str(e)}), 500


@automation_bp.route('/accounts/<account_id>/rebalance', methods=['POST'])
def rebalance_account(account_id):
    """
    Manual rebalance

    Body (optional): {"force": true} skips the minimum interval
    """
    if not config.is_automation_enabled():
        return jsonify({'success': False, 'error': config.AUTOMATION_DISABLED_REASON}), 409

    data = request.get_json(silent=True) or {}
    try:
        automation = get_automation()
        account = automation.accounts.require_account(account_id)
        stats = automation.stats.get_stats(account, use_cache=False)
        result = automation.rebalancer.rebalance_account(account_id, stats, force=bool(data.get('force', True)))
        return jsonify({'success': True, 'account_id': account_id, **result})
    except AccountNotFoundError as e:
        return jsonify({'success': False, 'error': str(e)}), 404
    except (SubscriptionError, ConfigurationError, RequestException) as e:
        logger.error(f"Broker error on rebalance of {account_id}: {e}")
        return jsonify({'success': False, 'error': str(e)}), 502
    except Exception as e:
        logger.error(f"Error rebalancing {account_id}: {e}", exc_info=True)
        return jsonify({'success': False, 'error': str(e)}), 500


@automation_bp.route('/accounts/<account_id>/rebalancing-history', methods=['GET'])
def get_rebalancing_history(account_id):
    try:
        history = get_automation().rebalancer.get_rebalancing_history(account_id)
        return jsonify({'success': True, 'account_id': account_id, 'history': history})
    except AccountNotFoundError as e:
        return jsonify({'success': False, 'error': str(e)}), 404
    except Exception as e:
        logger.error(f"Error getting rebalancing history of {account_id}: {e}", exc_info=True)
        return jsonify({'success': False, 'error': str(e)}), 500


@automation_bp.route('/accounts/<account_id>/error-history', methods=['GET'])
def get_error_history(account_id):
    try:
        limit = _int_arg('limit', config.ERROR_HISTORY_DEFAULT_LIMIT)
    except ValueError as e:
        return _bad_request(str(e))

    try:
        automation = get_automation()
        account = automation.accounts.require_account(account_id)
        errors = automation.disconnect.get_error_history(account_id, limit=limit)
        return jsonify({
            'success': True,
            'account_id': account_id,
            'consecutive_error_count': account.consecutive_error_count or 0,
            'auto_disconnected_at': tz.isoformat(account.auto_disconnected_at),
            'errors': errors,
        })
    except AccountNotFoundError as e:
        return jsonify({'success': False, 'error': str(e)}), 404
    except Exception as e:
        logger.error(f"Error getting error history of {account_id}: {e}", exc_info=True)
        return jsonify({'success': False, 'error': str(e)}), 500


@automation_bp.route('/accounts/<account_id>/automation-log', methods=['GET'])
def get_automation_log(account_id):
    try:
        limit = _int_arg('limit', 50)
    except ValueError as e:
        return _bad_request(str(e))

    try:
        actions = get_automation().audit.get_recent_actions(
            account_id, limit=limit, action_type=request.args.get('action_type')
        )
        return jsonify({'success': True, 'account_id': account_id, 'actions': actions})
    except Exception as e:
        logger.error(f"Error getting automation log of {account_id}: {e}", exc_info=True)
        return jsonify({'success': False, 'error': str(e)}), 500


@automation_bp.route('/accounts/<account_id>/test-alert', methods=['POST'])
def send_test_alert(account_id):
    try:
        result = get_automation().alerts.send_test_alert(account_id)
        return jsonify({'success': True, 'account_id': account_id, **result})
    except AccountNotFoundError as e:
        return jsonify({'success': False, 'error': str(e)}), 404
    except Exception as e:
        logger.error(f"Error sending test alert for {account_id}: {e}", exc_info=True)
        return jsonify({'success': False, 'error': str(e)}), 500


# ==================== PERFORMANCE ====================

@automation_bp.route('/performance/daily', methods=['GET'])
def get_daily_performance():
    """?account_id=...&date=YYYY-MM-DD[&strategy_id=...]"""
    account_id = request.args.get('account_id')
    if not account_id:
        return _bad_request('account_id is required')
    try:
        day = _parse_date(request.args.get('date'), 'date') or tz.today_utc()
    except ValueError as e:
        return _bad_request(str(e))

    try:
        perf = get_automation().performance.get_daily(day, account_id, request.args.get('strategy_id'))
        return jsonify({'success': True, 'performance': perf.to_dict()})
    except Exception as e:
        logger.error(f"Error getting daily performance of {account_id}: {e}", exc_info=True)
        return jsonify({'success': False, 'error': str(e)}), 500


@automation_bp.route('/performance/calendar', methods=['GET'])
def get_performance_calendar():
    """?account_id=...&month=M&year=YYYY"""
    account_id = request.args.get('account_id')
    if not account_id:
        return _bad_request('account_id is required')
    today = tz.today_utc()
    try:
        month = _int_arg('month', today.month)
        year = _int_arg('year', today.year)
    except ValueError as e:
        return _bad_request(str(e))
    if not 1 <= month <= 12:
        return _bad_request(f"Invalid month: {month}")

    try:
        days = get_automation().performance.get_calendar(month, year, account_id, request.args.get('strategy_id'))
        return jsonify({
            'success': True,
            'month': month,
            'year': year,
            'days': [d.to_dict() for d in days],
        })
    except Exception as e:
        logger.error(f"Error getting calendar of {account_id}: {e}", exc_info=True)
        return jsonify({'success': False, 'error': str(e)}), 500


@automation_bp.route('/performance/weekly', methods=['GET'])
def get_weekly_performance():
    """?account_id=...&year=YYYY&week=W (ISO week, default current)"""
    account_id = request.args.get('account_id')
    if not account_id:
        return _bad_request('account_id is required')
    iso_year, iso_week, _ = tz.today_utc().isocalendar()
    try:
        year = _int_arg('year', iso_year)
        week = _int_arg('week', iso_week)
        date.fromisocalendar(year, week, 1)
    except ValueError as e:
        return _bad_request(str(e))

    try:
        perf = get_automation().performance.get_weekly(year, week, account_id, request.args.get('strategy_id'))
        return jsonify({'success': True, 'performance': perf.to_dict()})
    except Exception as e:
        logger.error(f"Error getting weekly performance of {account_id}: {e}", exc_info=True)
        return jsonify({'success': False, 'error': str(e)}), 500


@automation_bp.route('/performance/monthly', methods=['GET'])
def get_monthly_performance():
    account_id = request.args.get('account_id')
    if not account_id:
        return _bad_request('account_id is required')
    today = tz.today_utc()
    try:
        month = _int_arg('month', today.month)
        year = _int_arg('year', today.year)
    except ValueError as e:
        return _bad_request(str(e))
    if not 1 <= month <= 12:
        return _bad_request(f"Invalid month: {month}")

    try:
        perf = get_automation().performance.get_monthly(month, year, account_id, request.args.get('strategy_id'))
        return jsonify({'success': True, 'performance': perf.to_dict()})
    except Exception as e:
        logger.error(f"Error getting monthly performance of {account_id}: {e}", exc_info=True)
        return jsonify({'success': False, 'error': str(e)}), 500


# ==================== TRADE HISTORY ====================

@automation_bp.route('/trades', methods=['GET'])
def get_trades():
    try:
        flt = _history_filter()
    except ValueError as e:
        return _bad_request(str(e))

    try:
        trades = get_automation().history.get_trade_history(flt)
        return jsonify({'success': True, 'count': len(trades), 'trades': [t.to_dict() for t in trades]})
    except Exception as e:
        logger.error(f"Error getting trade history: {e}", exc_info=True)
        return jsonify({'success': False, 'error': str(e)}), 500


@automation_bp.route('/trades/stats', methods=['GET'])
def get_trade_stats():
    try:
        flt = _history_filter()
    except ValueError as e:
        return _bad_request(str(e))

    try:
        stats = get_automation().history.get_trade_history_stats(flt)
        return jsonify({'success': True, 'stats': stats})
    except Exception as e:
        logger.error(f"Error getting trade statistics: {e}", exc_info=True)
        return jsonify({'success': False, 'error': str(e)}), 500


@automation_bp.route('/trades/symbols', methods=['GET'])
def get_trade_symbols():
    try:
        flt = _history_filter()
    except ValueError as e:
        return _bad_request(str(e))

    try:
        symbols = get_automation().history.get_trade_history_symbols(flt)
        return jsonify({'success': True, 'symbols': symbols})
    except Exception as e:
        logger.error(f"Error getting traded symbols: {e}", exc_info=True)
        return jsonify({'success': False, 'error': str(e)}), 500


# ==================== CONNECTIONS ====================

@automation_bp.route('/connections', methods=['GET'])
def get_connections():
    """Position-feed health of every registered account"""
    try:
        connections = get_automation().connections.get_status()
        summary = {
            'total': len(connections),
            'connected': sum(1 for c in connections if c['state'] == 'connected'),
            'circuit_open': sum(1 for c in connections if c['circuit_open']),
        }
        return jsonify({
            'success': True,
            'connections': connections,
            'summary': summary,
            'timestamp': tz.isoformat(tz.now_naive_utc()),
        })
    except Exception as e:
        logger.error(f"Error getting connection status: {e}", exc_info=True)
        return jsonify({'success': False, 'error': str(e)}), 500


# ==================== CRON ====================

@automation_bp.route('/cron/<job_name>', methods=['POST'])
@require_cron_secret
def trigger_cron_job(job_name):
    """Run an automation job now (external cron)"""
    from automation_scheduler import JOBS, get_scheduler

    if job_name not in JOBS:
        return jsonify({'success': False, 'error': f"Unknown job: {job_name}"}), 404

    try:
        scheduler = get_scheduler()
        scheduler.automation = get_automation()
        result = scheduler.run_job(job_name)
        return jsonify({'success': not result.get('failed', False), 'result': result})
    except Exception as e:
        logger.error(f"Error running cron job {job_name}: {e}", exc_info=True)
        return jsonify({'success': False, 'error': str(e)}), 500
