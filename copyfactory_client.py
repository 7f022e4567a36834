"""
CopyFactory / MetaApi REST client

Subscription control for follower accounts:
- subscribe(): add or update the follower's subscription to a strategy
- unsubscribe(): drop one strategy from the follower's subscriptions
- remove_account(): delete the subscriber and the provisioned MT account
- get_account_information(): balance/equity/margin snapshot

Every call has a bounded timeout and a bounded number of attempts.
Connection errors, timeouts, 429 and 5xx are retried; other errors are not.
"""

import logging
import time
from typing import Optional, Dict, List

import requests

import automation_config as config

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


class ConfigurationError(ValueError):
    """Missing or rejected strategy/credentials. Fatal for the operation."""


class SubscriptionError(Exception):
    """Broker call failed after all attempts"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CopyFactoryClient:
    """Thin REST client for the CopyFactory and MetaApi endpoints"""

    def __init__(self, token: Optional[str] = None, copyfactory_url: Optional[str] = None,
                 client_api_url: Optional[str] = None, provisioning_url: Optional[str] = None,
                 timeout: Optional[int] = None, max_attempts: Optional[int] = None,
                 backoff_seconds: Optional[float] = None, session: Optional[requests.Session] = None):
        self.token = token or config.METAAPI_TOKEN
        self.copyfactory_url = (copyfactory_url or config.COPYFACTORY_API_URL).rstrip('/')
        self.client_api_url = (client_api_url or config.METAAPI_CLIENT_API_URL).rstrip('/')
        self.provisioning_url = (provisioning_url or config.METAAPI_PROVISIONING_URL).rstrip('/')
        self.timeout = timeout or config.BROKER_REQUEST_TIMEOUT
        self.max_attempts = max(1, max_attempts or config.BROKER_MAX_RETRIES)
        self.backoff_seconds = config.BROKER_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self.session = session or requests.Session()

    # ==================== HTTP ====================

    def _request(self, method: str, url: str, token: Optional[str] = None,
                 json: Optional[Dict] = None, allow_not_found: bool = False):
        """
        Perform one HTTP call with bounded retries

        Returns:
            Decoded JSON body, or None for empty bodies / tolerated 404

        Raises:
            ConfigurationError: no token, or token rejected (401/403)
            SubscriptionError: call failed after max_attempts
        """
        auth_token = token or self.token
        if not auth_token:
            raise ConfigurationError("METAAPI_TOKEN is not configured")

        headers = {'auth-token': auth_token, 'Content-Type': 'application/json'}
        last_error = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = self.session.request(
                    method, url, headers=headers, json=json, timeout=self.timeout
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = SubscriptionError(f"{method} {url} failed: {e}")
                logger.warning(f"⚠️ Broker call attempt {attempt}/{self.max_attempts} failed: {e}")
            else:
                if response.status_code in (401, 403):
                    raise ConfigurationError(
                        f"Broker rejected credentials ({response.status_code}) for {method} {url}"
                    )
                if response.status_code == 404 and allow_not_found:
                    return None
                if response.status_code in RETRYABLE_STATUS_CODES:
                    last_error = SubscriptionError(
                        f"{method} {url} returned {response.status_code}", response.status_code
                    )
                    logger.warning(
                        f"⚠️ Broker call attempt {attempt}/{self.max_attempts} returned {response.status_code}"
                    )
                elif response.status_code >= 400:
                    raise SubscriptionError(
                        f"{method} {url} returned {response.status_code}: {response.text[:200]}",
                        response.status_code
                    )
                else:
                    if not response.content:
                        return None
                    try:
                        return response.json()
                    except ValueError:
                        return None

            if attempt < self.max_attempts and self.backoff_seconds > 0:
                time.sleep(self.backoff_seconds * (2 ** (attempt - 1)))

        raise last_error

    def _subscriber_url(self, account_id: str) -> str:
        return f"{self.copyfactory_url}/users/current/configuration/subscribers/{account_id}"

    # ==================== SUBSCRIPTIONS ====================

    def get_subscriber(self, account_id: str, token: Optional[str] = None) -> Optional[Dict]:
        return self._request('GET', self._subscriber_url(account_id), token=token, allow_not_found=True)

    def subscribe(self, account_id: str, strategy_id: str, multiplier: float,
                  reverse: bool = False, symbol_mapping: Optional[Dict[str, str]] = None,
                  max_risk: Optional[float] = None, name: Optional[str] = None,
                  token: Optional[str] = None) -> None:
        """
        Subscribe a follower to a strategy, replacing any existing entry for it

        Args:
            account_id: Follower MetaApi account id
            strategy_id: Master strategy id
            multiplier: Position size multiplier
            reverse: Mirror trades in the opposite direction
            symbol_mapping: {"XAUUSD": "GOLD"} broker symbol renames
            max_risk: Max trade risk as a fraction of balance
        """
        if not strategy_id:
            raise ConfigurationError(f"No strategy configured for account {account_id}")

        subscription = {'strategyId': strategy_id, 'multiplier': float(multiplier)}
        if reverse:
            subscription['reverse'] = True
        if symbol_mapping:
            subscription['symbolMapping'] = [
                {'from': source, 'to': target} for source, target in symbol_mapping.items()
            ]
        if max_risk:
            subscription['maxTradeRisk'] = float(max_risk)

        current = self.get_subscriber(account_id, token=token) or {}
        subscriptions: List[Dict] = [
            s for s in current.get('subscriptions', []) if s.get('strategyId') != strategy_id
        ]
        subscriptions.append(subscription)

        payload = {
            'name': name or current.get('name') or f"Follower {account_id}",
            'subscriptions': subscriptions,
        }
        self._request('PUT', self._subscriber_url(account_id), token=token, json=payload)
        logger.info(f"✅ Subscribed {account_id} to {strategy_id} (multiplier {multiplier})")

    def unsubscribe(self, account_id: str, strategy_id: str, token: Optional[str] = None) -> None:
        """Remove one strategy from the follower's subscriptions"""
        if not strategy_id:
            raise ConfigurationError(f"No strategy configured for account {account_id}")

        current = self.get_subscriber(account_id, token=token)
        if not current:
            logger.info(f"Subscriber {account_id} not found, nothing to unsubscribe")
            return

        remaining = [
            s for s in current.get('subscriptions', []) if s.get('strategyId') != strategy_id
        ]
        payload = {'name': current.get('name') or f"Follower {account_id}", 'subscriptions': remaining}
        self._request('PUT', self._subscriber_url(account_id), token=token, json=payload)
        logger.info(f"⏹️ Unsubscribed {account_id} from {strategy_id}")

    def remove_account(self, account_id: str, token: Optional[str] = None) -> None:
        """Delete the CopyFactory subscriber, then undeploy and remove the MT account"""
        self._request('DELETE', self._subscriber_url(account_id), token=token, allow_not_found=True)
        self._request(
            'POST', f"{self.provisioning_url}/users/current/accounts/{account_id}/undeploy",
            token=token, allow_not_found=True
        )
        self._request(
            'DELETE', f"{self.provisioning_url}/users/current/accounts/{account_id}",
            token=token, allow_not_found=True
        )
        logger.info(f"🗑️ Removed subscriber account {account_id}")

    # ==================== ACCOUNT DATA ====================

    def get_account_information(self, account_id: str, token: Optional[str] = None) -> Dict:
        """
        Current account information

        Returns:
            Dict with balance, equity, margin, freeMargin, marginLevel
        """
        data = self._request(
            'GET', f"{self.client_api_url}/users/current/accounts/{account_id}/account-information",
            token=token
        ) or {}
        return {
            'balance': float(data.get('balance') or 0.0),
            'equity': float(data.get('equity') or 0.0),
            'margin': float(data.get('margin') or 0.0),
            'freeMargin': float(data.get('freeMargin') or 0.0),
            'marginLevel': float(data['marginLevel']) if data.get('marginLevel') is not None else None,
        }
