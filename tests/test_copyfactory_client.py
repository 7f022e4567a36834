import json
from unittest.mock import MagicMock

import pytest
import requests

import automation_config as config
from copyfactory_client import CopyFactoryClient, ConfigurationError, SubscriptionError

SUBSCRIBER_URL = 'https://cf.test/users/current/configuration/subscribers/acc-1'


def _response(status_code=200, body=None):
    response = MagicMock()
    response.status_code = status_code
    response.content = json.dumps(body).encode() if body is not None else b''
    response.json.return_value = body
    response.text = json.dumps(body) if body is not None else ''
    return response


def _client(*responses, **kwargs):
    session = MagicMock()
    session.request.side_effect = list(responses)
    client = CopyFactoryClient(
        token='secret-token',
        copyfactory_url='https://cf.test/',
        client_api_url='https://client.test',
        provisioning_url='https://prov.test',
        backoff_seconds=0,
        session=session,
        **kwargs
    )
    return client, session


def test_subscribe_replaces_existing_entry_for_strategy():
    current = {
        'name': 'Follower',
        'subscriptions': [
            {'strategyId': 'other', 'multiplier': 1.0},
            {'strategyId': 'strat-1', 'multiplier': 2.0},
        ],
    }
    client, session = _client(_response(200, current), _response(204))

    client.subscribe('acc-1', 'strat-1', 0.5, symbol_mapping={'XAUUSD': 'GOLD'}, max_risk=0.02)

    method, url = session.request.call_args_list[1][0]
    payload = session.request.call_args_list[1][1]['json']
    headers = session.request.call_args_list[1][1]['headers']
    assert (method, url) == ('PUT', SUBSCRIBER_URL)
    assert headers['auth-token'] == 'secret-token'
    assert payload['name'] == 'Follower'
    assert payload['subscriptions'] == [
        {'strategyId': 'other', 'multiplier': 1.0},
        {
            'strategyId': 'strat-1',
            'multiplier': 0.5,
            'symbolMapping': [{'from': 'XAUUSD', 'to': 'GOLD'}],
            'maxTradeRisk': 0.02,
        },
    ]


def test_subscribe_creates_missing_subscriber():
    client, session = _client(_response(404), _response(204))

    client.subscribe('acc-1', 'strat-1', 1.0, reverse=True, name='My follower')

    payload = session.request.call_args_list[1][1]['json']
    assert payload == {
        'name': 'My follower',
        'subscriptions': [{'strategyId': 'strat-1', 'multiplier': 1.0, 'reverse': True}],
    }


def test_unsubscribe_keeps_other_strategies():
    current = {'name': 'Follower', 'subscriptions': [
        {'strategyId': 'other', 'multiplier': 1.0},
        {'strategyId': 'strat-1', 'multiplier': 2.0},
    ]}
    client, session = _client(_response(200, current), _response(204))

    client.unsubscribe('acc-1', 'strat-1')

    payload = session.request.call_args_list[1][1]['json']
    assert payload['subscriptions'] == [{'strategyId': 'other', 'multiplier': 1.0}]


def test_unsubscribe_without_subscriber_is_a_no_op():
    client, session = _client(_response(404))

    client.unsubscribe('acc-1', 'strat-1')
    assert session.request.call_count == 1


def test_retries_transient_failures():
    client, session = _client(
        _response(503),
        requests.ConnectionError('reset by peer'),
        _response(200, {'balance': 10000, 'equity': 9500, 'marginLevel': 350.5}),
    )

    info = client.get_account_information('acc-1')

    assert session.request.call_count == 3
    assert info == {'balance': 10000.0, 'equity': 9500.0, 'margin': 0.0, 'freeMargin': 0.0, 'marginLevel': 350.5}


def test_gives_up_after_max_attempts():
    client, session = _client(
        requests.Timeout('slow'), requests.Timeout('slow'), _response(502), max_attempts=3
    )

    with pytest.raises(SubscriptionError) as excinfo:
        client.get_account_information('acc-1')

    assert excinfo.value.status_code == 502
    assert session.request.call_count == 3


def test_client_errors_are_not_retried():
    client, session = _client(_response(400, {'message': 'invalid multiplier'}))

    with pytest.raises(SubscriptionError):
        client.get_account_information('acc-1')
    assert session.request.call_count == 1


def test_rejected_credentials_are_a_configuration_error():
    client, session = _client(_response(401))

    with pytest.raises(ConfigurationError):
        client.get_subscriber('acc-1')
    assert session.request.call_count == 1


def test_missing_token_is_a_configuration_error(monkeypatch):
    monkeypatch.setattr(config, 'METAAPI_TOKEN', None)
    client = CopyFactoryClient(session=MagicMock())

    with pytest.raises(ConfigurationError):
        client.get_subscriber('acc-1')


def test_subscribe_requires_strategy():
    client, _ = _client()
    with pytest.raises(ConfigurationError):
        client.subscribe('acc-1', None, 1.0)


def test_remove_account_tolerates_missing_resources():
    client, session = _client(_response(404), _response(404), _response(204))

    client.remove_account('acc-1')

    calls = [c[0] for c in session.request.call_args_list]
    assert calls == [
        ('DELETE', SUBSCRIBER_URL),
        ('POST', 'https://prov.test/users/current/accounts/acc-1/undeploy'),
        ('DELETE', 'https://prov.test/users/current/accounts/acc-1'),
    ]
