"""
控制命令解析测试
"""

import json

import pytest

from commands import (
    AuthCommand,
    CreateCommand,
    InvalidCommand,
    ListCommand,
    MalformedMessage,
    StatsCommand,
    StopCommand,
    UnknownAction,
    encode_response,
    error_response,
    load_message,
    parse_auth,
    parse_command,
    success_response,
)


class TestLoadMessage:
    def test_object(self):
        assert load_message('{"action": "list"}') == {'action': 'list'}

    def test_bytes(self):
        assert load_message(b'{"action": "list"}') == {'action': 'list'}

    @pytest.mark.parametrize("raw", ['not json', '[1, 2]', '"auth"', '42', 'null', ''])
    def test_malformed(self, raw):
        with pytest.raises(MalformedMessage):
            load_message(raw)


class TestParseAuth:
    def test_auth(self):
        assert parse_auth({'action': 'auth', 'token': 'secret'}) == AuthCommand('secret')

    @pytest.mark.parametrize("data", [
        {'action': 'list'},
        {'action': 'auth'},
        {'action': 'auth', 'token': 123},
        {'token': 'secret'},
    ])
    def test_not_auth(self, data):
        assert parse_auth(data) is None


class TestParseCommand:
    def test_list(self):
        assert parse_command('{"action": "list"}') == ListCommand()

    def test_stats(self):
        assert parse_command('{"action": "stats"}') == StatsCommand()

    def test_create(self):
        raw = json.dumps({'action': 'create', 'proxyHostAddress': '1.2.3.4', 'proxyHostPort': 9999})
        assert parse_command(raw) == CreateCommand('1.2.3.4', 9999)

    @pytest.mark.parametrize("fields", [
        {},
        {'proxyHostAddress': '1.2.3.4'},
        {'proxyHostPort': 9999},
        {'proxyHostAddress': 1234, 'proxyHostPort': 9999},
        {'proxyHostAddress': '1.2.3.4', 'proxyHostPort': '9999'},
        {'proxyHostAddress': '1.2.3.4', 'proxyHostPort': True},
    ])
    def test_create_invalid(self, fields):
        with pytest.raises(InvalidCommand) as excinfo:
            parse_command(json.dumps(dict(action='create', **fields)))
        assert excinfo.value.action == 'create'
        assert str(excinfo.value) == "Invalid proxyHostAddress or proxyHostPort."

    def test_stop(self):
        assert parse_command('{"action": "stop", "proxyPort": 10000}') == StopCommand(10000)

    @pytest.mark.parametrize("raw", [
        '{"action": "stop"}',
        '{"action": "stop", "proxyPort": "10000"}',
        '{"action": "stop", "proxyPort": 1.5}',
    ])
    def test_stop_invalid(self, raw):
        with pytest.raises(InvalidCommand) as excinfo:
            parse_command(raw)
        assert excinfo.value.action == 'stop'
        assert str(excinfo.value) == "Invalid proxyPort."

    @pytest.mark.parametrize("raw", [
        '{"action": "delete"}',
        '{"action": "auth", "token": "secret"}',
        '{}',
        '{"action": ["list"]}',
        '{"action": null}',
    ])
    def test_unknown_action(self, raw):
        with pytest.raises(UnknownAction) as excinfo:
            parse_command(raw)
        assert str(excinfo.value) == "Unknown action."

    def test_malformed(self):
        with pytest.raises(MalformedMessage):
            parse_command('{broken')


class TestResponses:
    def test_success(self):
        assert success_response('list', proxies=[]) == {
            'status': 'success', 'action': 'list', 'proxies': [],
        }

    def test_success_without_action(self):
        assert success_response(message='Authenticated') == {
            'status': 'success', 'message': 'Authenticated',
        }

    def test_error(self):
        assert error_response("Proxy not found.", action='stop') == {
            'status': 'error', 'action': 'stop', 'message': "Proxy not found.",
        }

    def test_encode(self):
        assert json.loads(encode_response(error_response("x"))) == {'status': 'error', 'message': 'x'}
