"""Tests for the rate governor, cancel tokens and the request wrapper."""
from unittest.mock import patch, MagicMock

import pytest
import requests

import utils
from config import Config
from utils import (
    CancelToken,
    QuotaClass,
    RateGovernor,
    ScanCancelled,
    ScanTimeout,
    make_github_request,
    parse_github_url,
    run_with_timeout,
)


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _limits(core=4000, search=25, reset=2000):
    return {
        'core': {'remaining': core, 'limit': 5000, 'reset': reset},
        'search': {'remaining': search, 'limit': 30, 'reset': reset},
    }


class TestRateGovernor:
    def _governor(self, limits=None, fetch=None):
        clock = FakeClock()
        sleeps = []

        def sleep(seconds):
            sleeps.append(seconds)
            clock.advance(seconds)

        governor = RateGovernor(
            fetch_limits=fetch or (lambda: limits or _limits()),
            sleep=sleep,
            clock=clock,
            wall_clock=lambda: 1000.0,
        )
        return governor, sleeps, clock

    def test_search_calls_spaced(self):
        governor, sleeps, _ = self._governor()
        governor.wait(QuotaClass.SEARCH)
        governor.wait(QuotaClass.SEARCH)
        assert sleeps == [pytest.approx(Config.SEARCH_THROTTLE_SECONDS)]

    def test_spacing_counts_elapsed_time(self):
        governor, sleeps, clock = self._governor()
        governor.wait(QuotaClass.SEARCH)
        clock.advance(1.5)
        governor.wait(QuotaClass.SEARCH)
        assert sleeps == [pytest.approx(Config.SEARCH_THROTTLE_SECONDS - 1.5)]

    def test_classes_paced_independently(self):
        governor, sleeps, _ = self._governor()
        governor.wait(QuotaClass.SEARCH)
        governor.wait(QuotaClass.CORE)
        assert sleeps == []

    def test_exhausted_quota_waits_for_reset(self):
        governor, sleeps, _ = self._governor(limits=_limits(core=0, reset=1060))
        governor.wait(QuotaClass.CORE)
        assert sleeps == [pytest.approx(60 + Config.RATE_LIMIT_RESET_BUFFER)]

    def test_low_quota_cools_down(self):
        governor, sleeps, _ = self._governor(limits=_limits(search=3))
        governor.wait(QuotaClass.SEARCH)
        assert sleeps == [Config.RATE_LIMIT_LOW_COOLDOWN]

    def test_quota_check_failure_pauses_and_proceeds(self):
        def broken():
            raise requests.ConnectionError('rate_limit unreachable')

        governor, sleeps, _ = self._governor(fetch=broken)
        governor.wait(QuotaClass.CORE)
        assert sleeps == [Config.RATE_LIMIT_CHECK_FALLBACK]

    def test_status_reports_last_limits(self):
        governor, _, _ = self._governor(limits=_limits(core=1234))
        governor.wait(QuotaClass.CORE)
        assert governor.get_status()['core']['remaining'] == 1234

    def test_wait_honors_cancelled_token(self):
        governor, _, _ = self._governor(limits=_limits(core=0, reset=5000))
        token = CancelToken()
        token.cancel()
        with pytest.raises(ScanCancelled):
            governor.wait(QuotaClass.CORE, token)


class TestCancelToken:
    def test_deadline_expires(self):
        clock = FakeClock()
        token = CancelToken(deadline=clock() + 5, clock=clock)
        token.check()
        clock.advance(6)
        with pytest.raises(ScanTimeout):
            token.check()

    def test_child_bounded_by_parent(self):
        clock = FakeClock()
        parent = CancelToken(deadline=clock() + 2, clock=clock)
        child = CancelToken.with_timeout(60, parent=parent, label='child')
        assert child.remaining() == pytest.approx(2)
        assert child.request_timeout(30) == pytest.approx(2)

    def test_cancel_propagates_to_children(self):
        parent = CancelToken()
        child = CancelToken.with_timeout(60, parent=parent)
        parent.cancel()
        assert child.cancelled
        with pytest.raises(ScanCancelled):
            child.check()

    def test_child_of_cancelled_parent_starts_cancelled(self):
        parent = CancelToken()
        parent.cancel()
        child = CancelToken(parent=parent)
        assert child.cancelled

    def test_sleep_past_deadline_raises(self):
        token = CancelToken.with_timeout(0.01)
        with pytest.raises(ScanTimeout):
            token.sleep(5)

    def test_request_timeout_unbounded(self):
        assert CancelToken().request_timeout(30) == 30

    def test_run_with_timeout_passes_token(self):
        seen = []
        result = run_with_timeout(lambda token: seen.append(token) or 'done', 10, label='step')
        assert result == 'done'
        assert seen[0].remaining() <= 10


def _response(status, body=None, headers=None):
    response = MagicMock()
    response.status_code = status
    response.ok = status < 400
    response.headers = headers or {}
    response.json.return_value = body if body is not None else {}
    return response


class TestMakeGithubRequest:
    def test_success_returns_response(self):
        with patch.object(utils._session, 'get', return_value=_response(200, {'id': 1})) as get:
            response = make_github_request('https://api.github.com/repos/a/b')
        assert response.json() == {'id': 1}
        assert response.from_cache is False
        assert get.call_count == 1

    def test_retries_server_errors(self):
        responses = [_response(502), _response(503), _response(200, {'ok': True})]
        with patch.object(utils._session, 'get', side_effect=responses) as get:
            response = make_github_request('https://api.github.com/repos/a/b')
        assert response.status_code == 200
        assert get.call_count == 3

    def test_gives_up_after_three_retries(self):
        with patch.object(utils._session, 'get', return_value=_response(500)) as get:
            response = make_github_request('https://api.github.com/repos/a/b')
        assert response.status_code == 500
        assert get.call_count == 4

    def test_connection_errors_retried_then_raised(self):
        with patch.object(utils._session, 'get', side_effect=requests.ConnectionError('reset')) as get:
            with pytest.raises(requests.ConnectionError):
                make_github_request('https://api.github.com/repos/a/b')
        assert get.call_count == 4

    def test_rate_limited_response_waits_and_retries(self):
        limited = _response(403, headers={'X-RateLimit-Remaining': '0', 'X-RateLimit-Reset': '0'})
        responses = [limited, _response(200, {'ok': True})]
        with patch.object(utils._session, 'get', side_effect=responses) as get:
            response = make_github_request('https://api.github.com/search/repositories',
                                           quota_class=QuotaClass.SEARCH)
        assert response.status_code == 200
        assert get.call_count == 2

    def test_cancelled_token_stops_before_request(self):
        token = CancelToken()
        token.cancel()
        with patch.object(utils._session, 'get') as get:
            with pytest.raises(ScanCancelled):
                make_github_request('https://api.github.com/repos/a/b', token=token)
        get.assert_not_called()


class TestParseGithubUrl:
    @pytest.mark.parametrize('url,expected', [
        ('https://github.com/alice/tool', ('alice', 'tool')),
        ('https://github.com/alice/tool.git', ('alice', 'tool')),
        ('git@github.com/alice/tool', ('alice', 'tool')),
        ('https://github.com/alice/tool/tree/main', ('alice', 'tool')),
    ])
    def test_valid(self, url, expected):
        assert parse_github_url(url) == expected

    @pytest.mark.parametrize('url', ['', 'https://github.com/alice', 'not a url'])
    def test_invalid(self, url):
        with pytest.raises(ValueError):
            parse_github_url(url)
