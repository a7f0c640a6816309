import io
import sys
from pathlib import Path

import pytest
import requests

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from vfsproxy.errors import UpstreamTransientError
from vfsproxy.pacer import Pacer, should_retry


def _response(status):
    r = requests.Response()
    r.status_code = status
    r.raw = io.BytesIO(b"")
    return r


class _Script:
    """Callable that plays back a list of responses/exceptions."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if isinstance(step, BaseException):
            raise step
        return _response(step)


def _pacer(**kwargs):
    sleeps = []
    kwargs.setdefault("min_sleep", 0.01)
    kwargs.setdefault("max_sleep", 0.05)
    p = Pacer(sleep=sleeps.append, **kwargs)
    return p, sleeps


@pytest.mark.parametrize("status", [429, 500, 502, 503, 504, 509])
def test_should_retry_transient_statuses(status):
    assert should_retry(_response(status), None)


@pytest.mark.parametrize("status", [200, 206, 301, 400, 401, 403, 404, 416])
def test_should_not_retry_other_statuses(status):
    assert not should_retry(_response(status), None)


def test_should_retry_transport_errors_only():
    assert should_retry(None, requests.exceptions.ConnectionError("boom"))
    assert should_retry(None, requests.exceptions.ReadTimeout("slow"))
    assert not should_retry(None, requests.exceptions.InvalidURL("bad"))


def test_success_first_try():
    p, _ = _pacer()
    fn = _Script(200)
    assert p.call(fn).status_code == 200
    assert fn.calls == 1


def test_terminal_status_returned_without_retry():
    p, _ = _pacer()
    fn = _Script(404)
    assert p.call(fn).status_code == 404
    assert fn.calls == 1


def test_retries_until_success():
    p, sleeps = _pacer()
    fn = _Script(503, 502, 206)
    assert p.call(fn).status_code == 206
    assert fn.calls == 3
    assert sleeps


def test_retries_exhausted_raises_transient_error():
    p, _ = _pacer(retries=3)
    fn = _Script(503)
    with pytest.raises(UpstreamTransientError) as exc:
        p.call(fn)
    assert exc.value.status_code == 503
    assert fn.calls == 3


def test_connection_errors_are_retried():
    p, _ = _pacer(retries=4)
    fn = _Script(requests.exceptions.ConnectionError("refused"), 200)
    assert p.call(fn).status_code == 200
    assert fn.calls == 2


def test_connection_errors_exhausted():
    p, _ = _pacer(retries=2)
    fn = _Script(requests.exceptions.ConnectionError("refused"))
    with pytest.raises(UpstreamTransientError) as exc:
        p.call(fn)
    assert exc.value.status_code is None
    assert isinstance(exc.value.__cause__, requests.exceptions.ConnectionError)
    assert fn.calls == 2


def test_non_retryable_exception_propagates():
    p, _ = _pacer()
    fn = _Script(requests.exceptions.InvalidURL("no host"))
    with pytest.raises(requests.exceptions.InvalidURL):
        p.call(fn)
    assert fn.calls == 1


def test_custom_retry_predicate():
    p, _ = _pacer(retries=5)
    fn = _Script(404, 200)
    resp = p.call(fn, retry_if=lambda r, e: r is not None and r.status_code == 404)
    assert resp.status_code == 200
    assert fn.calls == 2


def test_sleep_backs_off_and_decays_within_bounds():
    p, _ = _pacer(retries=10, min_sleep=0.01, max_sleep=0.05)
    assert p.sleep_time == pytest.approx(0.01)

    p._end_call(retry=True)
    assert p.sleep_time == pytest.approx(0.02)
    p._end_call(retry=True)
    assert p.sleep_time == pytest.approx(0.04)
    p._end_call(retry=True)
    assert p.sleep_time == pytest.approx(0.05)
    p._end_call(retry=True)
    assert p.sleep_time == pytest.approx(0.05)

    p._end_call(retry=False)
    assert p.sleep_time == pytest.approx(0.0375)
    for _ in range(20):
        p._end_call(retry=False)
    assert p.sleep_time == pytest.approx(0.01)
