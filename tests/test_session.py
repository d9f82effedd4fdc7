# tests/test_session.py
import pytest

from mapcrawl import session as session_mod
from mapcrawl.session import HEADLESS_USER_AGENT, BrowserSession, session_factory


class FakeBrowser:
    def __init__(self, log, fail_context=False):
        self.log = log
        self.fail_context = fail_context

    def new_context(self, **opts):
        self.log.append(("new_context", opts))
        if self.fail_context:
            raise RuntimeError("context refused")
        return FakeContext(self.log)

    def close(self):
        self.log.append(("browser_close",))


class FakeContext:
    def __init__(self, log):
        self.log = log

    def new_page(self):
        return FakeBrowserPage(self.log)


class FakeBrowserPage:
    def __init__(self, log):
        self.log = log

    def set_default_timeout(self, ms):
        self.log.append(("default_timeout", ms))


class FakeChromium:
    def __init__(self, log, fail_context):
        self.log = log
        self.fail_context = fail_context

    def launch(self, headless, args):
        self.log.append(("launch", headless, tuple(args)))
        return FakeBrowser(self.log, self.fail_context)


class FakePlaywright:
    def __init__(self, log, fail_context):
        self.log = log
        self.chromium = FakeChromium(log, fail_context)

    def stop(self):
        self.log.append(("playwright_stop",))


@pytest.fixture
def launch_log(monkeypatch):
    log = []
    state = {"fail_context": False}

    class Starter:
        def start(self):
            return FakePlaywright(log, state["fail_context"])

    monkeypatch.setattr(session_mod, "sync_playwright", lambda: Starter())
    return log, state


def test_headless_launch_with_proxy(launch_log):
    log, _ = launch_log
    config = {
        "headless": True,
        "element_timeout": 1234,
        "proxy": {"server": "http://p:8080", "username": "u", "password": ""},
    }
    session = BrowserSession.launch(config, label="alice")

    _, headless, args = log[0]
    assert headless is True
    assert "--disable-blink-features=AutomationControlled" in args
    opts = log[1][1]
    assert opts["proxy"] == {"server": "http://p:8080", "username": "u"}
    assert opts["user_agent"] == HEADLESS_USER_AGENT
    assert ("default_timeout", 1234) in log

    session.close()
    session.close()
    assert log.count(("browser_close",)) == 1
    assert log.count(("playwright_stop",)) == 1


def test_headed_launch_without_proxy(launch_log):
    log, _ = launch_log
    with session_factory({"headless": False, "proxy": None})(label="bob") as session:
        assert session.label == "bob"
    assert log[1] == ("new_context", {})
    assert session.closed


def test_failed_launch_cleans_up(launch_log):
    log, state = launch_log
    state["fail_context"] = True
    with pytest.raises(RuntimeError):
        BrowserSession.launch({"headless": False})
    assert ("browser_close",) in log
    assert ("playwright_stop",) in log
