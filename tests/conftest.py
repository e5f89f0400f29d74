import pytest
from twisted.internet.testing import MemoryReactorClock, StringTransport
from twisted.python import log

from fusionconf import MonitorSettings
from monitor import MonitorSession


class LogCapture(list):
    def messages(self):
        return [" ".join(str(m) for m in e.get("message", ())) for e in self]

    def errors(self):
        return [e for e in self if e.get("isError")]

    def count(self, text):
        return sum(1 for m in self.messages() if text in m)


@pytest.fixture
def logged():
    events = LogCapture()
    observer = events.append
    log.addObserver(observer)
    yield events
    log.removeObserver(observer)


class Sinks:
    def __init__(self):
        self.relay = []
        self.moderation = []
        self.presence = []


def make_session(words=frozenset(), debug=False, moderation=True,
                 reactor=None, maxRetries=None):
    sinks = Sinks()
    settings = MonitorSettings(host="127.0.0.1", port=8003, server_name="FusionFall",
                               reconnect_delay=10.0, max_retries=maxRetries,
                               jitter=0.0, debug=debug)
    session = MonitorSession(settings, words,
                             relay=sinks.relay.append,
                             presence=sinks.presence.append,
                             moderation=sinks.moderation.append if moderation else None,
                             reactor=reactor or MemoryReactorClock())
    return session, sinks


def connect(session):
    """Complete a monitor connection the way the reactor would."""
    protocol = session.factory.buildProtocol(None)
    transport = StringTransport()
    protocol.makeConnection(transport)
    return protocol
