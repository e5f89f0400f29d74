"""
monitor.py - client for the FusionFall monitor port.

The monitor speaks a bare line protocol over TCP.  Every update is a block
framed by a line reading exactly "begin" and a line reading exactly "end";
each line in between is one event, keyed by its first word:

    begin
    player <name>
    chat [12:00] (Mod) Alice [id1]: hello there
    email [12:00] Alice to Bob
    \tline one of the mail body
    \tline two
    endemail
    end

"player" lines are counted into the population, "chat" lines are relayed
(after the banned-word screen), "email" blocks are relayed as code blocks.
Anything else is logged and ignored.

Everything here runs on the reactor thread, so the line buffer and the
population counter are never touched concurrently.
"""

import re
from collections import namedtuple
from twisted.internet import error
from twisted.internet.protocol import ReconnectingClientFactory
from twisted.protocols import basic
from twisted.python import log

from wordfilter import contains_banned_word, find_banned_words

RECONNECT_DELAY = 10  # seconds, fixed

# [timestamp] optional " (role)" username optional " [identifier]": message
CHAT_RE = re.compile(r"^\[(?P<timestamp>.*?)\]"
                     r"(?: \((?P<role>.*?)\))?"
                     r" (?P<username>.*?)"
                     r"(?: \[(?P<identifier>[^\]]*)\])?"
                     r": (?P<message>.*)$")

# messages the game treats as commands or noise
NOISE_PREFIXES = ("/", "redeem")
MIN_CHAT_LENGTH = 3


def plural(count, noun):
    return f"{count} {noun}{'' if count == 1 else 's'}"


def deliver(sink, text, what):
    """Fire-and-forget send; a failing sink is logged, never retried."""
    try:
        sink(text)
    except Exception:
        log.err(None, f"Error sending {what}")


class ChatEvent(namedtuple("ChatEvent",
                           ["timestamp", "role", "username", "identifier", "message"])):
    __slots__ = ()

    @classmethod
    def parse(cls, text):
        match = CHAT_RE.match(text)
        if not match:
            return None
        return cls(**match.groupdict())

    def format(self):
        line = f"**[{self.timestamp}]**"
        if self.role:
            line += f" *({self.role})*"
        line += f" {self.username}"
        if self.identifier:
            line += f" *[{self.identifier}]*"
        return f"{line}: `{self.message}`"

    def isNoise(self):
        return (len(self.message) < MIN_CHAT_LENGTH
                or self.message.startswith(NOISE_PREFIXES))


class LineFramer:
    """Collects monitor lines and cuts begin/end blocks out of them.

    Lines arrive one at a time, already split by MonitorProtocol.  A block is
    emitted as soon as its "end" line is added.
    """

    def __init__(self, onBlock=None):
        self.buffer = []
        self.onBlock = onBlock

    def lineReceived(self, line):
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        line = line.rstrip("\r")
        if not line:
            return None
        self.buffer.append(line)
        if line != "end":
            return None
        block = self.extract()
        if block is not None and self.onBlock is not None:
            self.onBlock(block)
        return block

    def extract(self):
        end = self.buffer.index("end")
        if "begin" in self.buffer[:end]:
            block = self.buffer[self.buffer.index("begin") + 1:end]
        else:
            log.msg("[WARN] Bad data (no begin); ignoring")
            block = None
        del self.buffer[:end + 1]
        return block


class EventDispatcher:
    """Turns the lines of one block into population counts and relay messages.

    relay and moderation are one-argument callables taking the text to
    send; moderation may be None, in which case flagged chat is dropped.
    """

    def __init__(self, bannedWords, relay, moderation=None, debug=False):
        self.bannedWords = bannedWords
        self.relay = relay
        self.moderation = moderation
        self.debug = debug
        self.population = 0
        # each handler takes (block, index) and returns the next index
        self.handlers = {"player": self.doPlayer,
                         "chat"  : self.doChat,
                         "email" : self.doEmail}

    def dispatch(self, block):
        self.population = 0
        i = 0
        while i < len(block):
            words = block[i].split()
            token = words[0] if words else ""
            handler = self.handlers.get(token)
            if handler is None:
                log.msg(f"[WARN] Unknown token: {token}")
                i += 1
            else:
                i = handler(block, i)
        return self.population

    def send(self, sink, text, what):
        if self.debug:
            log.msg(f"[DEBUG] {what}: {text}")
            return
        deliver(sink, text, what)

    def doPlayer(self, block, i):
        self.population += 1
        return i + 1

    def doChat(self, block, i):
        line = block[i]
        chat = ChatEvent.parse(line.partition(" ")[2])
        if chat is None:
            return i + 1

        # blocked words are reported even when the message is noise
        if contains_banned_word(chat.message, self.bannedWords):
            words = ", ".join(find_banned_words(chat.message, self.bannedWords))
            log.msg(f"[WARN] Blocked word ({words}) from {chat.username}")
            if self.moderation is not None:
                self.send(self.moderation,
                          f"**Usage of blocked word:**\n```text\n{line}\n```",
                          "moderation notice")
            return i + 1

        if chat.isNoise():
            return i + 1
        self.send(self.relay, chat.format(), "chat message")
        return i + 1

    def doEmail(self, block, i):
        head = block[i].partition(" ")[2]
        body = "\n```\n"
        j = i + 1
        while j < len(block) and block[j].startswith("\t"):
            body += f"{block[j][1:]}\n"
            j += 1
        body += "```"
        self.send(self.relay, head + body, "email")
        if j < len(block) and "endemail" in block[j]:
            return j + 1
        log.msg("[WARN] Bad email (no endemail)")
        return j


class MonitorProtocol(basic.LineOnlyReceiver):
    # the monitor ends lines with a bare newline; a stray \r is dropped later
    delimiter = b"\n"

    def connectionMade(self):
        self.factory.monitorConnected(self)

    def lineReceived(self, line):
        self.factory.session.lineReceived(line)


class MonitorFactory(ReconnectingClientFactory):
    """Keeps one connection to the monitor alive, retrying on a fixed delay.

    The retry delay never grows and there is no retry limit unless
    maxRetries is given.  The online flag lives here and only here.
    """
    protocol = MonitorProtocol
    factor = 1
    jitter = 0
    noisy = False

    def __init__(self, session, delay=RECONNECT_DELAY, maxRetries=None, jitter=0):
        self.session = session
        self.initialDelay = self.delay = self.maxDelay = delay
        self.maxRetries = maxRetries
        self.jitter = jitter
        self.online = False
        self.connection = None

    def startedConnecting(self, connector):
        if self.retries:
            log.msg("[INFO] Attempting to reconnect...")

    def buildProtocol(self, addr):
        self.resetDelay()
        return ReconnectingClientFactory.buildProtocol(self, addr)

    def monitorConnected(self, protocol):
        log.msg("[INFO] Connected.")
        self.connection = protocol
        self.online = True

    def clientConnectionLost(self, connector, reason):
        log.msg("[WARN] Lost connection to monitor.")
        self.wentOffline()
        ReconnectingClientFactory.clientConnectionLost(self, connector, reason)

    def clientConnectionFailed(self, connector, reason):
        log.msg(f"[WARN] Could not connect to monitor: {reason.getErrorMessage()}")
        self.wentOffline()
        ReconnectingClientFactory.clientConnectionFailed(self, connector, reason)

    def wentOffline(self):
        self.online = False
        self.connection = None
        self.session.connectionStateChanged()

    def stop(self):
        self.stopTrying()
        if self.connection is not None:
            self.connection.transport.loseConnection()


class MonitorSession:
    """One logical link to the monitor: framing, dispatch and presence.

    settings is a fusionconf.MonitorSettings.  relay and presence are
    one-argument callables; moderation is optional.
    """

    def __init__(self, settings, bannedWords, relay, presence,
                 moderation=None, reactor=None):
        if reactor is None:
            from twisted.internet import reactor
        self.reactor = reactor
        self.settings = settings
        self._server_name = settings.server_name
        self.debug = settings.debug
        self.presence = presence
        self.population = 0
        self.framer = LineFramer(self.processBlock)
        self.dispatcher = EventDispatcher(bannedWords, relay, moderation, self.debug)
        self.factory = MonitorFactory(self, settings.reconnect_delay,
                                      settings.max_retries, settings.jitter)
        self.factory.clock = reactor
        self.connector = None

    @property
    def server_name(self):
        return self._server_name

    @property
    def online(self):
        return self.factory.online

    @property
    def buffer(self):
        return self.framer.buffer

    def start(self):
        host, port = self.settings.host, self.settings.port
        log.msg(f"[INFO] Connecting to monitor at {host}:{port}...")
        self.connector = self.reactor.connectTCP(host, port, self.factory)
        return self.connector

    def stop(self):
        self.factory.stop()
        # the first attempt is not the factory's retry connector yet
        if self.connector is not None:
            try:
                self.connector.stopConnecting()
            except error.NotConnectingError:
                pass

    def lineReceived(self, line):
        self.framer.lineReceived(line)

    def processBlock(self, block):
        if self.debug:
            self.printBlock(block)
        self.population = self.dispatcher.dispatch(block)
        if not self.debug:
            self.refreshStatus()

    def connectionStateChanged(self):
        if not self.debug:
            self.refreshStatus()

    def printBlock(self, block):
        log.msg("{")
        for line in block:
            log.msg(line)
        log.msg("}")

    def activityText(self):
        if self.online:
            return plural(self.population, "player")
        return "0 players"

    def refreshStatus(self):
        deliver(self.presence, self.activityText(), "presence")

    def statusText(self):
        state = "**online**" if self.online else "**offline**"
        return (f"**{self.server_name}** is currently {state} with "
                f"**{self.population}** player{'' if self.population == 1 else 's'}")
