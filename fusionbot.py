#!/usr/bin/env python3
# -*- coding: UTF-8 -*-
"""

*** THIS IS THE FUSIONFALL RELAY BOT ***

fusionbot.py - relays chat, mail and player counts from a FusionFall
               server monitor into IRC (and on to Discord via a bridge)

Copyright (c) 2023 the fusionbot authors
All rights reserved.

Redistribution and use in source and binary forms, with or without
modification, are permitted provided that the following conditions are
met:

1. Redistributions of source code must retain the above copyright
notice, this list of conditions and the following disclaimer.

2. Redistributions in binary form must reproduce the above copyright
notice, this list of conditions and the following disclaimer in the
documentation and/or other materials provided with the distribution.

THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND CONTRIBUTORS "AS
IS" AND ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT LIMITED
TO, THE IMPLIED WARRANTIES OF MERCHANTABILITY AND FITNESS FOR A
PARTICULAR PURPOSE ARE DISCLAIMED. IN NO EVENT SHALL THE COPYRIGHT
HOLDER OR CONTRIBUTORS BE LIABLE FOR ANY DIRECT, INDIRECT, INCIDENTAL,
SPECIAL, EXEMPLARY, OR CONSEQUENTIAL DAMAGES (INCLUDING, BUT NOT LIMITED
TO, PROCUREMENT OF SUBSTITUTE GOODS OR SERVICES; LOSS OF USE, DATA, OR
PROFITS; OR BUSINESS INTERRUPTION) HOWEVER CAUSED AND ON ANY THEORY OF
LIABILITY, WHETHER IN CONTRACT, STRICT LIABILITY, OR TORT (INCLUDING
NEGLIGENCE OR OTHERWISE) ARISING IN ANY WAY OUT OF THE USE OF THIS
SOFTWARE, EVEN IF ADVISED OF THE POSSIBILITY OF SUCH DAMAGE.
"""

from twisted.internet import reactor, ssl
from twisted.internet.protocol import ReconnectingClientFactory
from twisted.words.protocols import irc
from twisted.python import log
from twisted.python.logfile import DailyLogFile
from datetime import datetime, timezone
import sys
import time     # for uptime in $status
import re

from fusionconf import FusionConfig, ConfigError
from monitor import MonitorSession
from wordfilter import load_banned_words

# Time constants
SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 3600
SECONDS_PER_DAY = 86400

# longest error report sent to the logging channel
MAX_REPORT_LENGTH = 2048

RE_SPACE_COLOR = re.compile(r'^ [\x1D\x03\x0f]*')  # space and color codes


def truncate_report(text, maxLength=MAX_REPORT_LENGTH):
    if len(text) > maxLength:
        return f"{text[:maxLength]}... {len(text) - maxLength} more"
    return text


def format_error_report(kind, text, when=None):
    when = when or datetime.now(timezone.utc)
    report = (f"From: `{kind}`\nTime: {when.strftime('%Y-%m-%d %H:%M:%S')} UTC\n\n"
              f"Error:\n```\n{text}\n```")
    return truncate_report(report)


class ChannelSink:
    """Sends relay text to one channel via whichever bot connection is live.

    While the bot is off IRC there is nowhere to send, so the message is
    logged and dropped.
    """

    def __init__(self, factory, channel):
        self.factory = factory
        self.channel = channel

    def send(self, text):
        bot = self.factory.bot
        if bot is None:
            log.msg(f"[WARN] Not on IRC; dropped message for {self.channel}")
            return
        bot.msg(self.channel, text)


class ErrorReporter:
    """Log observer forwarding error events to the logging channel."""

    def __init__(self, factory, channel):
        self.factory = factory
        self.channel = channel

    def __call__(self, eventDict):
        if not eventDict.get("isError"):
            return
        bot = self.factory.bot
        if bot is None:
            return
        failure = eventDict.get("failure")
        kind = failure.type.__name__ if failure is not None else "Error"
        text = log.textFromEventDict(eventDict) or ""
        try:
            bot.msg(self.channel, format_error_report(kind, text))
        except Exception as e:
            # never log.err from inside a log observer
            print(f"An error occurred while sending the error report: {e}")


class FusionBotProtocol(irc.IRCClient):
    sourceURL = "https://github.com/fusionbot/fusionbot"
    versionName = "fusionbot.py"
    versionNum = "0.1"

    def signedOn(self):
        self.factory.resetDelay()
        self.topics = {}
        self.starttime = time.time()
        self.factory.bot = self
        self._initializeCommands()
        for c in self.factory.config.join_channels():
            self.join(c)
        self.factory.startMonitor()
        if self.factory.activity is not None:
            self.setActivity(self.factory.activity)

    def _initializeCommands(self):
        """Initialize command handlers."""
        # Commands must be lowercase here.
        self.commands = {"ping"     : self.doPing,
                         "server"   : self.doServer,
                         "status"   : self.doStatus,
                         "commands" : self.doCommands}

    # construct and send response.
    # replyto is channel, or private nick
    # sender is original sender of query
    def respond(self, replyto, sender, message):
        if (replyto.lower() == sender.lower()): #private
            self.msg(replyto, message)
        else: #channel - prepend "Nick: " to message
            self.msg(replyto, sender + ": " + message)

    # presence has no IRC equivalent; we use the status channel topic
    def setActivity(self, text):
        channel = self.factory.config.status_channel
        if not channel or self.topics.get(channel) == text:
            return
        self.topics[channel] = text
        self.topic(channel, text)

    # implement commands here
    def doPing(self, sender, replyto, msgwords):
        self.respond(replyto, sender, "Pong! " + " ".join(msgwords[1:]))

    def doServer(self, sender, replyto, msgwords):
        session = self.factory.session
        if session is None:
            self.respond(replyto, sender, "An Error Occurred!")
            return
        self.respond(replyto, sender, session.statusText())

    def doCommands(self, sender, replyto, msgwords):
        trigger = self.factory.config.trigger
        commands_list = " ".join(f"{trigger}{c}" for c in sorted(self.commands))
        self.respond(replyto, sender, f"available commands are: {commands_list}")

    def doStatus(self, sender, replyto, msgwords):
        if sender not in self.factory.config.admins:
            self.respond(replyto, sender, "Admin access required.")
            return

        uptime_seconds = int(time.time() - self.starttime)
        uptime_days = uptime_seconds // SECONDS_PER_DAY
        uptime_hours = (uptime_seconds % SECONDS_PER_DAY) // SECONDS_PER_HOUR
        uptime_mins = (uptime_seconds % SECONDS_PER_HOUR) // SECONDS_PER_MINUTE

        status_parts = []
        status_parts.append(f"Status: {self.nickname}")
        status_parts.append(f"Uptime: {uptime_days}d {uptime_hours}h {uptime_mins}m")
        session = self.factory.session
        if session is not None:
            monitor = f"{session.settings.host}:{session.settings.port}"
            state = "online" if session.online else "offline"
            status_parts.append(f"Monitor: {monitor} {state}")
            status_parts.append(f"Players: {session.population}")
            status_parts.append(f"Buffered: {len(session.buffer)}")
        self.respond(replyto, sender, " | ".join(status_parts))

    # Listen to the chatter
    def privmsg(self, sender, dest, message):
        sender = sender.partition("!")[0]
        config = self.factory.config
        if dest.startswith("#"): #public message
            replyto = dest
            if config.bridge_bot and sender == config.bridge_bot:
                message = message.partition("<")[2] #everything after the first <
                sender,x,message = message.partition(">") #everything remaining before/after the first >
                sender = sender.split(" ")[0] # Extract just username before space
                message = RE_SPACE_COLOR.sub('', message) # everything after the first space and any colour codes
                if len(sender) == 0: return
        else: #private msg
            replyto = sender
        # ignore channel noise unless $command
        if not message.startswith(config.trigger):
            return
        msgwords = message[len(config.trigger):].strip().split(" ")
        command = msgwords[0].lower()
        if command in self.commands:
            self.commands[command](sender, replyto, msgwords)

    def connectionLost(self, reason=None):
        if self.factory.bot is self:
            self.factory.bot = None
        irc.IRCClient.connectionLost(self, reason)


class FusionBotFactory(ReconnectingClientFactory):
    protocol = FusionBotProtocol

    def __init__(self, config):
        self.config = config
        self.bot = None
        self.session = None
        self.activity = None

    def startedConnecting(self, connector):
        log.msg('Started to connect.')

    def buildProtocol(self, addr):
        log.msg('Connected.')
        log.msg('Resetting reconnection delay')
        self.resetDelay()
        p = ReconnectingClientFactory.buildProtocol(self, addr)
        p.nickname = self.config.nick
        p.username = self.config.username
        p.realname = self.config.realname
        return p

    def clientConnectionLost(self, connector, reason):
        log.msg(f'Lost connection.  Reason: {reason.getErrorMessage()}')
        ReconnectingClientFactory.clientConnectionLost(self, connector, reason)

    def clientConnectionFailed(self, connector, reason):
        log.msg(f'Connection failed. Reason: {reason.getErrorMessage()}')
        ReconnectingClientFactory.clientConnectionFailed(self, connector,
                                                         reason)

    # the monitor connects once we are on IRC, and then stays up by itself
    def startMonitor(self):
        if self.session is not None and self.session.connector is None:
            self.session.start()

    def setActivity(self, text):
        self.activity = text
        if self.bot is not None:
            self.bot.setActivity(text)


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    config = FusionConfig()
    try:
        config.fetch(argv[0] if argv else None).validate()
    except ConfigError as e:
        sys.exit(f"fusionbot: {e}")

    # initialize logging
    log.startLogging(sys.stdout)
    log.addObserver(log.FileLogObserver(DailyLogFile.fromFullPath(config.logfile)).emit)

    # create factory protocol and application
    f = FusionBotFactory(config)
    if config.report_errors:
        log.addObserver(ErrorReporter(f, config.logging_channel))

    moderation = None
    if config.staff_channel:
        moderation = ChannelSink(f, config.staff_channel).send
    f.session = MonitorSession(config.monitor_settings(),
                               load_banned_words(config.banned_words),
                               relay=ChannelSink(f, config.relay_channel).send,
                               presence=f.setActivity,
                               moderation=moderation)
    reactor.addSystemEventTrigger("before", "shutdown", f.session.stop)

    # connect factory to this host and port
    if config.ssl:
        reactor.connectSSL(config.server, config.port, f, ssl.ClientContextFactory())
    else:
        reactor.connectTCP(config.server, config.port, f)

    # run bot
    reactor.run()


if __name__ == '__main__':
    main()
