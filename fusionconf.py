from collections import namedtuple
import toml
from more_itertools import flatten
from pathlib import Path, PurePath
from twisted.python import log

DEFAULT_MONITOR_PORT = 8003


class ConfigError(ValueError):
    pass


# everything the monitor session needs, frozen at startup
MonitorSettings = namedtuple("MonitorSettings",
                             ["host", "port", "server_name", "reconnect_delay",
                              "max_retries", "jitter", "debug"])


def parse_address(address):
    """Split "host[:port]" into (host, port), defaulting the port to 8003."""
    address = (address or "").strip()
    host, sep, port = address.rpartition(":")
    if not sep:
        return address, DEFAULT_MONITOR_PORT
    if not host:
        raise ConfigError(f"monitor address {address!r} has no host")
    try:
        port = int(port)
    except ValueError:
        raise ConfigError(f"monitor address {address!r} has a bad port") from None
    if not 0 < port < 65536:
        raise ConfigError(f"monitor address {address!r} has a bad port")
    return host, port


class GenericDescriptor():
    def __set_name__(self, owner, name):
        self.public_name = name
        self.private_name = '_' + name

    def __get__(self, obj, objtype=None):
        value = getattr(obj, self.private_name)
        return value

    def __set__(self, obj, value):
        setattr(obj, self.private_name, value)


class FusionConfig:
    __default_file__ = "FusionBot.toml"
    __search_path__ = [
        Path.cwd(),
        Path(__file__).resolve().parent,
        PurePath(Path.home(), '.config'),
        Path("/opt/fusionbot/config")
    ]
    # [irc]
    server            = GenericDescriptor()
    port              = GenericDescriptor()
    ssl               = GenericDescriptor()
    nick              = GenericDescriptor()
    username          = GenericDescriptor()
    realname          = GenericDescriptor()
    trigger           = GenericDescriptor()
    admins            = GenericDescriptor()
    channels          = GenericDescriptor()
    relay_channel     = GenericDescriptor()
    staff_channel     = GenericDescriptor()
    status_channel    = GenericDescriptor()
    logging_channel   = GenericDescriptor()
    bridge_bot        = GenericDescriptor()
    # [monitor]
    address           = GenericDescriptor()
    server_name       = GenericDescriptor()
    reconnect_delay   = GenericDescriptor()
    max_retries       = GenericDescriptor()
    jitter            = GenericDescriptor()
    banned_words      = GenericDescriptor()
    debug             = GenericDescriptor()
    # [logging]
    logfile           = GenericDescriptor()
    report_errors     = GenericDescriptor()

    def __init__(self):
        self.server            = "irc.libera.chat"
        self.port              = 6697
        self.ssl               = True
        self.nick              = "FusionBot"
        self.username          = "fusionbot"
        self.realname          = "FusionFall relay bot"
        self.trigger           = "$"
        self.admins            = []
        self.channels          = []
        self.relay_channel     = ""
        self.staff_channel     = ""
        self.status_channel    = ""
        self.logging_channel   = ""
        self.bridge_bot        = ""
        self.address           = "127.0.0.1"
        self.server_name       = "FusionFall"
        self.reconnect_delay   = 10
        # 0 retries forever
        self.max_retries       = 0
        self.jitter            = 0.0
        self.banned_words      = "bannedWords.json"
        self.debug             = False
        self.logfile           = "fusionbot.log"
        self.report_errors     = False

    def update(self, dict_obj):
        for key, val in flatten(
            map(lambda x: iter(dict_obj[x].items()),
                iter(dict_obj.keys()))
            ):
                self.__dict__["_" + key] = val

    def from_file(self, file_path=None):
        try:
            self.update(toml.load(file_path))
        except (OSError, toml.TomlDecodeError) as e:
            log.err(None, f"parsing {file_path}: failed")
            raise ConfigError(f"cannot read {file_path}: {e}") from e

    def fetch_and_update(self):
        path_join = lambda p: Path(p, self.__default_file__).resolve()
        fexists = lambda f: Path(f).resolve().exists()
        parses = lambda p: toml.load(p)
        try:
            self.update(next(map(parses,
                filter(fexists, map(path_join, iter(self.__search_path__))))))
        except StopIteration:
            log.msg(f"could not find config file {self.__default_file__} in search path: {self.__search_path__}")
            raise ConfigError(f"no {self.__default_file__} found") from None
        except (OSError, toml.TomlDecodeError) as e:
            log.err(None, "parsing config from search path: failed")
            raise ConfigError(f"cannot read {self.__default_file__}: {e}") from e

    def fetch(self, file_path=None):
        if file_path:
            self.from_file(file_path)
        else:
            self.fetch_and_update()
        return self

    def validate(self):
        """Refuse to start on settings the bot cannot run with."""
        if not str(self.address or "").strip():
            raise ConfigError("monitor address is missing")
        parse_address(self.address)
        if not self.relay_channel:
            raise ConfigError("relay_channel is missing")
        if not isinstance(self.report_errors, bool):
            raise ConfigError('report_errors must be true or false')
        if self.report_errors and not self.logging_channel:
            raise ConfigError("logging_channel is required when report_errors is enabled")
        if self.reconnect_delay <= 0:
            raise ConfigError("reconnect_delay must be positive")
        return self

    def monitor_settings(self):
        host, port = parse_address(self.address)
        return MonitorSettings(host=host,
                               port=port,
                               server_name=self.server_name,
                               reconnect_delay=float(self.reconnect_delay),
                               max_retries=self.max_retries or None,
                               jitter=float(self.jitter),
                               debug=bool(self.debug))

    def join_channels(self):
        """Every channel the bot needs to sit in, configured order first."""
        chans = list(self.channels)
        for c in (self.relay_channel, self.staff_channel,
                  self.status_channel, self.logging_channel):
            if c and c not in chans:
                chans.append(c)
        return chans
