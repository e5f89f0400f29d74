import pytest

from monitor import ChatEvent, EventDispatcher


class Sent:
    def __init__(self):
        self.relay = []
        self.moderation = []


@pytest.fixture
def sent():
    return Sent()


def dispatcher(sent, words=("badword",), moderation=True, debug=False):
    return EventDispatcher(frozenset(words), sent.relay.append,
                           sent.moderation.append if moderation else None,
                           debug=debug)


def test_population_counts_player_lines(sent) -> None:
    block = ["player alice", "chat [12:00] Bob: hello there", "player bob",
             "something else", "player carol"]
    assert dispatcher(sent).dispatch(block) == 3


def test_population_is_not_cumulative(sent) -> None:
    d = dispatcher(sent)
    d.dispatch(["player a", "player b"])
    assert d.dispatch(["player c"]) == 1
    assert d.dispatch([]) == 0


def test_chat_is_formatted_with_role_and_identifier(sent) -> None:
    dispatcher(sent).dispatch(["chat [12:00] (Mod) Alice [id1]: hello there"])
    assert sent.relay == ["**[12:00]** *(Mod)* Alice *[id1]*: `hello there`"]


def test_chat_without_role_or_identifier(sent) -> None:
    dispatcher(sent).dispatch(["chat [12:00] Bob: hello there"])
    assert sent.relay == ["**[12:00]** Bob: `hello there`"]


def test_chat_with_only_identifier(sent) -> None:
    dispatcher(sent).dispatch(["chat [12:00] Big Bob [x9]: what a day"])
    assert sent.relay == ["**[12:00]** Big Bob *[x9]*: `what a day`"]


def test_banned_word_goes_to_moderation_only(sent) -> None:
    line = "chat [12:00] Bob: this has badword in it"
    dispatcher(sent).dispatch([line])
    assert sent.relay == []
    assert sent.moderation == [f"**Usage of blocked word:**\n```text\n{line}\n```"]


def test_banned_word_beats_noise_filters(sent) -> None:
    d = dispatcher(sent)
    d.dispatch(["chat [12:00] Bob: /BadWord",
                "chat [12:00] Bob: redeem badword",
                "chat [12:00] Bob: badword"])
    assert sent.relay == []
    assert len(sent.moderation) == 3


def test_banned_word_without_moderation_sink_is_dropped(sent) -> None:
    dispatcher(sent, moderation=False).dispatch(["chat [12:00] Bob: badword here"])
    assert sent.relay == []
    assert sent.moderation == []


@pytest.mark.parametrize("message", ["/cmd", "hi", "redeem ABC-123", "redeemable"])
def test_noise_is_not_relayed(sent, message) -> None:
    dispatcher(sent).dispatch([f"chat [12:00] Bob: {message}"])
    assert sent.relay == []
    assert sent.moderation == []


def test_unparsable_chat_is_skipped_silently(sent, logged) -> None:
    population = dispatcher(sent).dispatch(["chat no timestamp here", "player a"])
    assert population == 1
    assert sent.relay == []
    assert logged.messages() == []


def test_email_is_relayed_as_code_block(sent, logged) -> None:
    block = ["email Subject here", "\tfirst line", "\tsecond line", "endemail"]
    dispatcher(sent).dispatch(block)
    assert sent.relay == ["Subject here\n```\nfirst line\nsecond line\n```"]
    assert logged.count("Bad email") == 0


def test_email_consumes_its_lines(sent, logged) -> None:
    block = ["player a", "email Hi", "\tplayer b", "endemail", "player c"]
    assert dispatcher(sent).dispatch(block) == 2
    assert logged.count("Unknown token") == 0


def test_email_missing_endemail_is_logged_once(sent, logged) -> None:
    block = ["email Subject here", "\tfirst line", "\tsecond line", "player a"]
    population = dispatcher(sent).dispatch(block)
    assert sent.relay == ["Subject here\n```\nfirst line\nsecond line\n```"]
    assert logged.count("Bad email (no endemail)") == 1
    # the line after the body is still an event of its own
    assert population == 1


def test_email_at_end_of_block(sent, logged) -> None:
    dispatcher(sent).dispatch(["email Subject", "\tbody"])
    assert sent.relay == ["Subject\n```\nbody\n```"]
    assert logged.count("Bad email (no endemail)") == 1


def test_email_with_empty_body(sent) -> None:
    dispatcher(sent).dispatch(["email Nothing to say", "endemail"])
    assert sent.relay == ["Nothing to say\n```\n```"]


def test_unknown_token_is_logged(sent, logged) -> None:
    assert dispatcher(sent).dispatch(["weather sunny"]) == 0
    assert logged.count("Unknown token: weather") == 1
    assert sent.relay == []


def test_failing_sink_does_not_stop_dispatch(logged) -> None:
    def broken(text):
        raise ConnectionError("gone")

    d = EventDispatcher(frozenset(), broken)
    population = d.dispatch(["chat [12:00] Bob: hello there", "player a"])
    assert population == 1
    assert len(logged.errors()) == 1


def test_debug_mode_suppresses_sends(sent, logged) -> None:
    d = dispatcher(sent, debug=True)
    d.dispatch(["chat [12:00] Bob: hello there", "chat [12:00] Bob: badword!",
                "email Hi", "\tthere", "endemail"])
    assert sent.relay == []
    assert sent.moderation == []
    assert logged.count("[DEBUG]") == 3


def test_chat_event_parse() -> None:
    chat = ChatEvent.parse("[12:00] (Mod) Alice [id1]: hello: there")
    assert chat == ChatEvent("12:00", "Mod", "Alice", "id1", "hello: there")
    assert ChatEvent.parse("nothing") is None
