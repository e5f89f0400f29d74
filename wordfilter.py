"""
wordfilter.py - banned-word screening for relayed game chat.

The word list is a JSON array of strings, loaded once at startup and
never modified afterwards. Matching is a case-insensitive substring test,
so "badword" also catches "BadWords" and "xbadwordx".
"""

import json
from pathlib import Path
from twisted.python import log


def load_banned_words(path):
    """Read the banned-word list from a JSON file into a frozenset.

    A missing file is not an error - the relay simply runs unfiltered.
    """
    try:
        with open(Path(path).expanduser()) as f:
            words = json.load(f)
    except FileNotFoundError:
        log.msg(f"[WARN] banned word list {path} not found; chat will not be filtered")
        return frozenset()
    except json.JSONDecodeError as e:
        log.err(e, f"Invalid JSON in banned word list {path}")
        raise ValueError(f"{path}: {e}") from e
    if not isinstance(words, list):
        raise ValueError(f"{path}: expected a JSON array of words")
    return frozenset(w.strip().lower() for w in words
                     if isinstance(w, str) and w.strip())


def find_banned_words(message, words):
    lowered = message.lower()
    return sorted(w for w in words if w and w.lower() in lowered)


def contains_banned_word(message, words):
    lowered = message.lower()
    return any(w and w.lower() in lowered for w in words)
