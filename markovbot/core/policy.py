"""
Response Policy

Pure decision functions: given one message and the configuration, decide
whether the bot speaks and from which scope. All state the decision needs
(current time, when each trigger last fired, the random source) is passed
in by the caller.
"""

import random
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional, Pattern, Sequence, Tuple, Union

GLOBAL_SCOPE = "global"
RANDOM_REPLY_KEY = "random_reply"

# command word -> command name
COMMANDS = {
    "words": "words",
    "repo": "repo",
    "code": "repo",
    "joke": "joke",
    "dad": "joke",
}


class EmitReason(Enum):
    OWN_MESSAGE = "own_message"
    EMPTY = "empty"
    DIRECT = "direct"
    MENTION = "mention"
    COMMAND = "command"
    KEYWORD = "keyword"
    RANDOM = "random"
    NOT_SELECTED = "not_selected"


@dataclass(frozen=True)
class KeywordTrigger:
    """Canned reply fired when a message contains ``pattern``."""
    name: str
    pattern: str
    responses: Tuple[str, ...] = ()
    use_jokes: bool = False
    cooldown_seconds: float = 120.0
    probability: float = 0.5


@dataclass(frozen=True)
class PolicyConfig:
    reply_probability: float = 0.01
    # 0 evaluates every message independently; a positive window allows at
    # most one random reply per room per window.
    reply_cooldown_seconds: float = 300.0
    repo_url: Optional[str] = None
    jokes: Tuple[str, ...] = ()
    # share of random replies answered with a joke instead of generated text
    random_joke_probability: float = 0.0
    keyword_triggers: Tuple[KeywordTrigger, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class EmitDecision:
    emit: bool
    scope: str
    reason: EmitReason
    prompt: str = ""
    command: Optional[str] = None
    canned_response: Optional[str] = None
    # last_fired key the caller must stamp when it acts on this decision
    fired_key: Optional[str] = None


def detect_mention(
    text: str,
    nick: str,
    own_id: Optional[str] = None,
    pattern: Union[str, Pattern[str], None] = None,
) -> Tuple[bool, str]:
    """Return whether ``text`` addresses the bot, and the text without the address.

    The default pattern matches a message starting with the nick or the
    bot's user id, followed by an optional ``,`` or ``:``. A custom
    ``pattern`` may be passed already compiled.
    """
    if isinstance(pattern, re.Pattern):
        regex = pattern
    elif pattern:
        regex = re.compile(pattern, re.IGNORECASE)
    else:
        names = [nick]
        if own_id:
            names.append(own_id)
        alternatives = "|".join(re.escape(name) for name in names if name)
        regex = re.compile(rf"^\s*(?:{alternatives})(?=$|[\s,:])[,:]?\s*", re.IGNORECASE)

    match = regex.search(text)
    if not match:
        return False, text
    return True, (text[:match.start()] + text[match.end():]).strip()


def _chance(rng: random.Random, probability: float) -> bool:
    return probability > rng.random()


def _cooled_down(last: Optional[float], now: float, cooldown: float) -> bool:
    return last is None or now - last >= cooldown


def _match_command(text: str, config: PolicyConfig) -> Optional[str]:
    command = COMMANDS.get(text.strip().lower())
    if command == "repo" and not config.repo_url:
        return None
    if command == "joke" and not config.jokes:
        return None
    return command


def _pick(rng: random.Random, choices: Sequence[str]) -> str:
    return rng.choice(list(choices))


def decide(
    scope: str,
    sender: str,
    text: str,
    is_direct: bool,
    is_mention: bool,
    *,
    own_id: Optional[str],
    config: PolicyConfig,
    rng: random.Random,
    now: float,
    last_fired: Optional[Mapping[str, float]] = None,
) -> EmitDecision:
    """Decide whether to reply to one message.

    Rules, in priority order: never answer our own messages; always answer
    direct messages and mentions (directed commands first); keyword
    triggers; finally a random reply subject to probability and cooldown.
    An addressed message with no text left (just the nick) gets an
    unseeded reply.
    """
    last_fired = last_fired or {}

    if own_id is not None and sender == own_id:
        return EmitDecision(False, scope, EmitReason.OWN_MESSAGE)
    addressed = is_direct or is_mention
    if not text.strip() and not addressed:
        return EmitDecision(False, scope, EmitReason.EMPTY)

    if addressed:
        text = text.strip()
        command = _match_command(text, config)
        if command == "words":
            return EmitDecision(True, scope, EmitReason.COMMAND, text, command=command)
        if command == "repo":
            return EmitDecision(
                True, scope, EmitReason.COMMAND, text, command=command, canned_response=config.repo_url
            )
        if command == "joke":
            return EmitDecision(
                True, scope, EmitReason.COMMAND, text, command=command,
                canned_response=_pick(rng, config.jokes),
            )
        reason = EmitReason.DIRECT if is_direct else EmitReason.MENTION
        return EmitDecision(True, scope, reason, text)

    lowered = text.lower()
    for trigger in config.keyword_triggers:
        key = f"keyword:{trigger.name}"
        if trigger.pattern.lower() not in lowered:
            continue
        responses = trigger.responses or (config.jokes if trigger.use_jokes else ())
        if not responses:
            continue
        if _cooled_down(last_fired.get(key), now, trigger.cooldown_seconds) and _chance(rng, trigger.probability):
            return EmitDecision(
                True, scope, EmitReason.KEYWORD, text,
                canned_response=_pick(rng, responses), fired_key=key,
            )

    if _cooled_down(last_fired.get(RANDOM_REPLY_KEY), now, config.reply_cooldown_seconds) and _chance(
        rng, config.reply_probability
    ):
        joke = None
        if config.jokes and config.random_joke_probability > 0 and _chance(rng, config.random_joke_probability):
            joke = _pick(rng, config.jokes)
        return EmitDecision(
            True, scope, EmitReason.RANDOM, text, canned_response=joke, fired_key=RANDOM_REPLY_KEY
        )

    return EmitDecision(False, scope, EmitReason.NOT_SELECTED, text)
