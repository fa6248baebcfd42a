"""
Chain Engine

Token-chain language model behind a small train/generate contract. The rest
of the bot only sees ``ChainEngine`` and ``ChainState``; swapping the
algorithm means replacing this module.

A ``ChainState`` is never mutated after construction. ``ChainEngine.train``
returns a new state that shares untouched transition rows with the old one,
so a reader holding the old reference keeps a consistent snapshot.
"""

import random
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from ..exceptions import GenerateError

BEGIN = "\x02"
END = "\x03"

State = Tuple[str, ...]
Tokenizer = Callable[[str], List[str]]

_EMPTY_FOLLOWERS: Mapping[str, int] = MappingProxyType({})


def whitespace_tokenizer(text: str) -> List[str]:
    """Split on whitespace, keeping punctuation attached to its token."""
    return text.split()


def lowercase_tokenizer(text: str) -> List[str]:
    """Like ``whitespace_tokenizer`` but case-folded."""
    return text.lower().split()


TOKENIZERS: Dict[str, Tokenizer] = {
    "whitespace": whitespace_tokenizer,
    "lowercase": lowercase_tokenizer,
}


def get_tokenizer(name: str) -> Tokenizer:
    """Look up a tokenizer by its configured name."""
    try:
        return TOKENIZERS[name]
    except KeyError:
        raise ValueError(
            f"Unknown tokenizer '{name}', expected one of {sorted(TOKENIZERS)}"
        ) from None


class ChainState:
    """Transition counts ``state -> {next token: count}`` for one scope."""

    __slots__ = ("_order", "_transitions", "_by_last_token")

    def __init__(self, order: int = 1, transitions: Optional[Dict[State, Dict[str, int]]] = None):
        if order < 1:
            raise ValueError("Chain order must be at least 1")
        self._order = order
        # Takes ownership of the dict; callers must not mutate it afterwards.
        self._transitions: Dict[State, Dict[str, int]] = transitions if transitions is not None else {}
        self._by_last_token: Optional[Dict[str, List[State]]] = None

    @property
    def order(self) -> int:
        return self._order

    def is_empty(self) -> bool:
        return not self._transitions

    def __contains__(self, state: object) -> bool:
        return state in self._transitions

    def __len__(self) -> int:
        return len(self._transitions)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ChainState):
            return NotImplemented
        return self._order == other._order and self._transitions == other._transitions

    def __repr__(self) -> str:
        return f"ChainState(order={self._order}, states={len(self._transitions)})"

    def states(self) -> Iterable[State]:
        return self._transitions.keys()

    def followers(self, state: State) -> Mapping[str, int]:
        row = self._transitions.get(state)
        if row is None:
            return _EMPTY_FOLLOWERS
        return MappingProxyType(row)

    def count(self, state: State, token: str) -> int:
        return self._transitions.get(state, {}).get(token, 0)

    def states_ending_with(self, token: str) -> List[State]:
        """States whose most recent token is ``token``, in a stable order."""
        if self._by_last_token is None:
            index: Dict[str, List[State]] = {}
            for state in self._transitions:
                index.setdefault(state[-1], []).append(state)
            for candidates in index.values():
                candidates.sort()
            self._by_last_token = index
        return self._by_last_token.get(token, [])

    def vocabulary(self) -> Set[str]:
        words: Set[str] = set()
        for row in self._transitions.values():
            words.update(row)
        words.discard(END)
        return words

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self._order,
            "transitions": [
                [list(state), dict(row)] for state, row in self._transitions.items()
            ],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChainState":
        order = int(data["order"])
        transitions: Dict[State, Dict[str, int]] = {}
        for state, row in data.get("transitions", []):
            key = tuple(state)
            if len(key) != order:
                raise ValueError(f"State {key!r} does not match chain order {order}")
            transitions[key] = {str(token): int(count) for token, count in row.items()}
        return cls(order, transitions)


class ChainEngine:
    """Trains and walks ``ChainState`` objects.

    Args:
        order: number of preceding tokens that form a state
        max_tokens: hard cap on generated tokens, so walks over cyclic
            chains always halt
        tokenizer: callable splitting text into tokens
        rng: random source, injectable for deterministic tests
    """

    def __init__(
        self,
        order: int = 1,
        max_tokens: int = 50,
        tokenizer: Tokenizer = whitespace_tokenizer,
        rng: Optional[random.Random] = None,
    ):
        if order < 1:
            raise ValueError("Chain order must be at least 1")
        if max_tokens < 1:
            raise ValueError("max_tokens must be at least 1")
        self.order = order
        self.max_tokens = max_tokens
        self.tokenizer = tokenizer
        self._rng = rng or random.Random()

    def new_state(self) -> ChainState:
        return ChainState(self.order)

    def tokenize(self, text: str) -> List[str]:
        return [token for token in self.tokenizer(text) if token not in (BEGIN, END)]

    def detokenize(self, tokens: Sequence[str]) -> str:
        return " ".join(tokens)

    def train(self, state: ChainState, tokens: Sequence[str]) -> ChainState:
        """Return a new state with the transitions of ``tokens`` added."""
        if state.order != self.order:
            raise ValueError(
                f"Cannot train a chain of order {state.order} with an engine of order {self.order}"
            )
        tokens = list(tokens)
        if not tokens:
            return state

        transitions = dict(state._transitions)
        copied: Set[State] = set()
        padded = [BEGIN] * self.order + tokens + [END]
        for i in range(len(padded) - self.order):
            key = tuple(padded[i:i + self.order])
            token = padded[i + self.order]
            if key not in copied:
                transitions[key] = dict(transitions.get(key, ()))
                copied.add(key)
            row = transitions[key]
            row[token] = row.get(token, 0) + 1
        return ChainState(self.order, transitions)

    def generate(self, state: ChainState, seed: Optional[str] = None) -> List[str]:
        """Random weighted walk from the start state chosen for ``seed``."""
        if state.is_empty():
            raise GenerateError("Cannot generate from an empty chain")

        current = self._start_state(state, seed)
        output = [token for token in current if token != BEGIN][: self.max_tokens]
        while len(output) < self.max_tokens:
            followers = state.followers(current)
            if not followers:
                break
            token = self._rng.choices(list(followers), weights=list(followers.values()))[0]
            if token == END:
                break
            output.append(token)
            current = current[1:] + (token,)

        if not output:
            raise GenerateError("Walk produced no tokens")
        return output

    def _start_state(self, state: ChainState, seed: Optional[str]) -> State:
        begin: State = (BEGIN,) * self.order
        if not seed:
            return begin

        tokens = self.tokenize(seed)
        if len(tokens) >= self.order:
            exact = tuple(tokens[-self.order:])
            if exact in state:
                return exact

        # Nearest match: the latest seed token that some known state ends with.
        for token in reversed(tokens):
            candidates = state.states_ending_with(token)
            if candidates:
                return self._rng.choice(candidates)
        return begin
