from __future__ import annotations

import hashlib
import random
from collections.abc import Iterable

from holdem_backend.engine.models import Card, Rank, Suit


RANKS = "23456789TJQKA"
SUITS = "hdcs"

_SHORT_RANKS: dict[str, Rank] = {short: rank for short, rank in zip(RANKS, Rank)}
_SHORT_RANKS["10"] = Rank.TEN
_SHORT_SUITS: dict[str, Suit] = {suit.value[0]: suit for suit in Suit}

FULL_DECK: tuple[Card, ...] = tuple(Card(rank=rank, suit=suit) for suit in Suit for rank in Rank)


def parse_card(text: str) -> Card:
    rank_part, suit_part = text[:-1], text[-1:].lower()
    if rank_part.upper() not in _SHORT_RANKS or suit_part not in _SHORT_SUITS:
        raise ValueError(f"unrecognised card {text!r}")
    return Card(rank=_SHORT_RANKS[rank_part.upper()], suit=_SHORT_SUITS[suit_part])


def parse_cards(text: str) -> list[Card]:
    return [parse_card(chunk) for chunk in text.split()]


def remaining_deck(dealt: Iterable[Card]) -> list[Card]:
    used = set(dealt)
    return [card for card in FULL_DECK if card not in used]


def shuffled_deck(rng: random.Random) -> list[Card]:
    deck = list(FULL_DECK)
    rng.shuffle(deck)
    return deck


def derive_seed(base_seed: int, hand_id: int, label: str) -> int:
    raw = f"{base_seed}:{hand_id}:{label}".encode("utf-8")
    digest = hashlib.sha256(raw).digest()
    return int.from_bytes(digest[:8], byteorder="big", signed=False)
