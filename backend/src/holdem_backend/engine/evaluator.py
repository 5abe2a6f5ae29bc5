from __future__ import annotations

from collections import Counter, defaultdict
from collections.abc import Sequence

from holdem_backend.engine.errors import InsufficientCards
from holdem_backend.engine.models import Card, HandEvaluation, Suit


HAND_NAMES = {
    8: "Straight Flush",
    7: "Four of a Kind",
    6: "Full House",
    5: "Flush",
    4: "Straight",
    3: "Three of a Kind",
    2: "Two Pair",
    1: "One Pair",
    0: "High Card",
}

WHEEL = frozenset({14, 2, 3, 4, 5})


def _hand(rank: int, value: int) -> HandEvaluation:
    return HandEvaluation(rank=rank, value=value, name=HAND_NAMES[rank])


def straight_high(values: Sequence[int]) -> int | None:
    distinct = sorted(set(values), reverse=True)
    for start in range(len(distinct) - 4):
        if distinct[start] - distinct[start + 4] == 4:
            return distinct[start]
    if WHEEL <= set(distinct):
        return 5
    return None


def _concat(values: Sequence[int]) -> int:
    encoded = 0
    for value in values:
        encoded = encoded * 100 + value
    return encoded


def evaluate_hand(cards: Sequence[Card]) -> HandEvaluation:
    """Best five-card category of ``cards`` with its tie-break value.

    Values only compare hands of the same category. Full house and two pair
    pack two ranks as ``high * 100 + low``; a flush packs its five ranks the
    same way so kickers decide between flushes.
    """
    if len(cards) < 5:
        raise InsufficientCards(len(cards))

    values = sorted((card.value for card in cards), reverse=True)
    counts = Counter(values)
    by_suit: dict[Suit, list[int]] = defaultdict(list)
    for card in cards:
        by_suit[card.suit].append(card.value)

    flush_values: list[int] | None = None
    for suited in by_suit.values():
        if len(suited) >= 5:
            flush_values = sorted(suited, reverse=True)
            break

    if flush_values is not None:
        top = straight_high(flush_values)
        if top is not None:
            return _hand(8, top)

    quads = [value for value, count in counts.items() if count == 4]
    if quads:
        return _hand(7, max(quads))

    trips = sorted((value for value, count in counts.items() if count == 3), reverse=True)
    pairs = sorted((value for value, count in counts.items() if count == 2), reverse=True)

    if trips:
        pair_candidates = sorted([*trips[1:], *pairs], reverse=True)
        if pair_candidates:
            return _hand(6, trips[0] * 100 + pair_candidates[0])

    if flush_values is not None:
        return _hand(5, _concat(flush_values[:5]))

    top = straight_high(values)
    if top is not None:
        return _hand(4, top)

    if trips:
        return _hand(3, trips[0])
    if len(pairs) >= 2:
        return _hand(2, pairs[0] * 100 + pairs[1])
    if pairs:
        return _hand(1, pairs[0])
    return _hand(0, values[0])


def compare_evaluations(a: HandEvaluation, b: HandEvaluation) -> int:
    if a.rank != b.rank:
        return 1 if a.rank > b.rank else -1
    if a.value != b.value:
        return 1 if a.value > b.value else -1
    return 0


def compare_hands(a: Sequence[Card], b: Sequence[Card]) -> int:
    return compare_evaluations(evaluate_hand(a), evaluate_hand(b))
