"""Minor-unit arithmetic shared by discount, points and commission math."""
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Hashable, List, Tuple

CENT = Decimal("0.01")


def quantize(amount) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor(amount) -> int:
    return int(quantize(amount) * 100)


def from_minor(units: int) -> Decimal:
    return (Decimal(units) / 100).quantize(CENT)


def allocate_proportional(total_minor: int, weights: List[Tuple[Hashable, int]]) -> Dict[Hashable, int]:
    """
    Split `total_minor` across keys proportionally to their integer weights.

    Largest-remainder method: every key gets floor(total * w / W), then the
    leftover units go one each to the keys with the largest fractional
    remainders (ties broken by input order). The result always sums to
    `total_minor` exactly.
    """
    weight_sum = sum(w for _, w in weights)
    if total_minor <= 0 or weight_sum <= 0:
        return {key: 0 for key, _ in weights}

    shares = {}
    remainders = []
    for index, (key, weight) in enumerate(weights):
        share, remainder = divmod(total_minor * weight, weight_sum)
        shares[key] = share
        remainders.append((-remainder, index, key))

    leftover = total_minor - sum(shares.values())
    for _, _, key in sorted(remainders)[:leftover]:
        shares[key] += 1
    return shares


def allocate_even(total_minor: int, keys: List[Hashable]) -> Dict[Hashable, int]:
    """Split evenly; the first `total % n` keys absorb one extra unit each."""
    if not keys or total_minor <= 0:
        return {key: 0 for key in keys}
    base, extra = divmod(total_minor, len(keys))
    return {key: base + (1 if i < extra else 0) for i, key in enumerate(keys)}
