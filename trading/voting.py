from collections import Counter
from typing import Sequence

NEUTRAL = "NEUTRAL"


def majority_vote_strict(votes: Sequence[str]) -> str:
    """Strict majority over ``votes`` ordered oldest to newest.

    A value wins with more than ``len(votes) // 2`` votes. An even split
    between the top values goes to the one seen most recently. Anything
    else is NEUTRAL.
    """
    if not votes:
        return NEUTRAL
    counts = Counter(votes)
    last_seen = {vote: idx for idx, vote in enumerate(votes)}
    ranked = sorted(counts.items(), key=lambda kv: (kv[1], last_seen[kv[0]]), reverse=True)
    best, best_count = ranked[0]
    if best_count > len(votes) // 2:
        return best
    tied = len(ranked) > 1 and ranked[1][1] == best_count
    if tied and best_count * 2 >= len(votes):
        return best
    return NEUTRAL
