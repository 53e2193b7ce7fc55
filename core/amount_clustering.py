"""
amount_clustering.py
---------------------
Splits one merchant's transactions into stable amount clusters.

A single biller can hide several independent subscriptions (two streaming
tiers, a phone line plus a device plan). Each of those recurs at its own
amount, so the detector first groups amounts and only then looks for cadence
inside each group.

Algorithm (greedy):
    1. Round every magnitude to the cent.
    2. Amounts that repeat exactly >= exact_seed_min times seed clusters,
       largest first. A seed inside an existing cluster's band joins it.
    3. Remaining amounts join the in-band cluster, preferring the larger
       cluster and then the nearer median; otherwise they open a new cluster.
    4. Members that fall outside their cluster's band after the median moved
       are evicted and re-assigned independently.
    5. Clusters below min_members are dropped.

The band is max(relative_tolerance * median, absolute_tolerance), compared at
cent precision. After clustering every member is within the band of its
cluster's final median.
"""

import logging
from collections import defaultdict
from typing import List, Optional, Sequence, Tuple

import numpy as np

from config.detection_config import AmountClusteringConfig
from core.models import AmountCluster, Transaction

logger = logging.getLogger(__name__)

_MAX_REASSIGNMENT_PASSES = 5

_Member = Tuple[float, Transaction]


# -----------------------------------------------------------------------------
# PUBLIC INTERFACE
# -----------------------------------------------------------------------------

def tolerance_band(reference: float, config: AmountClusteringConfig) -> float:
    """Half-width of the amount band around a reference amount."""
    return max(abs(reference) * config.relative_tolerance, config.absolute_tolerance)


def within_tolerance(amount: float, reference: float, config: AmountClusteringConfig) -> bool:
    """True if amount lies inside the band around reference, at cent precision."""
    return round(abs(abs(amount) - abs(reference)), 2) <= round(tolerance_band(reference, config), 2)


def cluster_amounts(
    transactions: Sequence[Transaction],
    config: AmountClusteringConfig,
    min_members: int = 3,
) -> List[AmountCluster]:
    """
    Group transactions of a single merchant and type into amount clusters.

    Args:
        transactions: Transactions of one merchant group, all of one type.
        config: Tolerance settings.
        min_members: Clusters smaller than this are dropped.

    Returns:
        Clusters ordered by median amount, members ordered by date.

    Raises:
        ValueError: if income and expense transactions are mixed.
    """
    if not transactions:
        return []

    types = {t.transaction_type for t in transactions}
    if len(types) > 1:
        raise ValueError(
            f"Amount clustering needs a single transaction type, got {sorted(types)}"
        )

    by_value: dict = defaultdict(list)
    for txn in transactions:
        by_value[txn.magnitude].append(txn)

    clusters: List[List[_Member]] = []

    # --- Exact-match seeds, largest first ---
    seeds = sorted(
        (v for v, members in by_value.items() if len(members) >= config.exact_seed_min),
        key=lambda v: (-len(by_value[v]), v),
    )
    for value in seeds:
        members = [(value, t) for t in by_value[value]]
        target = _find_cluster(clusters, value, config)
        if target is not None:
            target.extend(members)
        else:
            clusters.append(members)

    # --- Everything else, most frequent amounts first ---
    seed_set = set(seeds)
    leftovers = [
        (value, txn)
        for value, members in by_value.items() if value not in seed_set
        for txn in members
    ]
    leftovers.sort(key=lambda m: (-len(by_value[m[0]]), m[0], m[1].date))
    _assign(clusters, leftovers, config)

    clusters = _reassign_outliers(clusters, config)

    result = []
    for members in clusters:
        members = _trim_to_band(members, config)
        if len(members) < min_members:
            continue
        members.sort(key=lambda m: (m[1].date, m[0]))
        result.append(AmountCluster(
            transactions=[t for _, t in members],
            median=_median(members),
        ))

    result.sort(key=lambda c: (c.median, c.transactions[0].date))

    logger.debug(
        f"Clustered {len(transactions)} transactions into {len(result)} clusters "
        f"(sizes: {[c.size for c in result]})."
    )
    return result


# -----------------------------------------------------------------------------
# INTERNAL
# -----------------------------------------------------------------------------

def _median(members: List[_Member]) -> float:
    return round(float(np.median([v for v, _ in members])), 2)


def _find_cluster(
    clusters: List[List[_Member]], value: float, config: AmountClusteringConfig
) -> Optional[List[_Member]]:
    """In-band cluster for value; overlapping bands resolve to the larger cluster."""
    candidates = []
    for idx, members in enumerate(clusters):
        median = _median(members)
        if within_tolerance(value, median, config):
            candidates.append((-len(members), abs(value - median), median, idx))
    if not candidates:
        return None
    return clusters[min(candidates)[3]]


def _assign(
    clusters: List[List[_Member]], members: List[_Member], config: AmountClusteringConfig
) -> None:
    for value, txn in members:
        target = _find_cluster(clusters, value, config)
        if target is not None:
            target.append((value, txn))
        else:
            clusters.append([(value, txn)])


def _reassign_outliers(
    clusters: List[List[_Member]], config: AmountClusteringConfig
) -> List[List[_Member]]:
    """
    Evict members the moving median has left behind and re-assign them.

    Bounded passes; whatever is still outside a band afterwards is removed by
    the final trim.
    """
    for _ in range(_MAX_REASSIGNMENT_PASSES):
        clusters.sort(key=lambda c: (-len(c), _median(c)))
        evicted: List[_Member] = []

        for members in clusters:
            median = _median(members)
            keep = [m for m in members if within_tolerance(m[0], median, config)]
            if len(keep) != len(members):
                evicted.extend(m for m in members if not within_tolerance(m[0], median, config))
                members[:] = keep

        clusters = [c for c in clusters if c]
        if not evicted:
            break

        evicted.sort(key=lambda m: (m[0], m[1].date))
        _assign(clusters, evicted, config)

    return clusters


def _trim_to_band(members: List[_Member], config: AmountClusteringConfig) -> List[_Member]:
    """Drop members outside the band until the median stops moving them out."""
    members = list(members)
    while members:
        median = _median(members)
        keep = [m for m in members if within_tolerance(m[0], median, config)]
        if len(keep) == len(members):
            break
        members = keep
    return members
