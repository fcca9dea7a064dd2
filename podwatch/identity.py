"""Identity resolution: pubkey validation, local merge, global reconciliation.

Records are merged in two phases.  During the crawl, :class:`IdentityResolver`
keeps one record per key (valid identity, else address), picking between
colliding sightings by :func:`rank`.  After the crawl,
:func:`reconcile_identities` folds sightings of the same identity at
different addresses into one record and drops anonymous records whose
address is claimed by an identity-bearing one.  The second phase exists
because a pod's identity often arrives in a later round than the first
sighting of its address.
"""

import copy
import dataclasses
import logging
import re

from podwatch.models import NodeRecord

logger = logging.getLogger(__name__)

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_BASE58_INDEX = {ch: i for i, ch in enumerate(BASE58_ALPHABET)}

PUBKEY_MIN_LEN = 32
PUBKEY_MAX_LEN = 44
PUBKEY_BYTES = 32

_IP_PREFIX = re.compile(r"^\d+\.\d+\.\d+\.\d+")
_PLACEHOLDER = re.compile(r"^pubkey\d+$", re.IGNORECASE)

# Attributes that never count towards how "complete" a record is.
_UNRANKED_FIELDS = {"provenance", "sequence", "seen_in_gossip", "state", "metrics"}


def b58decode(value: str) -> bytes:
    """Decode a base58 (Bitcoin alphabet) string.

    Raises:
        ValueError: If *value* contains a character outside the alphabet.
    """
    num = 0
    for ch in value:
        try:
            num = num * 58 + _BASE58_INDEX[ch]
        except KeyError:
            raise ValueError(f"Invalid base58 character {ch!r}") from None

    body = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    leading_zeros = len(value) - len(value.lstrip("1"))
    return b"\x00" * leading_zeros + body


def is_valid_identity(value: object) -> bool:
    """Return whether *value* is a syntactically valid pod public key.

    A valid key is 32-44 base58 characters decoding to exactly 32 bytes,
    and is not one of the placeholder shapes some pods report (an IP
    address, a bare number, ``pubkeyN``).
    """
    if not isinstance(value, str):
        return False
    trimmed = value.strip()
    if not PUBKEY_MIN_LEN <= len(trimmed) <= PUBKEY_MAX_LEN:
        return False
    if _IP_PREFIX.match(trimmed) or _PLACEHOLDER.match(trimmed) or trimmed.isdigit():
        return False
    try:
        return len(b58decode(trimmed)) == PUBKEY_BYTES
    except ValueError:
        return False


def normalize_identity(value: object) -> str | None:
    """Return the trimmed identity when valid, else ``None``."""
    if is_valid_identity(value):
        return value.strip()  # type: ignore[union-attr]
    return None


def populated_fields(record: NodeRecord) -> int:
    """Count the attributes of *record* that carry a value.

    Metrics count per measured field; empty strings, lists and dicts
    count as absent.
    """
    count = record.metrics.populated()
    for f in dataclasses.fields(record):
        if f.name in _UNRANKED_FIELDS:
            continue
        value = getattr(record, f.name)
        if value is None or value == "" or value == [] or value == {}:
            continue
        count += 1
    return count


def rank(record: NodeRecord) -> tuple[int, int, int]:
    """Total order used to pick between colliding records; higher wins.

    More populated fields first, then the stronger discovery path, then
    the later sighting.
    """
    return (populated_fields(record), record.provenance.rank, record.sequence)


class IdentityResolver:
    """Single-writer map of the best record seen per key during a crawl.

    Records without a valid identity are keyed by address.  The resolver
    also hands out sequence numbers so later sightings win exact ties.
    """

    def __init__(self) -> None:
        self._records: dict[str, NodeRecord] = {}
        self._sequence = 0

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: object) -> bool:
        return key in self._records

    def records(self) -> list[NodeRecord]:
        return list(self._records.values())

    def addresses(self) -> set[str]:
        return {r.address for r in self._records.values() if r.address}

    def add(self, record: NodeRecord) -> bool:
        """Merge *record* into the map.

        Returns:
            ``True`` if the record's key had not been seen before.
        """
        record.identity = normalize_identity(record.identity)
        key = record.key
        if key is None:
            logger.debug("Discarding record with neither identity nor address")
            return False

        self._sequence += 1
        record.sequence = self._sequence

        existing = self._records.get(key)
        if existing is None:
            self._records[key] = record
            return True

        if rank(record) > rank(existing):
            winner, loser = record, existing
        else:
            winner, loser = existing, record
        _remember_address(winner, loser)
        self._records[key] = winner
        return False


def _remember_address(winner: NodeRecord, loser: NodeRecord) -> None:
    """Keep the address the later sighting reported for an identity."""
    if not winner.identity or not loser.address or loser.address == winner.address:
        return
    if loser.sequence > winner.sequence:
        winner.move_to(loser.address)
    elif loser.address not in winner.previous_addresses:
        winner.previous_addresses.append(loser.address)


def merge_sightings(sightings: list[NodeRecord]) -> NodeRecord:
    """Fold several sightings of one identity into a single record.

    The best-ranked sighting supplies field values, gaps are filled from
    the others, and the address comes from the latest sighting with every
    earlier distinct address kept in ``previous_addresses``.
    """
    by_time = sorted(sightings, key=lambda r: r.sequence)
    best = max(sightings, key=rank)
    merged = copy.deepcopy(best)

    for other in sorted(sightings, key=rank, reverse=True):
        if other is best:
            continue
        _fill_gaps(merged, other)

    history: list[str] = []
    for sighting in by_time:
        for addr in [*sighting.previous_addresses, sighting.address]:
            if not addr:
                continue
            # Re-observed addresses move to the end so order tracks recency.
            if addr in history:
                history.remove(addr)
            history.append(addr)

    merged.address = by_time[-1].address or merged.address
    merged.previous_addresses = [a for a in history if a != merged.address]
    merged.sequence = by_time[-1].sequence
    return merged


def _fill_gaps(target: NodeRecord, source: NodeRecord) -> None:
    for f in dataclasses.fields(target):
        if f.name in _UNRANKED_FIELDS or f.name in ("address", "previous_addresses"):
            continue
        if getattr(target, f.name) is None:
            setattr(target, f.name, getattr(source, f.name))
    target.metrics.fill_from(source.metrics)


def reconcile_identities(records: list[NodeRecord]) -> list[NodeRecord]:
    """Resolve cross-key duplicates after the crawl.

    * Same identity, different addresses: one record, superseded addresses
      in ``previous_addresses``.
    * Same address, different valid identities: both kept.
    * Same address, one anonymous: the anonymous record is dropped.

    Args:
        records: Output of :meth:`IdentityResolver.records`.

    Returns:
        Deduplicated records, identity-bearing first in discovery order,
        then surviving anonymous ones.
    """
    groups: dict[str, list[NodeRecord]] = {}
    anonymous: list[NodeRecord] = []
    for record in records:
        identity = normalize_identity(record.identity)
        if identity:
            record.identity = identity
            groups.setdefault(identity, []).append(record)
        elif record.address:
            record.identity = None
            anonymous.append(record)

    merged = [merge_sightings(group) for group in groups.values()]
    claimed = {r.address for r in merged if r.address}

    seen_anonymous: dict[str, NodeRecord] = {}
    dropped = 0
    for record in anonymous:
        if record.address in claimed:
            dropped += 1
            continue
        current = seen_anonymous.get(record.address)  # type: ignore[arg-type]
        if current is None or rank(record) > rank(current):
            seen_anonymous[record.address] = record  # type: ignore[index]
    kept_anonymous = list(seen_anonymous.values())

    if dropped:
        logger.debug("Dropped %d anonymous record(s) shadowed by identities", dropped)

    result = sorted(merged, key=lambda r: r.sequence) + kept_anonymous
    _log_shared_addresses(result)
    return result


def _log_shared_addresses(records: list[NodeRecord]) -> None:
    by_address: dict[str, int] = {}
    for r in records:
        if r.address:
            by_address[r.address] = by_address.get(r.address, 0) + 1
    shared = sum(1 for n in by_address.values() if n > 1)
    if shared:
        logger.info("%d address(es) are shared by distinct identities", shared)