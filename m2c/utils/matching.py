"""Joining server results back onto local rows.

The service does not always echo our ids: created issues may only carry a
title, and validation results carry requirement text that may be paraphrased.
These helpers implement the fallback chains used to find the row a result
belongs to.
"""

import sys
from collections.abc import Collection, Sequence

from m2c.state import GapItem

DEFAULT_PREFIX_CHARS = 40


def match_issue_to_gap(
    issue: dict,
    gaps: Sequence[GapItem],
    position: int,
    claimed: Collection[int] = (),
    prefix_chars: int = DEFAULT_PREFIX_CHARS,
) -> tuple[int | None, str]:
    """Find the gap id a created issue belongs to.

    Tries, in order: the issue's ``gapId`` hint (ignored when that gap is
    already claimed), the issue title containing the first ``prefix_chars``
    characters of a requirement, then the ``position``-th gap (1-based) in
    submission order. Returns
    ``(gap_id, strategy)``; ``(None, "unmatched")`` when nothing fits.

    The three strategies are not cross-checked against each other, so a
    reordered or truncated server response can attach an issue to the wrong
    row. Positional matches are reported on stderr for that reason.
    """
    partition_ids = [gap["id"] for gap in gaps]

    # ``id`` on a created issue is its position in the batch, not a gap id
    hint = issue.get("gapId")
    if hint in partition_ids and hint not in claimed:
        return hint, "hint"

    title = issue.get("title") or ""
    if title:
        for gap in gaps:
            if gap["id"] in claimed:
                continue
            if gap["requirement"][:prefix_chars] in title:
                return gap["id"], "title"

    if 1 <= position <= len(gaps):
        gap_id = gaps[position - 1]["id"]
        if gap_id not in claimed:
            print(
                f"[M2C] Warning: issue #{issue.get('number', '?')} matched to gap {gap_id} "
                f"by position only.",
                file=sys.stderr,
            )
            return gap_id, "position"

    return None, "unmatched"


def find_requirement_row(
    requirements: Sequence[str],
    text: str,
    prefix_chars: int = DEFAULT_PREFIX_CHARS,
) -> int | None:
    """Return the index of the requirement ``text`` refers to, or None.

    Exact (trimmed) match first; otherwise case-insensitive containment of the
    first ``prefix_chars`` characters in either direction.
    """
    wanted = (text or "").strip()
    if not wanted:
        return None

    for index, requirement in enumerate(requirements):
        if requirement.strip() == wanted:
            return index

    wanted_lower = wanted.lower()
    for index, requirement in enumerate(requirements):
        candidate = requirement.strip().lower()
        if not candidate:
            continue
        if wanted_lower[:prefix_chars] in candidate or candidate[:prefix_chars] in wanted_lower:
            return index

    return None
