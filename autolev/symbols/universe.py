from __future__ import annotations

from typing import Iterable, List, Set, Union


def parse_symbols(raw: Union[str, List[str]], max_symbols: int = 500) -> List[str]:
    # Accept both CSV string and list[str]
    if isinstance(raw, list):
        symbols = [str(s).strip().upper() for s in raw if str(s).strip()]
    else:
        symbols = [s.strip().upper() for s in raw.split(",") if s.strip()]

    # remove duplicates but keep order
    seen: Set[str] = set()
    unique = []
    for s in symbols:
        if s not in seen:
            seen.add(s)
            unique.append(s)

    return unique[:max_symbols]


def eligible_symbols(
    *,
    candidates: Iterable[str],
    tradable: Iterable[str],
    held: Iterable[str],
    blacklist: Iterable[str],
    in_flight: Iterable[str] = (),
) -> List[str]:
    """
    Candidates that the exchange lists as tradable, minus anything already
    held, blacklisted, or currently being worked on.
    """
    tradable_set = set(tradable)
    excluded = set(held) | set(blacklist) | set(in_flight)
    return [s for s in parse_symbols(list(candidates)) if s in tradable_set and s not in excluded]
