"""
Lua script synthesis.

A bundle script is a fixed header comment block, the title registration,
one keyed registration and one revision pin per depot, followed by every
author line carried over from the previous script (DLC registrations,
tokens, comments, pins of depots not being re-pinned).
"""
import re
import logging
from typing import Iterable, Optional, List, Set

from bundles import Depot, Script
from identifiers import UNVERIFIED_MARKER
from utils import now_utc

logger = logging.getLogger("main")

HEADER_RULE = "-- " + "=" * 57
GENERATOR_LINE = "--  Bundle generated by ManifestVault"

GENERATED_HEADER_RE = re.compile(
    r"^\s*--\s*(?:=+\s*$|Bundle generated by|Generated Lua Manifest|Name:|AppID:|Updated:)",
    re.IGNORECASE,
)
ADDAPPID_RE = re.compile(r"^\s*addappid\s*\(\s*(\d+)\s*(,[^)]*)?\)", re.IGNORECASE)
SETMANIFESTID_RE = re.compile(r"^\s*setManifestid\s*\(\s*(\d+)", re.IGNORECASE)


def registration_line(depot: Depot) -> str:
    if depot.decryption_key:
        return f'addappid({depot.depot_id}, 1, "{depot.decryption_key}")'
    return f"addappid({depot.depot_id})"


def pin_line(depot: Depot) -> str:
    line = f'setManifestid({depot.depot_id}, "{depot.revision_id}", 0)'
    if depot.revision_synthesized:
        line += f" {UNVERIFIED_MARKER}"
    return line


def build_header(title_id: str, name: Optional[str], now=None) -> List[str]:
    now = now or now_utc()
    return [
        HEADER_RULE,
        GENERATOR_LINE,
        HEADER_RULE,
        f"-- Name: {name or 'Unknown Game'}",
        f"-- AppID: {title_id}",
        f"-- Updated: {now.strftime('%Y-%m-%d %H:%M:%S')} UTC",
    ]


def _is_comment_or_blank(line: str) -> bool:
    stripped = line.strip()
    return not stripped or stripped.startswith("--")


def _is_managed(line: str, title_id: str, managed_ids: Set[str]) -> bool:
    registration = ADDAPPID_RE.match(line)
    if registration:
        target = registration.group(1)
        if target == title_id and not registration.group(2):
            return True
        return target in managed_ids
    pin = SETMANIFESTID_RE.match(line)
    if pin:
        return pin.group(1) in managed_ids
    return False


def split_prior(prior_text: str, title_id: str, managed_ids: Set[str]):
    """
    Structural merge against a previous script.
    Returns (header_comments, body_lines) that must survive regeneration.
    """
    lines = prior_text.replace("\r\n", "\n").split("\n")

    header_comments = []
    index = 0
    while index < len(lines) and _is_comment_or_blank(lines[index]):
        line = lines[index]
        if line.strip() and not GENERATED_HEADER_RE.match(line):
            header_comments.append(line.rstrip())
        index += 1

    body = []
    for line in lines[index:]:
        if _is_managed(line, title_id, managed_ids):
            continue
        body.append(line.rstrip())

    # Trim blank runs at either end
    while body and not body[0].strip():
        body.pop(0)
    while body and not body[-1].strip():
        body.pop()
    return header_comments, body


def synthesize_script(
    title_id: str,
    name: Optional[str],
    depots: Iterable[Depot],
    prior_text: Optional[str] = None,
    dropped_depot_ids: Iterable[str] = (),
    now=None,
) -> Script:
    depots = list(depots)
    dropped = {str(d) for d in dropped_depot_ids}
    managed_ids = {d.depot_id for d in depots} | dropped

    header_comments, preserved = [], []
    if prior_text:
        header_comments, preserved = split_prior(prior_text, title_id, managed_ids)
        logger.debug(f"Preserving {len(header_comments) + len(preserved)} author lines for {title_id}")

    lines = build_header(title_id, name, now)
    lines.extend(header_comments)
    lines.append("")
    lines.append(f"addappid({title_id})")
    lines.extend(registration_line(d) for d in depots)
    lines.extend(pin_line(d) for d in depots)
    if preserved:
        lines.append("")
        lines.extend(preserved)

    return Script(title_id=title_id, text="\n".join(lines) + "\n")
