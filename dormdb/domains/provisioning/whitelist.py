# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Whitelist batch-import parser.

Administrators paste or upload one identity per line:

    # key,display name,group
    2023010101,Alice,CS-2023
    2023010102,Bob
    2023010103

Blank lines and lines starting with ``#`` are ignored. Malformed lines are
reported by line number and do not stop the rest of the import.
"""

from dataclasses import dataclass, field

from pydantic import ValidationError

from dormdb.domains.provisioning.naming import is_valid_identity_key
from dormdb.models.provisioning import WhitelistEntryCreate


@dataclass
class ParsedWhitelist:
    """Result of parsing a whitelist import text.

    Attributes:
        entries: Valid entries, in input order, first occurrence per key.
        errors: One message per rejected line.
    """

    entries: list[WhitelistEntryCreate] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def parse_whitelist_import(content: str) -> ParsedWhitelist:
    """Parse ``identity_key[,display_name[,group_tag]]`` lines.

    Args:
        content: Raw import text.

    Returns:
        ParsedWhitelist with entries and per-line errors.
    """
    result = ParsedWhitelist()
    seen: set[str] = set()

    for line_no, raw in enumerate(content.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue

        parts = [p.strip() for p in line.split(",", 2)]
        key = parts[0]

        if not is_valid_identity_key(key):
            result.errors.append(f"Line {line_no}: invalid identity key {key!r}")
            continue
        if key in seen:
            result.errors.append(f"Line {line_no}: duplicate identity key {key!r}")
            continue

        try:
            entry = WhitelistEntryCreate(
                identity_key=key,
                display_name=(parts[1] or None) if len(parts) > 1 else None,
                group_tag=(parts[2] or None) if len(parts) > 2 else None,
            )
        except ValidationError as e:
            result.errors.append(f"Line {line_no}: {e.errors()[0]['msg']}")
            continue

        seen.add(key)
        result.entries.append(entry)

    return result
