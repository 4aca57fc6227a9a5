"""Slug normalization for epic directory and file names."""

import re
from typing import Optional

_WHITESPACE = re.compile(r"\s+")
_DISALLOWED = re.compile(r"[^a-z0-9-]")
_HYPHENS = re.compile(r"-+")


def slugify(text: Optional[str]) -> str:
    """Convert free text into a canonical directory name fragment.

    Examples:
        'Bare Metal Provisioning' -> 'bare-metal-provisioning'
        '  API / Gateway v2 ' -> 'api-gateway-v2'
        '@#$%' -> ''

    An empty result is never a valid directory name; callers must flag it.
    """
    if not text:
        return ''
    slug = _WHITESPACE.sub('-', str(text).lower())
    slug = _DISALLOWED.sub('', slug)
    slug = _HYPHENS.sub('-', slug)
    return slug.strip('-')
