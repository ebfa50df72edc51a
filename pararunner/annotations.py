"""
Annotation Parser
=================

Parses test method doc blocks for the annotations that drive batching:
- @group: group tags used by the include/exclude filters
- @depends: name of the method a test must run after, in the same batch
- @dataProvider: name of the method returning the test's data sets
"""

from typing import List, Optional
import re
import logging

logger = logging.getLogger(__name__)

_GROUP_RE = re.compile(r'@\bgroup\b \b(.*)\b')
_DEPENDS_RE = re.compile(r'@\bdepends\b \b(.*)\b')
_DATA_PROVIDER_RE = re.compile(r'@\bdataProvider\b \b(.*)\b')


def parse_groups(doc_block: Optional[str]) -> List[str]:
    """
    Extract all @group tags, in declaration order.

    Args:
        doc_block: Raw doc block text (may be None)

    Returns:
        List of group names
    """
    if not doc_block:
        return []
    return _GROUP_RE.findall(doc_block)


def parse_dependency(doc_block: Optional[str]) -> Optional[str]:
    """Return the first @depends target, or None."""
    if not doc_block:
        return None
    match = _DEPENDS_RE.search(doc_block)
    if match:
        logger.debug(f"Found dependency annotation: {match.group(1)}")
        return match.group(1)
    return None


def parse_data_provider(doc_block: Optional[str]) -> Optional[str]:
    """Return the first @dataProvider name, or None."""
    if not doc_block:
        return None
    match = _DATA_PROVIDER_RE.search(doc_block)
    return match.group(1) if match else None
