"""Tag path splitting, create-or-get resolution and forest materialisation."""

from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING, Any, Iterable, Sequence

from .errors import DuplicateSibling
from .types import CreatedTag, ResolvedPath, Tag
from .utils import collapse_whitespace

if TYPE_CHECKING:
    from .storage import Storage

logger = logging.getLogger(__name__)

PATH_SEPARATOR = "/"


def split_tag_path(text: str | None) -> tuple[str, ...]:
    """Split a slash-delimited path into normalised, non-empty segments.

    >>> split_tag_path(" Routing /  IPv4   Unicast// ")
    ('Routing', 'IPv4 Unicast')
    """

    if not text:
        return ()
    segments = (collapse_whitespace(part) for part in str(text).split(PATH_SEPARATOR))
    return tuple(segment for segment in segments if segment)


def resolve_path(
    storage: Storage,
    vendor_id: int,
    root_tag_id: int | None,
    segments: Sequence[str],
    conn: sqlite3.Connection | None = None,
) -> ResolvedPath:
    """Walk `segments` below `root_tag_id`, creating missing tags on the way.

    `root_tag_id=None` starts at the vendor's forest root. A tag that another
    writer inserted between our lookup and our insert is adopted rather than
    reported as created.
    """

    if conn is None:
        with storage.connection() as temp:
            return resolve_path(storage, vendor_id, root_tag_id, segments, temp)

    normalized = [collapse_whitespace(segment) for segment in segments]
    normalized = [segment for segment in normalized if segment]
    if root_tag_id is None and not normalized:
        raise ValueError("A tag path needs at least one segment when no root tag is given")

    current_id = root_tag_id
    current_name: str | None = None
    if root_tag_id is not None:
        root = storage.get_tag(root_tag_id, conn)
        if root is None:
            raise ValueError(f"Root tag {root_tag_id} does not exist")
        if root.vendor_id != int(vendor_id):
            raise ValueError(f"Root tag {root_tag_id} belongs to another vendor")
        current_name = root.name

    created: list[CreatedTag] = []
    for segment in normalized:
        tag = storage.find_sibling_tag(vendor_id, current_id, segment, conn)
        if tag is None:
            try:
                tag = storage.create_tag(vendor_id, segment, current_id, conn)
            except DuplicateSibling:
                tag = storage.find_sibling_tag(vendor_id, current_id, segment, conn)
                if tag is None:
                    raise
                logger.info(
                    "adopted concurrently created tag %r (id=%s) under parent %s",
                    segment,
                    tag.id,
                    current_id,
                )
            else:
                created.append(
                    CreatedTag(
                        id=tag.id,
                        name=tag.name,
                        parent_id=current_id,
                        parent_name=current_name,
                    )
                )
        current_id = tag.id
        current_name = tag.name
    return ResolvedPath(leaf_id=current_id, created=tuple(created))


def build_forest(tags: Iterable[Tag]) -> list[dict[str, Any]]:
    """Materialise flat tag rows into nested `{id, name, children}` nodes.

    Siblings are ordered by name, then id. Tags whose parent is missing from
    `tags` are treated as roots.
    """

    items = list(tags)
    nodes: dict[int, dict[str, Any]] = {
        tag.id: {"id": tag.id, "name": tag.name, "children": []} for tag in items
    }
    roots: list[dict[str, Any]] = []
    for tag in items:
        node = nodes[tag.id]
        parent = nodes.get(tag.parent_id) if tag.parent_id is not None else None
        if parent is None:
            roots.append(node)
        else:
            parent["children"].append(node)

    def _sort(level: list[dict[str, Any]]) -> None:
        level.sort(key=lambda item: (item["name"], item["id"]))
        for item in level:
            _sort(item["children"])

    _sort(roots)
    return roots
